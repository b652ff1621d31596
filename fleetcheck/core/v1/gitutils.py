import subprocess
from pathlib import Path

from .config import git_disabled


def _is_git_repo(repo_path: Path) -> bool:
    ck = subprocess.run(
        ["git", "-C", str(repo_path), "rev-parse", "--is-inside-work-tree"],
        capture_output=True,
    )
    return ck.returncode == 0


def git_commit_paths(repo_path: Path, paths: list[Path], message: str, delete: bool = False) -> None:
    """
    Stage multiple paths then commit with a message.

    - If delete is False (default), we run `git add <path>` for each existing path.
    - If delete is True, the paths are expected to be gone from the working tree
      already; `git add -A -- <path>` stages their removal.
    - Skipped entirely when FC_GIT_DISABLED is set or repo_path is not a git work tree.

    Pushing is left to the caller (see git_push).
    """
    if git_disabled() or not _is_git_repo(repo_path):
        return
    try:
        for p in paths:
            if delete:
                subprocess.run(["git", "add", "-A", "--", str(p)], cwd=repo_path, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            elif p.exists():
                subprocess.run(["git", "add", str(p)], cwd=repo_path, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        subprocess.run(["git", "commit", "-m", message], cwd=repo_path, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except subprocess.CalledProcessError:
        print("[fleetcheck] Warning: Failed to commit changes to git.")


def git_push(repo_path: Path) -> bool:
    """Push HEAD to origin if an origin remote exists.

    Returns True when a push happened and succeeded, False when there is
    nothing to push to. Raises RuntimeError when the push itself fails.
    """
    if git_disabled() or not _is_git_repo(repo_path):
        return False
    remotes = subprocess.run(["git", "remote"], cwd=repo_path, capture_output=True, text=True)
    if "origin" not in remotes.stdout.split():
        return False
    res = subprocess.run(["git", "push", "origin", "HEAD"], cwd=repo_path, capture_output=True, text=True)
    if res.returncode != 0:
        raise RuntimeError(f"git push failed: {(res.stderr or '').strip()[:200]}")
    return True
