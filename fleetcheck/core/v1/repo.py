from __future__ import annotations
import subprocess
from pathlib import Path
import yaml

from .config import (
    COLLECTIONS,
    DATAREPO_CONFIG_FILENAME,
    FC_TOOL_VERSION,
    NC_DEFAULT_DUE_DAYS,
    NC_DEFAULT_MAX_FETCH,
    NC_DEFAULT_RECURRENCE_WINDOW_DAYS,
    PERIODICITY_DEFAULT_CACHE_TTL_MINUTES,
    load_config,
    save_config,
)
from .gitutils import git_push


def init_local_repo(repo_path: Path) -> Path:
    repo_path = repo_path.expanduser().resolve()
    repo_path.mkdir(parents=True, exist_ok=True)
    if not (repo_path / ".git").exists():
        subprocess.run(["git", "init"], cwd=repo_path, check=True)
    return repo_path


def set_remote(repo_path: Path, remote_url: str) -> None:
    if remote_url:
        subprocess.run(["git", "remote", "add", "origin", remote_url], cwd=repo_path)


def write_datarepo_config(repo_path: Path, *, base_url: str | None = None) -> Path:
    """Write fleetrepo.yml with the NC and periodicity defaults and create the collection dirs."""
    datarepo_config = {
        "fleetcheck_version": FC_TOOL_VERSION,
        "nc": {
            "due_days": dict(NC_DEFAULT_DUE_DAYS),
            "recurrence_window_days": NC_DEFAULT_RECURRENCE_WINDOW_DAYS,
            "max_fetch": NC_DEFAULT_MAX_FETCH,
        },
        "periodicity": {
            "cache_ttl_minutes": PERIODICITY_DEFAULT_CACHE_TTL_MINUTES,
        },
    }
    if base_url:
        datarepo_config["stickers"] = {"base_url": base_url.rstrip("/")}
    config_file = repo_path / DATAREPO_CONFIG_FILENAME
    with open(config_file, "w") as f:
        f.write(
            "# Generated by fleetcheck init.\n"
            "# Safe to edit: SLA days per severity, recurrence window and sticker base URL.\n"
        )
        yaml.safe_dump(datarepo_config, f, sort_keys=False)
    for name in COLLECTIONS:
        (repo_path / name).mkdir(parents=True, exist_ok=True)
    # Audit journals are append-only; union merge avoids needless conflicts
    gia = repo_path / ".gitattributes"
    union_line = "nonConformities/*/audits.ndjson merge=union\n"
    if not gia.exists() or union_line.strip() not in gia.read_text():
        with open(gia, "a") as gf:
            gf.write(union_line)
    return config_file


def set_default_datarepo(repo_path: Path) -> None:
    cfg = load_config()
    cfg["default_datarepo"] = str(repo_path)
    save_config(cfg)


def initial_commit_and_optional_push(repo_path: Path, has_remote: bool) -> None:
    subprocess.run(["git", "add", DATAREPO_CONFIG_FILENAME, ".gitattributes"], cwd=repo_path)
    subprocess.run(["git", "commit", "-m", "[fleetcheck] Initial datarepo config"], cwd=repo_path)
    if has_remote:
        subprocess.run(["git", "branch", "-M", "main"], cwd=repo_path)
        try:
            git_push(repo_path)
        except RuntimeError as e:
            print(f"[fleetcheck] Warning: Could not push to remote: {e}")


def create_or_clone(target_path: Path, remote_url: str | None) -> Path:
    if remote_url:
        subprocess.run(["git", "clone", remote_url, str(target_path)], check=True)
        return target_path.expanduser().resolve()
    return init_local_repo(target_path)


def init_datarepo(target_path: Path, remote_url: str | None = None, *, base_url: str | None = None,
                  set_default: bool = True) -> Path:
    """Create (or clone) a fleet datarepo, scaffold it and commit the config."""
    repo_path = create_or_clone(target_path, remote_url)
    write_datarepo_config(repo_path, base_url=base_url)
    if set_default:
        set_default_datarepo(repo_path)
    initial_commit_and_optional_push(repo_path, has_remote=bool(remote_url))
    return repo_path
