import pathlib
import yaml
import re
import os

FC_TOOL_VERSION = "1.0"
CONFIG_FILENAME = ".fleetcheck.yml"
DATAREPO_CONFIG_FILENAME = "fleetrepo.yml"

# -------------------------------
# Collections stored in a fleet datarepo
# -------------------------------
# Each record lives under <collection>/<doc_id>/document.yml
COLLECTIONS = (
    "machines",
    "checklistTemplates",
    "checklistResponses",
    "nonConformities",
    "users",
    "kpiCache",
)

# -------------------------------
# Non-conformity defaults (YAML-driven)
# -------------------------------
# fleetrepo.yml may override these under:
# nc:
#   due_days: { alta: 2, media: 5, baixa: 10 }
#   recurrence_window_days: 30
#   max_fetch: 500
NC_DEFAULT_DUE_DAYS = {"alta": 2, "media": 5, "baixa": 10}
NC_DEFAULT_RECURRENCE_WINDOW_DAYS = 30
NC_DEFAULT_MAX_FETCH = 500
PERIODICITY_DEFAULT_CACHE_TTL_MINUTES = 15


# -------------------------------
# Document id validation
# -------------------------------
DOC_ID_REGEX: str = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$"


def validate_doc_id(doc_id: str) -> None:
    """Validate that a document id is safe as a directory name.

    Raises ValueError if invalid.
    """
    if not isinstance(doc_id, str) or not doc_id:
        raise ValueError("document id is required")
    if re.fullmatch(DOC_ID_REGEX, doc_id) is None:
        raise ValueError(
            "document id must match ^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$"
        )


def _resolve_config_path() -> pathlib.Path:
    """Resolve the path to .fleetcheck.yml with environment overrides.

    Precedence:
      1) FC_CONFIG_FILE = absolute or relative path to the config file
      2) FC_CONFIG_DIR = directory containing the config file
      3) FC_DATA_PATH  = parent data path (config at $FC_DATA_PATH/.fleetcheck.yml)
      4) Fallback to CWD: ./.fleetcheck.yml
    """
    env_file = os.environ.get("FC_CONFIG_FILE")
    if env_file:
        return pathlib.Path(env_file).expanduser().resolve()
    env_dir = os.environ.get("FC_CONFIG_DIR") or os.environ.get("FC_DATA_PATH")
    if env_dir:
        return pathlib.Path(env_dir).expanduser().resolve() / CONFIG_FILENAME
    return pathlib.Path(CONFIG_FILENAME).expanduser().resolve()


def ensure_config() -> pathlib.Path:
    """Ensure .fleetcheck.yml exists; create with defaults if missing.

    Returns the path to the config file.
    """
    config_path = _resolve_config_path()
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config = {
            "default_datarepo": None,
        }
        with open(config_path, "w") as f:
            yaml.safe_dump(config, f)
    return config_path


def load_config() -> dict:
    config_path = ensure_config()
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def save_config(config: dict) -> None:
    config_path = _resolve_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.safe_dump(config, f)


def get_datarepo_path() -> pathlib.Path:
    env_repo = os.environ.get("FC_REPO")
    if env_repo:
        return pathlib.Path(env_repo).expanduser().resolve()
    config = load_config()
    datarepo = config.get("default_datarepo")
    if not datarepo:
        raise RuntimeError(
            f"[fleetcheck] Error: default_datarepo not set in {CONFIG_FILENAME}. Run 'init' or set it manually."
        )
    return pathlib.Path(datarepo).expanduser().resolve()


def load_datarepo_config(repo_path: pathlib.Path | None = None) -> dict:
    """Read repository-level configuration from fleetrepo.yml."""
    if repo_path is None:
        repo_path = get_datarepo_path()
    config_file = repo_path / DATAREPO_CONFIG_FILENAME
    if not config_file.exists():
        return {}
    with open(config_file) as f:
        return yaml.safe_load(f) or {}


def _nc_block(repo_path: pathlib.Path | None) -> dict:
    try:
        dr_cfg = load_datarepo_config(repo_path)
    except RuntimeError:
        return {}
    nc = dr_cfg.get("nc")
    return nc if isinstance(nc, dict) else {}


def get_nc_due_days(repo_path: pathlib.Path | None = None) -> dict:
    """Return SLA days per severity, merged over NC_DEFAULT_DUE_DAYS.

    Non-integer or non-positive overrides are ignored.
    """
    merged = dict(NC_DEFAULT_DUE_DAYS)
    overrides = _nc_block(repo_path).get("due_days")
    if isinstance(overrides, dict):
        for sev, days in overrides.items():
            if sev not in merged:
                continue
            try:
                d = int(days)
            except (TypeError, ValueError):
                continue
            if d > 0:
                merged[sev] = d
    return merged


def get_nc_recurrence_window_days(repo_path: pathlib.Path | None = None) -> int:
    v = _nc_block(repo_path).get("recurrence_window_days")
    try:
        d = int(v)
    except (TypeError, ValueError):
        return NC_DEFAULT_RECURRENCE_WINDOW_DAYS
    return d if d > 0 else NC_DEFAULT_RECURRENCE_WINDOW_DAYS


def get_nc_max_fetch(repo_path: pathlib.Path | None = None) -> int:
    v = _nc_block(repo_path).get("max_fetch")
    try:
        n = int(v)
    except (TypeError, ValueError):
        return NC_DEFAULT_MAX_FETCH
    return n if n > 0 else NC_DEFAULT_MAX_FETCH


def get_periodicity_cache_ttl_minutes(repo_path: pathlib.Path | None = None) -> int:
    try:
        dr_cfg = load_datarepo_config(repo_path)
    except RuntimeError:
        dr_cfg = {}
    block = dr_cfg.get("periodicity") if isinstance(dr_cfg.get("periodicity"), dict) else {}
    try:
        n = int(block.get("cache_ttl_minutes"))
    except (TypeError, ValueError):
        return PERIODICITY_DEFAULT_CACHE_TTL_MINUTES
    return n if n > 0 else PERIODICITY_DEFAULT_CACHE_TTL_MINUTES


# -------------------------------
# Stickers configuration
# -------------------------------
def get_public_base_url(repo_path: pathlib.Path | None = None) -> str:
    """Return the base URL encoded in machine QR codes.

    Precedence: FC_PUBLIC_BASE_URL env, then fleetrepo.yml stickers.base_url,
    then http://localhost:8080. Trailing slashes are stripped.
    """
    env_url = (os.environ.get("FC_PUBLIC_BASE_URL") or "").strip()
    if env_url:
        return env_url.rstrip("/")
    try:
        dr_cfg = load_datarepo_config(repo_path)
    except RuntimeError:
        dr_cfg = {}
    stickers_cfg = dr_cfg.get("stickers")
    if isinstance(stickers_cfg, dict):
        base = str(stickers_cfg.get("base_url") or "").strip()
        if base:
            return base.rstrip("/")
    return "http://localhost:8080"


# -------------------------------
# Image upload configuration
# -------------------------------

def get_upload_provider() -> str:
    """Return the image upload provider: 'imgbb' (default) or 'local'.

    Env var: FC_UPLOAD_PROVIDER
    """
    val = (os.environ.get("FC_UPLOAD_PROVIDER") or "imgbb").strip().lower()
    return val if val in ("imgbb", "local") else "imgbb"


def get_imgbb_api_key() -> str | None:
    """Return the ImgBB API key from env (IMGBB_API_KEY), or None."""
    val = (os.environ.get("IMGBB_API_KEY") or "").strip()
    return val or None


def git_disabled() -> bool:
    val = os.environ.get("FC_GIT_DISABLED")
    if val is None:
        return False
    return val.lower() in ("1", "true", "yes", "on")
