from __future__ import annotations

from pathlib import Path
from datetime import datetime, timezone
from typing import Optional
import re

import requests

from .config import get_imgbb_api_key, get_upload_provider
from .gitutils import git_commit_paths
from .store import new_doc_id

IMGBB_ENDPOINT = "https://api.imgbb.com/1/upload"
UPLOADS_DIRNAME = "uploads"
DEFAULT_FILENAME = "upload.png"


class UploadError(RuntimeError):
    """Upload failure carrying a stable error code and the HTTP status to answer with."""

    def __init__(self, code: str, status: int, details=None):
        super().__init__(code)
        self.code = code
        self.status = status
        self.details = details


def _sanitize_segment(segment: str) -> str:
    return re.sub(r"[^a-zA-Z0-9\-_]", "-", segment)


def _normalize_extension(ext: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9]", "", ext).lower()
    if not cleaned:
        return "png"
    return "jpg" if cleaned == "jpeg" else cleaned


def sanitize_filename(filename: Optional[str]) -> Optional[str]:
    """'Foto do Pneu.JPEG' -> 'Foto-do-Pneu.jpg'. None when nothing usable is left."""
    if not filename or not filename.strip():
        return None
    parts = filename.strip().split(".")
    if len(parts) <= 1:
        return _sanitize_segment(parts[0])
    ext = _normalize_extension(parts.pop())
    base = "-".join(s for s in (_sanitize_segment(p) for p in parts) if s)
    return f"{base or 'upload'}.{ext}"


def sanitize_name(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    return _sanitize_segment(name.strip()) or None


def _resolve_names(filename: Optional[str], name: Optional[str]):
    safe_filename = sanitize_filename(filename) or DEFAULT_FILENAME
    safe_name = sanitize_name(name) or re.sub(r"\.[^./]+$", "", safe_filename)
    return safe_filename, safe_name


def upload_to_imgbb(image_bytes: bytes, *, filename: Optional[str] = None, name: Optional[str] = None,
                    api_key: Optional[str] = None, timeout: int = 60) -> str:
    """Upload an image to ImgBB and return its public URL. Raises UploadError."""
    key = api_key or get_imgbb_api_key()
    if not key:
        raise UploadError("IMGBB_API_KEY_MISSING", 500)
    if not image_bytes:
        raise UploadError("IMGBB_INVALID_IMAGE", 400)
    safe_filename, safe_name = _resolve_names(filename, name)
    try:
        r = requests.post(
            IMGBB_ENDPOINT,
            params={"key": key},
            files={"image": (safe_filename, image_bytes)},
            data={"name": safe_name},
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise UploadError("IMGBB_NETWORK_ERROR", 502, str(e))
    try:
        payload = r.json()
    except ValueError:
        payload = None
    if not r.ok or not isinstance(payload, dict) or not payload.get("success"):
        raise UploadError("IMGBB_UPLOAD_FAILED", 502, payload)
    data = payload.get("data") or {}
    url = data.get("url") or data.get("display_url") or (data.get("image") or {}).get("url")
    if not url:
        raise UploadError("IMGBB_UPLOAD_NO_URL", 502, payload)
    return url


def save_local_upload(datarepo_path: Path, image_bytes: bytes, *, filename: Optional[str] = None,
                      name: Optional[str] = None) -> str:
    """Store the image under uploads/<YYYY-MM>/ in the datarepo and return its web path."""
    if not image_bytes:
        raise UploadError("IMGBB_INVALID_IMAGE", 400)
    safe_filename, _ = _resolve_names(filename, name)
    month = datetime.now(timezone.utc).strftime("%Y-%m")
    rel = Path(UPLOADS_DIRNAME) / month / f"{new_doc_id()}-{safe_filename}"
    dest = datarepo_path / rel
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(image_bytes)
    git_commit_paths(datarepo_path, [dest], f"[fleetcheck] Uploaded image {rel.as_posix()}")
    return "/" + rel.as_posix()


def upload_image(datarepo_path: Path, image_bytes: bytes, *, filename: Optional[str] = None,
                 name: Optional[str] = None) -> dict:
    """Upload with the configured provider; returns {"url", "provider"}."""
    provider = get_upload_provider()
    if provider == "local":
        url = save_local_upload(datarepo_path, image_bytes, filename=filename, name=name)
    else:
        url = upload_to_imgbb(image_bytes, filename=filename, name=name)
    return {"url": url, "provider": provider}


def resolve_local_upload(datarepo_path: Path, rel_path: str) -> Path:
    """Map a /uploads/... web path back to a file inside the datarepo. Raises FileNotFoundError."""
    root = (datarepo_path / UPLOADS_DIRNAME).resolve()
    target = (root / rel_path).resolve()
    if root not in target.parents or not target.is_file():
        raise FileNotFoundError(rel_path)
    return target
