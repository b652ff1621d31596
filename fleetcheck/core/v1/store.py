from __future__ import annotations

from pathlib import Path
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional, Union
import json
import os
import shutil
import time
import yaml

from .config import COLLECTIONS, validate_doc_id
from .gitutils import git_commit_paths


# -------------------------------
# Fleet datarepo document store
#   - One YAML document per record: <collection>/<doc_id>/document.yml
#   - Append-only audit journal beside it: <collection>/<doc_id>/audits.ndjson
#   - The document id is the directory name and is never written to the file
# -------------------------------

DOCUMENT_FILENAME = "document.yml"
AUDITS_FILENAME = "audits.ndjson"

Where = Union[Dict, Callable[[dict], bool], None]


def _collection_dir(datarepo_path: Path, collection: str) -> Path:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection '{collection}'")
    return datarepo_path / collection


def document_path(datarepo_path: Path, collection: str, doc_id: str) -> Path:
    validate_doc_id(doc_id)
    return _collection_dir(datarepo_path, collection) / doc_id / DOCUMENT_FILENAME


def _normalize_loaded(value):
    # Hand-edited YAML may carry unquoted timestamps; keep everything as ISO strings
    if isinstance(value, datetime):
        return now_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _normalize_loaded(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize_loaded(v) for v in value]
    return value


def _read_yaml(p: Path) -> dict:
    with open(p) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{p.name} must be a YAML mapping")
    return _normalize_loaded(data)


def _write_yaml(p: Path, data: dict) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)


# -------------------------------
# Ids and timestamps
# -------------------------------

_CROCKFORD32 = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def _to_base32(data: bytes) -> str:
    bits = 0
    value = 0
    out = []
    for b in data:
        value = (value << 8) | b
        bits += 8
        while bits >= 5:
            out.append(_CROCKFORD32[(value >> (bits - 5)) & 0x1F])
            bits -= 5
    if bits:
        out.append(_CROCKFORD32[(value << (5 - bits)) & 0x1F])
    return "".join(out)


def new_doc_id() -> str:
    """Generate a 26-char Crockford Base32 ULID string.
    Time component is milliseconds since epoch (48 bits), plus 80 bits of randomness.
    """
    ts_ms = int(time.time() * 1000)
    return _to_base32(ts_ms.to_bytes(6, "big") + os.urandom(10))[:26]


def now_iso(dt: Optional[datetime] = None) -> str:
    """Format dt (default: now) as UTC ISO-8601 with milliseconds and a Z suffix."""
    if dt is None:
        dt = datetime.now(timezone.utc)
    elif dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_iso(value) -> Optional[datetime]:
    """Parse an ISO-8601 string, datetime or epoch milliseconds into an aware UTC datetime.

    Date-only strings (YYYY-MM-DD) are midnight UTC. Returns None when the
    value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    s = str(value).strip()
    if not s:
        return None
    if len(s) == 10:
        s = s + "T00:00:00"
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _sort_key(value):
    if value is None:
        return (0, 0.0, "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (1, float(value), "")
    dt = parse_iso(value) if isinstance(value, str) else None
    if dt is not None:
        return (1, dt.timestamp(), "")
    return (2, 0.0, str(value))


def _matches(doc: dict, where: Where) -> bool:
    if where is None:
        return True
    if callable(where):
        return bool(where(doc))
    for k, v in where.items():
        if doc.get(k) != v:
            return False
    return True


# -------------------------------
# Public API
# -------------------------------

def list_documents(datarepo_path: Path, collection: str) -> List[dict]:
    """Return every readable document of a collection with its 'id' set."""
    docs: List[dict] = []
    root = _collection_dir(datarepo_path, collection)
    if not root.is_dir():
        return docs
    for d in sorted([p for p in root.iterdir() if p.is_dir()]):
        fp = d / DOCUMENT_FILENAME
        if not fp.exists():
            continue
        try:
            data = _read_yaml(fp)
        except Exception:
            # Skip unreadable files; validate.py reports them
            continue
        data["id"] = d.name
        docs.append(data)
    return docs


def find_documents(
    datarepo_path: Path,
    collection: str,
    *,
    where: Where = None,
    order_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[dict]:
    """Filter, order and limit a collection.

    `where` is either a mapping of field -> expected value (equality on every
    key) or a predicate taking the document. Ordering understands ISO
    timestamps and numbers; documents missing the field sort first (last when
    descending).
    """
    docs = [d for d in list_documents(datarepo_path, collection) if _matches(d, where)]
    if order_by:
        docs.sort(key=lambda d: _sort_key(d.get(order_by)), reverse=descending)
    if limit is not None and limit >= 0:
        docs = docs[:limit]
    return docs


def get_document(datarepo_path: Path, collection: str, doc_id: str) -> dict:
    fp = document_path(datarepo_path, collection, doc_id)
    if not fp.exists():
        raise FileNotFoundError(f"{collection} document '{doc_id}' not found")
    data = _read_yaml(fp)
    data["id"] = doc_id
    return data


def document_exists(datarepo_path: Path, collection: str, doc_id: str) -> bool:
    try:
        return document_path(datarepo_path, collection, doc_id).exists()
    except ValueError:
        return False


def create_document(
    datarepo_path: Path,
    collection: str,
    data: Dict,
    doc_id: Optional[str] = None,
    *,
    commit: bool = True,
) -> dict:
    """Create a document; a ULID is generated when doc_id is not given.

    Raises FileExistsError if the id is taken.
    """
    doc_id = doc_id or new_doc_id()
    fp = document_path(datarepo_path, collection, doc_id)
    if fp.exists():
        raise FileExistsError(f"{collection} document '{doc_id}' already exists")
    to_write = {k: v for k, v in (data or {}).items() if k != "id"}
    _write_yaml(fp, to_write)
    if commit:
        git_commit_paths(datarepo_path, [fp], f"[fleetcheck] Created {collection}/{doc_id}")
    out = dict(to_write)
    out["id"] = doc_id
    return out


def set_document(datarepo_path: Path, collection: str, doc_id: str, data: Dict, *, commit: bool = True) -> dict:
    """Create or fully overwrite a document."""
    fp = document_path(datarepo_path, collection, doc_id)
    to_write = {k: v for k, v in (data or {}).items() if k != "id"}
    _write_yaml(fp, to_write)
    if commit:
        git_commit_paths(datarepo_path, [fp], f"[fleetcheck] Wrote {collection}/{doc_id}")
    out = dict(to_write)
    out["id"] = doc_id
    return out


def update_document(datarepo_path: Path, collection: str, doc_id: str, updates: Dict, *, commit: bool = True) -> dict:
    """Shallow-merge updates into an existing document and return the result."""
    current = get_document(datarepo_path, collection, doc_id)
    current.pop("id", None)
    for k, v in (updates or {}).items():
        if k == "id":
            continue
        current[k] = v
    fp = document_path(datarepo_path, collection, doc_id)
    _write_yaml(fp, current)
    if commit:
        git_commit_paths(datarepo_path, [fp], f"[fleetcheck] Updated {collection}/{doc_id}")
    current["id"] = doc_id
    return current


def delete_document(datarepo_path: Path, collection: str, doc_id: str) -> None:
    fp = document_path(datarepo_path, collection, doc_id)
    if not fp.exists():
        raise FileNotFoundError(f"{collection} document '{doc_id}' not found")
    doc_dir = fp.parent
    shutil.rmtree(doc_dir)
    git_commit_paths(datarepo_path, [doc_dir], f"[fleetcheck] Deleted {collection}/{doc_id}", delete=True)


# -------------------------------
# Audit journal (append-only NDJSON)
# -------------------------------

def audits_path(datarepo_path: Path, collection: str, doc_id: str) -> Path:
    return document_path(datarepo_path, collection, doc_id).parent / AUDITS_FILENAME


def append_audit(datarepo_path: Path, collection: str, doc_id: str, entry: Dict, *, commit: bool = True) -> dict:
    """Append one audit entry (an 'id' is assigned) to the document's journal."""
    if not document_exists(datarepo_path, collection, doc_id):
        raise FileNotFoundError(f"{collection} document '{doc_id}' not found")
    rec = dict(entry)
    rec.setdefault("id", new_doc_id())
    p = audits_path(datarepo_path, collection, doc_id)
    with open(p, "a") as f:
        f.write(json.dumps(rec, ensure_ascii=False, sort_keys=False) + "\n")
    if commit:
        git_commit_paths(datarepo_path, [p], f"[fleetcheck] Audit {collection}/{doc_id}")
    return rec


def list_audits(datarepo_path: Path, collection: str, doc_id: str, limit: int = 50) -> List[dict]:
    """Return audit entries newest first (by atISO), at most `limit`."""
    p = audits_path(datarepo_path, collection, doc_id)
    if not p.exists():
        return []
    out: List[dict] = []
    with open(p) as f:
        for line in f:
            if not line.strip():
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                # ignore malformed lines
                continue
            if isinstance(obj, dict):
                out.append(obj)
    out.sort(key=lambda a: _sort_key(a.get("atISO")), reverse=True)
    return out[:limit]
