from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from .store import (
    create_document,
    delete_document,
    get_document,
    list_documents,
    update_document,
)

COLLECTION = "users"

ROLES = ("operador", "motorista", "mecanico", "admin")


def _clean_fields(fields: Dict) -> Dict:
    data: Dict = {}
    for k in ("matricula", "nome", "role", "setor"):
        if k in fields:
            v = fields[k]
            data[k] = v.strip() if isinstance(v, str) else v
    if "role" in data and data["role"] not in ROLES:
        raise ValueError(f"role must be one of: {', '.join(ROLES)}")
    return data


def list_users(datarepo_path: Path) -> List[dict]:
    users = list_documents(datarepo_path, COLLECTION)
    users.sort(key=lambda u: str(u.get("nome") or "").lower())
    return users


def get_user(datarepo_path: Path, user_id: str) -> dict:
    return get_document(datarepo_path, COLLECTION, user_id)


def find_user_by_matricula(datarepo_path: Path, matricula: Optional[str]) -> Optional[dict]:
    wanted = str(matricula or "").strip()
    if not wanted:
        return None
    for u in list_documents(datarepo_path, COLLECTION):
        if str(u.get("matricula") or "").strip() == wanted:
            return u
    return None


def create_user(datarepo_path: Path, fields: Dict, user_id: Optional[str] = None) -> dict:
    data = _clean_fields(fields or {})
    if not data.get("matricula"):
        raise ValueError("matricula is required")
    if not data.get("nome"):
        raise ValueError("nome is required")
    data.setdefault("role", "operador")
    if find_user_by_matricula(datarepo_path, data["matricula"]) is not None:
        raise ValueError(f"matricula '{data['matricula']}' is already registered")
    return create_document(datarepo_path, COLLECTION, data, user_id)


def update_user(datarepo_path: Path, user_id: str, updates: Dict) -> dict:
    data = _clean_fields(updates or {})
    if "matricula" in data:
        if not data["matricula"]:
            raise ValueError("matricula cannot be empty")
        other = find_user_by_matricula(datarepo_path, data["matricula"])
        if other is not None and other.get("id") != user_id:
            raise ValueError(f"matricula '{data['matricula']}' is already registered")
    return update_document(datarepo_path, COLLECTION, user_id, data)


def delete_user(datarepo_path: Path, user_id: str) -> None:
    delete_document(datarepo_path, COLLECTION, user_id)
