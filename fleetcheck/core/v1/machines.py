from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import unquote
import uuid

from .store import (
    create_document,
    delete_document,
    get_document,
    list_documents,
    set_document,
    update_document,
)

COLLECTION = "machines"

FLEET_TYPES = ("machine", "vehicle")

FLEET_TYPE_LABEL = {
    "machine": "Frota Máquinas",
    "vehicle": "Frota Veículos",
}

PRIMARY_ACTOR_LABEL = {
    "machine": "Operador",
    "vehicle": "Motorista",
}

PRIMARY_ACTOR_KIND = {
    "machine": "operador",
    "vehicle": "motorista",
}

_EDITABLE_FIELDS = ("modelo", "placa", "tag", "setor", "combustivel", "checklists", "fleetType")


def resolve_fleet_type(fleet_type: Optional[str]) -> str:
    return "vehicle" if fleet_type == "vehicle" else "machine"


def resolve_actor_kind(machine: Optional[dict]) -> str:
    return PRIMARY_ACTOR_KIND[resolve_fleet_type((machine or {}).get("fleetType"))]


def resolve_actor_label(machine: Optional[dict]) -> str:
    return PRIMARY_ACTOR_LABEL[resolve_fleet_type((machine or {}).get("fleetType"))]


def machine_display_name(machine: dict) -> str:
    """Human label for lists and reports: modelo, else tag, else id."""
    return str(machine.get("modelo") or machine.get("tag") or machine.get("id") or "")


def machine_tag_label(machine: dict) -> str:
    return str(machine.get("tag") or machine.get("placa") or machine.get("id") or "")


def normalize_tag(tag: Optional[str]) -> str:
    """Decode a TAG as it arrives from a scanned URL and trim it."""
    return unquote(str(tag or "")).strip()


def _clean_fields(fields: Dict) -> Dict:
    data: Dict = {}
    for k in _EDITABLE_FIELDS:
        if k not in fields:
            continue
        v = fields[k]
        if k == "checklists":
            if v is None:
                v = []
            if not isinstance(v, (list, tuple)):
                raise ValueError("checklists must be a list of template ids")
            v = [str(x).strip() for x in v if str(x).strip()]
        elif k == "fleetType":
            if v not in (None, "") and v not in FLEET_TYPES:
                raise ValueError("fleetType must be 'machine' or 'vehicle'")
            v = resolve_fleet_type(v)
        elif isinstance(v, str):
            v = v.strip()
        data[k] = v
    # Optional text fields are dropped rather than stored empty
    for opt in ("placa", "combustivel"):
        if opt in data and not data[opt]:
            data.pop(opt)
    return data


def list_machines(datarepo_path: Path) -> List[dict]:
    machines = list_documents(datarepo_path, COLLECTION)
    machines.sort(key=lambda m: (str(m.get("modelo") or "").lower(), str(m.get("tag") or "")))
    return machines


def get_machine(datarepo_path: Path, machine_id: str) -> dict:
    return get_document(datarepo_path, COLLECTION, machine_id)


def find_machine_by_tag(datarepo_path: Path, tag: str) -> Optional[dict]:
    wanted = normalize_tag(tag)
    if not wanted:
        return None
    for m in list_documents(datarepo_path, COLLECTION):
        if str(m.get("tag") or "").strip() == wanted:
            return m
    return None


def _ensure_unique_tag(datarepo_path: Path, tag: str, exclude_id: Optional[str] = None) -> None:
    for m in list_documents(datarepo_path, COLLECTION):
        if m.get("id") == exclude_id:
            continue
        if str(m.get("tag") or "").strip() == tag:
            raise ValueError(f"TAG '{tag}' is already used by machine '{m.get('id')}'")


def create_machine(datarepo_path: Path, fields: Dict, machine_id: Optional[str] = None) -> dict:
    """Create a machine. A random TAG is generated when none is given."""
    data = _clean_fields(fields or {})
    if not data.get("modelo"):
        raise ValueError("modelo is required")
    data.setdefault("setor", "")
    data["tag"] = data.get("tag") or str(uuid.uuid4())
    data.setdefault("checklists", [])
    data["fleetType"] = resolve_fleet_type(data.get("fleetType"))
    _ensure_unique_tag(datarepo_path, data["tag"])
    return create_document(datarepo_path, COLLECTION, data, machine_id)


def update_machine(datarepo_path: Path, machine_id: str, updates: Dict) -> dict:
    data = _clean_fields(updates or {})
    if "tag" in data:
        if not data["tag"]:
            raise ValueError("tag cannot be empty")
        _ensure_unique_tag(datarepo_path, data["tag"], exclude_id=machine_id)
    if "modelo" in data and not data["modelo"]:
        raise ValueError("modelo cannot be empty")
    current = get_machine(datarepo_path, machine_id)
    # Clearing an optional field removes it from the stored document
    cleared = [opt for opt in ("placa", "combustivel") if opt in (updates or {}) and opt not in data and opt in current]
    if not cleared:
        return update_document(datarepo_path, COLLECTION, machine_id, data)
    current.update(data)
    for opt in cleared:
        current.pop(opt)
    return set_document(datarepo_path, COLLECTION, machine_id, current)


def set_machine_checklists(datarepo_path: Path, machine_id: str, template_ids: List[str]) -> dict:
    """Replace the list of checklist templates assigned to a machine."""
    return update_machine(datarepo_path, machine_id, {"checklists": list(template_ids or [])})


def delete_machine(datarepo_path: Path, machine_id: str) -> None:
    delete_document(datarepo_path, COLLECTION, machine_id)
