from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional
import math
import uuid

from pydantic import BaseModel, ConfigDict, StrictBool

from .store import (
    create_document,
    delete_document,
    get_document,
    list_documents,
    update_document,
)

COLLECTION = "checklistTemplates"

ACTOR_KINDS = ("operador", "motorista", "mecanico")
PHOTO_RULES = ("none", "optional", "required_nc")
VARIABLE_TYPES = ("int", "decimal", "text", "long_text", "date", "time", "boolean")
VARIABLE_CONDITIONS = ("ok", "nc", "always")
PERIODICITY_UNITS = ("day", "week", "month")
PERIODICITY_ANCHORS = ("last_submission", "calendar")

ACTOR_DEFAULTS_BY_KIND = {
    "operador": {
        "kind": "operador",
        "requireDriverField": False,
        "requireOperatorSignature": True,
        "requireMotoristSignature": False,
    },
    "motorista": {
        "kind": "motorista",
        "requireDriverField": True,
        "requireOperatorSignature": False,
        "requireMotoristSignature": True,
    },
    "mecanico": {
        "kind": "mecanico",
        "requireDriverField": True,
        "requireOperatorSignature": False,
        "requireMotoristSignature": True,
    },
}

HEADER_FIELDS = ("foNumber", "issueDate", "revision", "documentNumber")


class TemplateNotFoundError(FileNotFoundError):
    pass


# -------------------------------
# Question / variable helpers
# -------------------------------

def resolve_photo_rule(question: Optional[dict]) -> str:
    """Return the effective photo rule of a question.

    Questions saved before photo rules existed only carry `requiresPhoto`;
    true maps to 'required_nc', anything else to 'optional'.
    """
    q = question or {}
    rule = q.get("photoRule")
    if rule in PHOTO_RULES:
        return rule
    if q.get("requiresPhoto") is True:
        return "required_nc"
    return "optional"


def compute_window_days(quantity: int, unit: str) -> int:
    if unit == "day":
        return quantity
    if unit == "week":
        return quantity * 7
    return quantity * 30


def _normalize_periodicity(raw: Any) -> Optional[dict]:
    if not isinstance(raw, dict):
        return None
    unit = raw.get("unit") if raw.get("unit") in PERIODICITY_UNITS else "day"
    try:
        quantity = max(1, int(math.floor(float(raw.get("quantity", 1)))))
    except (TypeError, ValueError):
        quantity = 1
    anchor = raw.get("anchor") if raw.get("anchor") in PERIODICITY_ANCHORS else "last_submission"
    return {
        "quantity": quantity,
        "unit": unit,
        "windowDays": compute_window_days(quantity, unit),
        "anchor": anchor,
        "active": raw.get("active") is True,
    }


def _normalize_variable(raw: Any) -> Optional[dict]:
    if not isinstance(raw, dict):
        return None
    name = str(raw.get("name") or "").strip()
    if not name:
        raise ValueError("variable name is required")
    vtype = raw.get("type")
    if vtype not in VARIABLE_TYPES:
        raise ValueError(f"variable type must be one of: {', '.join(VARIABLE_TYPES)}")
    condition = raw.get("condition") or "always"
    if condition not in VARIABLE_CONDITIONS:
        raise ValueError(f"variable condition must be one of: {', '.join(VARIABLE_CONDITIONS)}")
    var: Dict[str, Any] = {"name": name, "type": vtype, "condition": condition}
    alert = raw.get("alertRule")
    if isinstance(alert, dict):
        trigger = alert.get("triggerCondition") or "nc"
        if trigger not in VARIABLE_CONDITIONS:
            raise ValueError("alertRule.triggerCondition must be ok, nc or always")
        var["alertRule"] = {
            "color": str(alert.get("color") or "red"),
            "message": str(alert.get("message") or "").strip(),
            "triggerCondition": trigger,
            "showOnHomePage": alert.get("showOnHomePage") is not False,
        }
    periodicity = _normalize_periodicity(raw.get("periodicity"))
    if periodicity is not None:
        var["periodicity"] = periodicity
    return var


def normalize_question(raw: Dict) -> dict:
    if not isinstance(raw, dict):
        raise ValueError("each question must be a mapping")
    text = str(raw.get("text") or "").strip()
    if not text:
        raise ValueError("question text is required")
    q: Dict[str, Any] = {
        "id": str(raw.get("id") or "").strip() or str(uuid.uuid4()),
        "text": text,
        "photoRule": resolve_photo_rule(raw),
    }
    # Keep the legacy flag in sync so older readers keep working
    q["requiresPhoto"] = q["photoRule"] == "required_nc"
    variable = _normalize_variable(raw.get("variable"))
    if variable is not None:
        q["variable"] = variable
    for key in ("systemCategory", "system", "category", "group", "section"):
        val = raw.get(key)
        if isinstance(val, str) and val.strip():
            q[key] = val.strip()
    return q


def normalize_questions(questions: Any) -> List[dict]:
    if questions is None:
        return []
    if not isinstance(questions, list):
        raise ValueError("questions must be a list")
    out = [normalize_question(q) for q in questions]
    ids = [q["id"] for q in out]
    if len(ids) != len(set(ids)):
        raise ValueError("question ids must be unique within a template")
    return out


def get_template_actor_config(template: Optional[dict], fallback_kind: str = "operador") -> dict:
    """Return the actor configuration of a template with per-kind defaults filled in."""
    tpl = template or {}
    actor = tpl.get("actor") if isinstance(tpl.get("actor"), dict) else {}
    kind = actor.get("kind") or tpl.get("type") or fallback_kind
    defaults = ACTOR_DEFAULTS_BY_KIND.get(kind, ACTOR_DEFAULTS_BY_KIND["operador"])
    out = {"kind": kind}
    for key in ("requireDriverField", "requireOperatorSignature", "requireMotoristSignature"):
        val = actor.get(key)
        out[key] = val if isinstance(val, bool) else defaults[key]
    return out


def get_template_header(template: Optional[dict]) -> dict:
    header = (template or {}).get("header")
    header = header if isinstance(header, dict) else {}
    return {k: str(header.get(k) or "") for k in HEADER_FIELDS}


def find_question(template: dict, question_id: str) -> Optional[dict]:
    for q in template.get("questions") or []:
        if isinstance(q, dict) and q.get("id") == question_id:
            return q
    return None


# -------------------------------
# CRUD
# -------------------------------

def _clean_fields(fields: Dict, *, partial: bool) -> Dict:
    data: Dict[str, Any] = {}
    if "type" in fields or not partial:
        ttype = fields.get("type") or "operador"
        if ttype not in ACTOR_KINDS:
            raise ValueError(f"type must be one of: {', '.join(ACTOR_KINDS)}")
        data["type"] = ttype
    if "title" in fields or not partial:
        title = str(fields.get("title") or "").strip()
        if not title:
            raise ValueError("title is required")
        data["title"] = title
    if "version" in fields or not partial:
        try:
            data["version"] = int(fields.get("version") or 1)
        except (TypeError, ValueError):
            raise ValueError("version must be an integer")
    if "isActive" in fields or not partial:
        data["isActive"] = fields.get("isActive") is not False
    if "questions" in fields or not partial:
        data["questions"] = normalize_questions(fields.get("questions"))
    if "header" in fields:
        data["header"] = get_template_header({"header": fields.get("header")})
    if "actor" in fields:
        actor = fields.get("actor")
        if actor is None:
            data["actor"] = None
        else:
            if not isinstance(actor, dict) or actor.get("kind") not in ACTOR_KINDS:
                raise ValueError("actor.kind must be operador, motorista or mecanico")
            data["actor"] = get_template_actor_config({"actor": actor})
    if "periodicity" in fields:
        data["periodicity"] = _normalize_periodicity(fields.get("periodicity"))
    return data


def list_templates(datarepo_path: Path, *, active_only: bool = False) -> List[dict]:
    templates = list_documents(datarepo_path, COLLECTION)
    if active_only:
        templates = [t for t in templates if t.get("isActive") is not False]
    templates.sort(key=lambda t: str(t.get("title") or "").lower())
    return templates


def get_template(datarepo_path: Path, template_id: str) -> dict:
    try:
        return get_document(datarepo_path, COLLECTION, template_id)
    except FileNotFoundError:
        raise TemplateNotFoundError(f"Template '{template_id}' not found")


def create_template(datarepo_path: Path, fields: Dict, template_id: Optional[str] = None) -> dict:
    data = _clean_fields(fields or {}, partial=False)
    return create_document(datarepo_path, COLLECTION, data, template_id)


def update_template(datarepo_path: Path, template_id: str, updates: Dict) -> dict:
    get_template(datarepo_path, template_id)
    data = _clean_fields(updates or {}, partial=True)
    return update_document(datarepo_path, COLLECTION, template_id, data)


def delete_template(datarepo_path: Path, template_id: str) -> None:
    delete_document(datarepo_path, COLLECTION, template_id)


def active_templates_for_machine(datarepo_path: Path, machine: dict) -> List[dict]:
    """Active templates assigned to a machine, in the machine's checklist order."""
    out: List[dict] = []
    for tid in machine.get("checklists") or []:
        try:
            tpl = get_template(datarepo_path, str(tid))
        except (FileNotFoundError, ValueError):
            continue
        if tpl.get("isActive") is False:
            continue
        out.append(tpl)
    return out


# -------------------------------
# Template periodicity
# -------------------------------

class PeriodicityPatch(BaseModel):
    """Payload accepted by set_template_periodicity.

    Only `active` is required and must be a real boolean; the other keys are
    checked by hand so that an absent key and an invalid one can be told apart.
    """

    active: StrictBool
    unit: Any = None
    quantity: Any = None
    anchor: Any = None

    model_config = ConfigDict(extra="ignore")


def set_template_periodicity(datarepo_path: Path, template_id: str, payload: Dict) -> dict:
    """Validate and store a template's periodicity; returns the stored periodicity.

    Raises TemplateNotFoundError, or ValueError with a user-facing message.
    """
    if not isinstance(payload, dict):
        raise ValueError("JSON inválido")
    patch = PeriodicityPatch.model_validate(payload)
    provided = patch.model_fields_set
    active = patch.active

    template = get_template(datarepo_path, template_id)
    current = template.get("periodicity") if isinstance(template.get("periodicity"), dict) else {}

    unit = current.get("unit") or "day"
    quantity = current.get("quantity") or 1
    anchor = current.get("anchor") or "last_submission"

    if patch.unit in PERIODICITY_UNITS:
        unit = patch.unit
    elif active and "unit" in provided:
        raise ValueError("Unidade de periodicidade inválida")

    q = patch.quantity
    if isinstance(q, (int, float)) and not isinstance(q, bool) and math.isfinite(q):
        quantity = max(1, int(math.floor(q)))
    elif active and "quantity" in provided:
        raise ValueError("Quantidade inválida")

    if patch.anchor in PERIODICITY_ANCHORS:
        anchor = patch.anchor
    elif "anchor" in provided:
        raise ValueError("Âncora inválida")

    if anchor != "last_submission" and active:
        raise ValueError("Anchor calendar ainda não suportada")

    periodicity = {
        "quantity": int(quantity),
        "unit": unit,
        "windowDays": compute_window_days(int(quantity), unit),
        "anchor": anchor,
        "active": active,
    }
    update_document(datarepo_path, COLLECTION, template_id, {"periodicity": periodicity})
    return periodicity
