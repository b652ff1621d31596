from __future__ import annotations

from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import Annotated, Dict, Iterable, List, Literal, Optional
import json
import re
import unicodedata
import uuid

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError, field_validator

from .config import get_nc_due_days, get_nc_max_fetch, get_nc_recurrence_window_days
from .gitutils import git_commit_paths
from .store import (
    append_audit,
    create_document,
    document_path,
    get_document,
    list_audits,
    list_documents,
    now_iso,
    parse_iso,
    update_document,
)
from .telemetry import fetch_telemetry_snapshot, sanitize_telemetry

COLLECTION = "nonConformities"

STATUSES = ("aberta", "em_execucao", "aguardando_peca", "bloqueada", "resolvida")
SEVERITIES = ("baixa", "media", "alta")
SEVERITY_RANK = {"baixa": 1, "media": 2, "alta": 3}
PAGE_SIZES = (10, 20, 50, 100)
AUDIT_LIMIT = 50


class NonConformityNotFoundError(FileNotFoundError):
    pass


class NonConformityRuleError(ValueError):
    """A patch was rejected by a closing rule (corrective/preventive actions, root cause)."""


class QueryValidationError(ValueError):
    """Invalid list query; `details` follows the {formErrors, fieldErrors} shape."""

    def __init__(self, details: Dict):
        super().__init__("Bad Request")
        self.details = details


# -------------------------------
# Small helpers shared by explosion and patching
# -------------------------------

def severity_rank(severity: Optional[str], fallback: Optional[int] = None) -> int:
    if severity in SEVERITY_RANK:
        return SEVERITY_RANK[severity]
    if isinstance(fallback, int) and not isinstance(fallback, bool):
        return fallback
    return SEVERITY_RANK["media"]


def default_due_at(created_at: str, severity: Optional[str], due_days: Optional[Dict] = None) -> str:
    """createdAt plus the SLA days of the severity (media when unknown)."""
    days_map = due_days or {"alta": 2, "media": 5, "baixa": 10}
    days = days_map.get(severity or "media", days_map.get("media", 5))
    base = parse_iso(created_at) or datetime.now(timezone.utc)
    return now_iso(base + timedelta(days=days))


def ensure_iso_date(value) -> str:
    dt = parse_iso(value)
    return now_iso(dt) if dt is not None else now_iso()


def normalize_title(value: Optional[str]) -> str:
    """Accent-free, lowercase, alphanumeric words separated by single spaces."""
    decomposed = unicodedata.normalize("NFD", str(value or ""))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", " ", stripped.lower()).strip()


def extract_system(question: Optional[dict]) -> Optional[str]:
    if not question:
        return None
    for key in ("systemCategory", "system", "category", "group", "section"):
        val = question.get(key)
        if val:
            return str(val)
    return None


def find_recurrence(recent: Iterable[Dict], normalized_title: str, system_category: Optional[str]) -> Optional[str]:
    """Id of the first recent NC with the same system category (when both are set) or the same title."""
    for item in recent:
        if system_category and item.get("systemCategory") and item.get("systemCategory") == system_category:
            return item.get("id")
        if item.get("normalizedTitle") == normalized_title:
            return item.get("id")
    return None


# -------------------------------
# Explosion: checklist response -> NC documents
# -------------------------------

def map_response_to_nc_docs(
    *,
    response_id: str,
    response: Dict,
    machine: Optional[Dict],
    template_questions: Dict[str, Dict],
    recent: List[Dict],
    telemetry: Optional[Dict],
    created_at: str,
    due_days: Optional[Dict] = None,
) -> List[dict]:
    """Build one NC per 'nc' answer and one per titled extra NC. Pure; nothing is written."""
    machine = machine or {}
    base_asset = {
        "id": response.get("machineId"),
        "tag": machine.get("tag") or "",
        "modelo": machine.get("modelo"),
        "tipo": machine.get("tipo") or machine.get("fleetType"),
        "setor": machine.get("setor"),
    }
    created_by = {
        "id": response.get("userId"),
        "matricula": response.get("operatorMatricula") or response.get("userId"),
        "nome": response.get("operatorNome"),
    }
    docs: List[dict] = []

    def _push(*, title, description=None, severity=None, safety_risk=None, impact=None,
              source, origin_question_id=None, system_category=None):
        sev = severity or "media"
        normalized = normalize_title(title)
        docs.append({
            "title": title,
            "description": description if description else None,
            "severity": sev,
            "safetyRisk": bool(safety_risk),
            "impactAvailability": bool(impact),
            "status": "aberta",
            "dueAt": default_due_at(created_at, sev, due_days),
            "createdAt": created_at,
            "createdBy": dict(created_by),
            "linkedAsset": dict(base_asset),
            "linkedTemplateId": response.get("templateId"),
            "source": source,
            "originChecklistResponseId": response_id,
            "originQuestionId": origin_question_id,
            "rootCause": None,
            "actions": [],
            "recurrenceOfId": find_recurrence(recent, normalized, system_category),
            "telemetryRef": telemetry,
            "yearMonth": created_at[:7],
            "severityRank": severity_rank(sev),
            "systemCategory": system_category,
            "normalizedTitle": normalized,
        })

    for answer in response.get("answers") or []:
        if not isinstance(answer, dict) or answer.get("response") != "nc":
            continue
        qid = answer.get("questionId")
        question = template_questions.get(qid)
        _push(
            title=(question or {}).get("text") or f"Pergunta {qid}",
            description=answer.get("observation"),
            severity="media",
            source="checklist_question",
            origin_question_id=qid,
            system_category=extract_system(question),
        )

    for extra in response.get("extraNonConformities") or []:
        if not isinstance(extra, dict):
            continue
        title = str(extra.get("title") or "").strip()
        if not title:
            continue
        sev = extra.get("severity") if extra.get("severity") in SEVERITIES else None
        _push(
            title=title,
            description=extra.get("description"),
            severity=sev,
            safety_risk=extra.get("safetyRisk"),
            impact=extra.get("impactAvailability"),
            source="checklist_extra",
        )
    return docs


def load_recent_nonconformities(datarepo_path: Path, asset_id: str, cutoff: datetime) -> List[dict]:
    """NCs of an asset created at or after cutoff, newest first, reduced to recurrence keys."""
    out = []
    for doc in list_documents(datarepo_path, COLLECTION):
        if (doc.get("linkedAsset") or {}).get("id") != asset_id:
            continue
        created = parse_iso(doc.get("createdAt"))
        if created is None or created < cutoff:
            continue
        out.append({
            "id": doc["id"],
            "createdAt": created,
            "normalizedTitle": normalize_title(doc.get("normalizedTitle") or doc.get("title") or ""),
            "systemCategory": doc.get("systemCategory") if isinstance(doc.get("systemCategory"), str) else None,
        })
    out.sort(key=lambda r: r["createdAt"], reverse=True)
    return out


def explode_checklist_response(datarepo_path: Path, response_id: str, response: Optional[Dict] = None) -> List[dict]:
    """Create the NC documents for a stored checklist response and commit them together."""
    if response is None:
        response = get_document(datarepo_path, "checklistResponses", response_id)
    created_at = ensure_iso_date(response.get("createdAt"))
    asset_id = str(response.get("machineId") or "")

    machine: Dict = {}
    template: Dict = {}
    try:
        machine = get_document(datarepo_path, "machines", asset_id)
    except (FileNotFoundError, ValueError):
        print(f"[fleetcheck] Warning: machine '{asset_id}' not found for response {response_id}")
    try:
        template = get_document(datarepo_path, "checklistTemplates", str(response.get("templateId") or ""))
    except (FileNotFoundError, ValueError):
        print(f"[fleetcheck] Warning: template '{response.get('templateId')}' not found for response {response_id}")
    questions = {q.get("id"): q for q in template.get("questions") or [] if isinstance(q, dict)}

    window = get_nc_recurrence_window_days(datarepo_path)
    cutoff = parse_iso(created_at) - timedelta(days=window)
    recent = load_recent_nonconformities(datarepo_path, asset_id, cutoff)
    telemetry = fetch_telemetry_snapshot(asset_id, created_at)

    docs = map_response_to_nc_docs(
        response_id=response_id,
        response=response,
        machine=machine,
        template_questions=questions,
        recent=recent,
        telemetry=telemetry,
        created_at=created_at,
        due_days=get_nc_due_days(datarepo_path),
    )
    if not docs:
        return []
    created: List[dict] = []
    paths: List[Path] = []
    for doc in docs:
        rec = create_document(datarepo_path, COLLECTION, doc, commit=False)
        created.append(rec)
        paths.append(document_path(datarepo_path, COLLECTION, rec["id"]))
    git_commit_paths(
        datarepo_path,
        paths,
        f"[fleetcheck] Created {len(created)} non-conformities from response {response_id}",
    )
    return created


# -------------------------------
# Read-side mapping
# -------------------------------

def parse_actions(raw, fallback: Optional[List[dict]] = None) -> List[dict]:
    """Parse an actions array; entries without a description are dropped.

    Returns fallback when raw is not a list.
    """
    if not isinstance(raw, list):
        return list(fallback or [])
    out: List[dict] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        description = item.get("description").strip() if isinstance(item.get("description"), str) else ""
        if not description:
            continue
        action = {
            "id": item.get("id") if isinstance(item.get("id"), str) and item.get("id") else str(uuid.uuid4()),
            "type": "preventiva" if item.get("type") == "preventiva" else "corretiva",
            "description": description,
        }
        owner = item.get("owner")
        if isinstance(owner, dict) and isinstance(owner.get("id"), str):
            action["owner"] = {"id": owner["id"], "nome": owner.get("nome") if isinstance(owner.get("nome"), str) else None}
        for key in ("startedAt", "completedAt"):
            if isinstance(item.get(key), str):
                action[key] = item[key]
        if isinstance(item.get("effective"), bool):
            action["effective"] = item["effective"]
        out.append(action)
    return out


def _str_or_none(v) -> Optional[str]:
    return v if isinstance(v, str) else None


def map_nc_document(doc: Dict) -> dict:
    """Normalize a stored NC so readers can rely on its shape."""
    severity = doc.get("severity") if doc.get("severity") in SEVERITIES else None
    created_at = ensure_iso_date(doc.get("createdAt"))
    asset = doc.get("linkedAsset") if isinstance(doc.get("linkedAsset"), dict) else {}
    created_by = doc.get("createdBy") if isinstance(doc.get("createdBy"), dict) else {}
    return {
        "id": doc.get("id"),
        "title": doc.get("title") if isinstance(doc.get("title"), str) else "",
        "description": _str_or_none(doc.get("description")),
        "severity": severity,
        "safetyRisk": doc.get("safetyRisk") if isinstance(doc.get("safetyRisk"), bool) else None,
        "impactAvailability": doc.get("impactAvailability") if isinstance(doc.get("impactAvailability"), bool) else None,
        "status": doc.get("status") if doc.get("status") in STATUSES else "aberta",
        "dueAt": _str_or_none(doc.get("dueAt")),
        "createdAt": created_at,
        "createdBy": {
            "id": created_by.get("id") if isinstance(created_by.get("id"), str) else "",
            "matricula": created_by.get("matricula") if isinstance(created_by.get("matricula"), str) else "",
            "nome": _str_or_none(created_by.get("nome")),
        },
        "linkedAsset": {
            "id": asset.get("id") if isinstance(asset.get("id"), str) else "",
            "tag": asset.get("tag") if isinstance(asset.get("tag"), str) else "",
            "modelo": _str_or_none(asset.get("modelo")),
            "tipo": _str_or_none(asset.get("tipo")),
            "setor": _str_or_none(asset.get("setor")),
        },
        "linkedTemplateId": _str_or_none(doc.get("linkedTemplateId")),
        "source": "checklist_extra" if doc.get("source") == "checklist_extra" else "checklist_question",
        "originChecklistResponseId": doc.get("originChecklistResponseId") if isinstance(doc.get("originChecklistResponseId"), str) else "",
        "originQuestionId": _str_or_none(doc.get("originQuestionId")),
        "rootCause": _str_or_none(doc.get("rootCause")),
        "actions": parse_actions(doc.get("actions"), []),
        "recurrenceOfId": _str_or_none(doc.get("recurrenceOfId")),
        "telemetryRef": sanitize_telemetry(doc.get("telemetryRef")),
        "yearMonth": doc.get("yearMonth") if isinstance(doc.get("yearMonth"), str) else created_at[:7],
        "severityRank": severity_rank(severity, doc.get("severityRank")),
        "systemCategory": _str_or_none(doc.get("systemCategory")),
        "updatedAt": _str_or_none(doc.get("updatedAt")),
    }


def list_all_nonconformities(datarepo_path: Path) -> List[dict]:
    return [map_nc_document(d) for d in list_documents(datarepo_path, COLLECTION)]


def matches_filters(record: Dict, filters: Dict) -> bool:
    """Client-side filter used by the admin NC table.

    filters: statuses (list), severities (list), assetId (id or TAG),
    dateFrom/dateTo (ISO), query (substring, case-insensitive).
    """
    statuses = filters.get("statuses") or []
    if statuses and record.get("status") not in statuses:
        return False
    severities = filters.get("severities") or []
    if severities and (not record.get("severity") or record.get("severity") not in severities):
        return False
    asset = record.get("linkedAsset") or {}
    asset_id = filters.get("assetId")
    if asset_id and asset.get("id") != asset_id and asset.get("tag") != asset_id:
        return False
    created = parse_iso(record.get("createdAt"))
    if filters.get("dateFrom"):
        start = parse_iso(filters["dateFrom"])
        if created is None or (start is not None and created < start):
            return False
    if filters.get("dateTo"):
        end = parse_iso(filters["dateTo"])
        if created is None or (end is not None and created > end):
            return False
    query = filters.get("query")
    if query:
        haystack = " ".join(
            str(v or "").lower()
            for v in (
                record.get("title"),
                record.get("description"),
                asset.get("tag"),
                asset.get("modelo"),
                (record.get("createdBy") or {}).get("matricula"),
                record.get("rootCause"),
            )
        )
        if query.lower() not in haystack:
            return False
    return True


# -------------------------------
# List query (GET /api/nc)
# -------------------------------

NonEmpty = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class NcListQuery(BaseModel):
    page: int = Field(1, ge=1)
    pageSize: int = 20
    status: Optional[Literal["aberta", "em_execucao", "aguardando_peca", "bloqueada", "resolvida"]] = None
    severity: Optional[Literal["baixa", "media", "alta"]] = None
    assetId: Optional[NonEmpty] = None
    machineId: Optional[NonEmpty] = None
    templateId: Optional[NonEmpty] = None
    operatorMatricula: Optional[NonEmpty] = None
    q: Optional[NonEmpty] = None
    search: Optional[NonEmpty] = None
    dateFrom: Optional[NonEmpty] = None
    to: Optional[NonEmpty] = None
    dateTo: Optional[NonEmpty] = None
    from_: Optional[NonEmpty] = Field(None, alias="from")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @field_validator("pageSize")
    @classmethod
    def _page_size_allowed(cls, v: int) -> int:
        if v not in PAGE_SIZES:
            raise ValueError("pageSize must be one of 10, 20, 50 or 100")
        return v


def _flatten_errors(exc: ValidationError) -> Dict:
    form_errors: List[str] = []
    field_errors: Dict[str, List[str]] = {}
    for err in exc.errors():
        loc = err.get("loc") or ()
        name = str(loc[0]) if loc else ""
        if err.get("type") == "extra_forbidden":
            form_errors.append(f"Unrecognized key in query: '{name}'")
            continue
        if name == "from_":
            name = "from"
        msg = str(err.get("msg") or "Invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        field_errors.setdefault(name, []).append(msg)
    return {"formErrors": form_errors, "fieldErrors": field_errors}


def _parse_bound(value: str, end_of_day: bool = False) -> Optional[datetime]:
    raw = value.strip()
    dt = parse_iso(raw)
    if dt is None:
        return None
    if end_of_day:
        dt = dt.replace(hour=23, minute=59, second=59, microsecond=999000)
    return dt


def parse_list_query(params: Dict) -> dict:
    """Validate query-string params into a normalized filter dict.

    Raises QueryValidationError on unknown keys, bad values or from > to.
    """
    try:
        q = NcListQuery.model_validate(dict(params or {}))
    except ValidationError as exc:
        raise QueryValidationError(_flatten_errors(exc))
    date_from = q.dateFrom or q.from_
    date_to = q.dateTo or q.to
    from_dt = _parse_bound(date_from) if date_from else None
    to_dt = _parse_bound(date_to, end_of_day=True) if date_to else None
    if from_dt and to_dt and from_dt > to_dt:
        raise QueryValidationError({"formErrors": ["from must be before to"], "fieldErrors": {}})
    return {
        "page": q.page,
        "pageSize": q.pageSize,
        "status": q.status,
        "severity": q.severity,
        "assetId": q.assetId or q.machineId,
        "templateId": q.templateId,
        "operatorMatricula": q.operatorMatricula,
        "search": q.q or q.search,
        "from": from_dt,
        "to": to_dt,
    }


def _matches_search(record: Dict, term: Optional[str]) -> bool:
    if not term:
        return True
    asset = record.get("linkedAsset") or {}
    by = record.get("createdBy") or {}
    haystack = " ".join(
        v for v in (
            record.get("title"),
            record.get("description"),
            asset.get("tag"),
            asset.get("modelo"),
            asset.get("setor"),
            by.get("nome"),
            by.get("matricula"),
            record.get("rootCause"),
            record.get("originChecklistResponseId"),
            record.get("originQuestionId"),
            record.get("systemCategory"),
        )
        if isinstance(v, str) and v
    ).lower()
    return term.lower() in haystack


def list_nonconformities(datarepo_path: Path, params: Dict) -> dict:
    """Filtered, newest-first page of NCs: {data, page, pageSize, total, hasMore}.

    Equality and date filters select candidates, which are capped like a
    bounded store query; template, operator and free-text filters then apply.
    """
    f = parse_list_query(params)
    page, page_size = f["page"], f["pageSize"]
    fetch_limit = min(get_nc_max_fetch(datarepo_path), max(page * page_size + page_size, page_size * 2))

    candidates = []
    for rec in list_all_nonconformities(datarepo_path):
        if f["status"] and rec["status"] != f["status"]:
            continue
        if f["severity"] and rec["severity"] != f["severity"]:
            continue
        if f["assetId"] and rec["linkedAsset"]["id"] != f["assetId"]:
            continue
        created = parse_iso(rec["createdAt"])
        if (f["from"] or f["to"]) and created is None:
            continue
        if f["from"] and created < f["from"]:
            continue
        if f["to"] and created > f["to"]:
            continue
        candidates.append((created.timestamp() if created else 0.0, rec))
    candidates.sort(key=lambda c: (-c[0], str(c[1]["id"])))
    candidates = candidates[:fetch_limit]

    filtered = [
        rec for _, rec in candidates
        if (not f["templateId"] or rec["linkedTemplateId"] == f["templateId"])
        and (not f["operatorMatricula"] or rec["createdBy"]["matricula"] == f["operatorMatricula"])
        and _matches_search(rec, f["search"])
    ]
    total = len(filtered)
    start = (page - 1) * page_size
    return {
        "data": filtered[start:start + page_size],
        "page": page,
        "pageSize": page_size,
        "total": total,
        "hasMore": start + page_size < total,
    }


def get_nonconformity(datarepo_path: Path, nc_id: str) -> dict:
    """Return {data, audits} with the latest audit entries first."""
    try:
        doc = get_document(datarepo_path, COLLECTION, nc_id)
    except FileNotFoundError:
        raise NonConformityNotFoundError("NC não encontrada")
    return {
        "data": map_nc_document(doc),
        "audits": list_audits(datarepo_path, COLLECTION, nc_id, limit=AUDIT_LIMIT),
    }


# -------------------------------
# Patch (PATCH /api/nc/<id>)
# -------------------------------

def resolve_due_at(existing: Dict, severity: str, requested: Optional[str], due_days: Optional[Dict] = None) -> str:
    """Pick the due date for a patched NC.

    No request keeps the current due date while the severity is unchanged,
    otherwise the SLA default applies. Requests that are invalid or before
    creation fall back to the default; 'alta' is capped at createdAt + 2 days.
    """
    fallback = default_due_at(existing["createdAt"], severity, due_days)
    if not requested:
        if severity == existing.get("severity") and parse_iso(existing.get("dueAt")) is not None:
            return existing["dueAt"]
        return fallback
    requested_dt = parse_iso(requested)
    if requested_dt is None:
        return fallback
    created = parse_iso(existing["createdAt"])
    if requested_dt < created:
        return fallback
    if severity == "alta":
        max_due = created + timedelta(days=2)
        if requested_dt > max_due:
            return now_iso(max_due)
    return now_iso(requested_dt)


def _has_completed_corrective(actions: List[dict]) -> bool:
    return any(a.get("type") == "corretiva" and a.get("completedAt") for a in actions)


def _has_effective_preventive(actions: List[dict]) -> bool:
    return any(a.get("type") == "preventiva" and a.get("effective") is True for a in actions)


def _changed(before, after) -> bool:
    return json.dumps(before, sort_keys=True, default=str) != json.dumps(after, sort_keys=True, default=str)


def patch_nonconformity(datarepo_path: Path, nc_id: str, payload: Dict, *, actor: Optional[Dict] = None) -> dict:
    """Apply a partial update, enforce closing rules and journal the diff.

    Returns {data, audits}; audits holds the new entry, or is empty when
    nothing changed (in which case nothing is written).
    """
    if not isinstance(payload, dict):
        raise ValueError("JSON inválido")
    try:
        raw = get_document(datarepo_path, COLLECTION, nc_id)
    except FileNotFoundError:
        raise NonConformityNotFoundError("NC não encontrada")
    existing = map_nc_document(raw)

    if payload.get("severity") is not None and payload.get("severity") not in SEVERITIES:
        raise ValueError("Severidade inválida")
    if payload.get("status") is not None and payload.get("status") not in STATUSES:
        raise ValueError("Status inválido")

    next_severity = payload.get("severity") or existing["severity"] or "media"
    next_status = payload.get("status") or existing["status"]
    requested_due = payload.get("dueAt") if isinstance(payload.get("dueAt"), str) else None
    next_due = resolve_due_at(existing, next_severity, requested_due, get_nc_due_days(datarepo_path))

    if isinstance(payload.get("rootCause"), str):
        next_root_cause = payload["rootCause"].strip()
        root_cause_given = True
    else:
        next_root_cause = existing["rootCause"]
        root_cause_given = False

    incoming = parse_actions(payload.get("actions"), existing["actions"])
    next_actions = incoming if incoming else existing["actions"]
    telemetry = sanitize_telemetry(payload.get("telemetryRef", payload.get("telemetry")))

    if next_status == "resolvida":
        if not _has_completed_corrective(next_actions):
            raise NonConformityRuleError("Finalize ao menos uma ação corretiva antes de encerrar a NC.")
        if existing["recurrenceOfId"]:
            if not (next_root_cause or "").strip():
                raise NonConformityRuleError("Preencha a causa raiz para encerrar uma NC recorrente.")
            if not _has_effective_preventive(next_actions):
                raise NonConformityRuleError("Marque pelo menos uma ação preventiva como eficaz (effective=true).")

    updates: Dict = {}
    diff: Dict = {}

    def _apply(key, before, after):
        if _changed(before, after):
            updates[key] = after
            diff[key] = {"before": before, "after": after}

    _apply("status", existing["status"], next_status)
    _apply("severity", existing["severity"], next_severity)
    _apply("severityRank", existing["severityRank"], severity_rank(next_severity))
    _apply("dueAt", existing["dueAt"], next_due)
    if root_cause_given:
        _apply("rootCause", existing["rootCause"], next_root_cause or None)
    if payload.get("safetyRisk") is not None:
        _apply("safetyRisk", existing["safetyRisk"] or False, bool(payload["safetyRisk"]))
    if payload.get("impactAvailability") is not None:
        _apply("impactAvailability", existing["impactAvailability"] or False, bool(payload["impactAvailability"]))
    _apply("actions", existing["actions"], next_actions)
    if telemetry is not None:
        _apply("telemetryRef", existing["telemetryRef"], telemetry)

    if not diff:
        return {"data": existing, "audits": []}

    at = now_iso()
    diff["updatedAt"] = {"before": existing.get("updatedAt"), "after": at}
    updates["updatedAt"] = at
    update_document(datarepo_path, COLLECTION, nc_id, updates, commit=False)

    who = payload.get("actor") or payload.get("updatedBy") or actor or {}
    if not isinstance(who, dict):
        who = {}
    entry = append_audit(
        datarepo_path,
        COLLECTION,
        nc_id,
        {
            "byUserId": who.get("id") or who.get("uid") or "system",
            "byNome": who.get("nome") or who.get("name"),
            "atISO": at,
            "diff": diff,
        },
        commit=False,
    )
    doc_fp = document_path(datarepo_path, COLLECTION, nc_id)
    git_commit_paths(
        datarepo_path,
        [doc_fp, doc_fp.parent / "audits.ndjson"],
        f"[fleetcheck] Updated non-conformity {nc_id} ({', '.join(k for k in diff if k != 'updatedAt')})",
    )
    return {"data": map_nc_document(get_document(datarepo_path, COLLECTION, nc_id)), "audits": [entry]}


def bulk_update_status(datarepo_path: Path, ids: List[str], status: str, *, actor: Optional[Dict] = None) -> dict:
    """Apply the same status to many NCs, one patch each.

    Returns {updated: [id], failed: [{id, error}]}. A failing id does not stop the rest.
    """
    if status not in STATUSES:
        raise ValueError("Status inválido")
    if not isinstance(ids, list) or not ids:
        raise ValueError("Selecione ao menos uma NC")
    updated: List[str] = []
    failed: List[dict] = []
    seen = set()
    for nc_id in ids:
        nc_id = str(nc_id).strip()
        if not nc_id or nc_id in seen:
            continue
        seen.add(nc_id)
        try:
            patch_nonconformity(datarepo_path, nc_id, {"status": status}, actor=actor)
            updated.append(nc_id)
        except (FileNotFoundError, ValueError) as e:
            failed.append({"id": nc_id, "error": str(e)})
    return {"updated": updated, "failed": failed}
