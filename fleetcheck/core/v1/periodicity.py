from __future__ import annotations

from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from .config import get_periodicity_cache_ttl_minutes
from .store import find_documents, get_document, list_documents, now_iso, parse_iso, set_document

CACHE_COLLECTION = "kpiCache"
CACHE_DOC_ID = "periodicity"
VARIABLE_SCAN_LIMIT = 100
ALERT_LOOKBACK_DAYS = 30
ALERT_MAX_RESPONSES = 1000


def _machine_name(machine: dict) -> str:
    for key in ("modelo", "tag"):
        v = machine.get(key)
        if isinstance(v, str) and v.strip():
            return v
    return machine["id"]


def _status(last: Optional[datetime], reference: datetime, window_days) -> str:
    try:
        window = timedelta(days=float(window_days))
    except (TypeError, ValueError):
        return "non_compliant"
    if last is not None and reference - last <= window:
        return "compliant"
    return "non_compliant"


def _summary(items: List[dict]) -> dict:
    compliant = sum(1 for i in items if i["status"] == "compliant")
    return {"totalTracked": len(items), "compliant": compliant, "nonCompliant": len(items) - compliant}


def parse_compliance_filters(params: Dict) -> dict:
    """Validate from/to/machineId/templateId query params. Raises ValueError."""
    params = params or {}
    out: Dict = {}
    for key in ("from", "to"):
        raw = params.get(key)
        if raw:
            dt = parse_iso(raw)
            if dt is None:
                raise ValueError(f"Parâmetro {key} inválido")
            out[key] = dt
    if out.get("from") and out.get("to") and out["from"] > out["to"]:
        raise ValueError("Intervalo inválido: from deve ser menor que to")
    for key in ("machineId", "templateId"):
        v = str(params.get(key) or "").strip()
        if v:
            out[key] = v
    return out


def _tracked_templates(datarepo_path: Path, template_id: Optional[str]) -> List[dict]:
    if template_id:
        try:
            templates = [get_document(datarepo_path, "checklistTemplates", template_id)]
        except (FileNotFoundError, ValueError):
            return []
    else:
        templates = list_documents(datarepo_path, "checklistTemplates")
    return [
        t for t in templates
        if isinstance(t.get("periodicity"), dict) and t["periodicity"].get("active") is True
    ]


def _machines(datarepo_path: Path, machine_id: Optional[str]) -> List[dict]:
    if machine_id:
        try:
            return [get_document(datarepo_path, "machines", machine_id)]
        except (FileNotFoundError, ValueError):
            return []
    return list_documents(datarepo_path, "machines")


def _last_submission(datarepo_path: Path, template_id: str, machine_id: str, until: datetime) -> Optional[datetime]:
    def _where(doc):
        if doc.get("templateId") != template_id or doc.get("machineId") != machine_id:
            return False
        created = parse_iso(doc.get("createdAt"))
        return created is not None and created <= until

    found = find_documents(
        datarepo_path, "checklistResponses", where=_where, order_by="createdAt", descending=True, limit=1
    )
    return parse_iso(found[0].get("createdAt")) if found else None


def load_periodicity_compliance(
    datarepo_path: Path,
    filters: Optional[Dict] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Compliance of every active template periodicity for the machines that use it.

    A pair is compliant when its last submission at or before the reference
    time (`to`, else now) is no older than windowDays.
    """
    filters = filters or {}
    now = now or datetime.now(timezone.utc)
    reference = filters.get("to") or now
    templates = _tracked_templates(datarepo_path, filters.get("templateId"))
    items: List[dict] = []
    for machine in _machines(datarepo_path, filters.get("machineId")):
        assigned = set(machine.get("checklists") or [])
        for template in templates:
            requested = filters.get("templateId") == template["id"] and filters.get("machineId") == machine["id"]
            if template["id"] not in assigned and not requested:
                continue
            p = template["periodicity"]
            last = _last_submission(datarepo_path, template["id"], machine["id"], reference)
            items.append({
                "templateId": template["id"],
                "templateName": str(template.get("title") or ""),
                "machineId": machine["id"],
                "machineName": _machine_name(machine),
                "lastSubmissionAt": now_iso(last) if last else None,
                "windowDays": p.get("windowDays"),
                "unit": p.get("unit"),
                "quantity": p.get("quantity"),
                "anchor": p.get("anchor"),
                "status": _status(last, reference, p.get("windowDays")),
            })
    items.sort(key=lambda i: (i["status"] != "non_compliant", i["templateName"].lower(), i["machineName"].lower()))
    return {"generatedAt": now_iso(now), "summary": _summary(items), "items": items}


def load_variable_periodicity(datarepo_path: Path, now: Optional[datetime] = None) -> dict:
    """Compliance of question variables that carry their own active periodicity."""
    reference = now or datetime.now(timezone.utc)
    templates = {t["id"]: t for t in list_documents(datarepo_path, "checklistTemplates")}
    items: List[dict] = []
    for machine in list_documents(datarepo_path, "machines"):
        for template_id in machine.get("checklists") or []:
            template = templates.get(template_id)
            if template is None:
                continue
            responses = None
            for question in template.get("questions") or []:
                variable = question.get("variable") if isinstance(question, dict) else None
                periodicity = (variable or {}).get("periodicity")
                if not isinstance(periodicity, dict) or periodicity.get("active") is not True:
                    continue
                if responses is None:
                    responses = find_documents(
                        datarepo_path,
                        "checklistResponses",
                        where={"machineId": machine["id"], "templateId": template_id},
                        order_by="createdAt",
                        descending=True,
                        limit=VARIABLE_SCAN_LIMIT,
                    )
                last_at = None
                for response in responses:
                    answer = next(
                        (a for a in response.get("answers") or []
                         if isinstance(a, dict) and a.get("questionId") == question.get("id")),
                        None,
                    )
                    if answer is not None and answer.get("variableValue") is not None:
                        last_at = response.get("createdAt")
                        break
                last = parse_iso(last_at)
                items.append({
                    "variableName": variable.get("name"),
                    "templateId": template_id,
                    "templateName": str(template.get("title") or ""),
                    "questionId": question.get("id"),
                    "questionText": question.get("text"),
                    "machineId": machine["id"],
                    "machineName": machine.get("modelo"),
                    "machinePlaca": machine.get("placa"),
                    "lastSubmissionAt": last_at,
                    "windowDays": periodicity.get("windowDays"),
                    "unit": periodicity.get("unit"),
                    "quantity": periodicity.get("quantity"),
                    "anchor": periodicity.get("anchor"),
                    "status": _status(last, reference, periodicity.get("windowDays")),
                })
    items.sort(key=lambda i: (
        i["status"] != "non_compliant",
        str(i["variableName"] or "").lower(),
        str(i["machineName"] or "").lower(),
    ))
    return {"generatedAt": now_iso(reference), "summary": _summary(items), "items": items}


def _alert_triggered(trigger: Optional[str], response: Optional[str]) -> bool:
    return trigger == "always" or (trigger in ("nc", "ok") and trigger == response)


def load_variable_alerts(datarepo_path: Path, now: Optional[datetime] = None) -> dict:
    """Home-page alerts raised by variable alert rules over the last 30 days.

    Only the most recent alert per variable, machine, template and question is kept.
    """
    reference = now or datetime.now(timezone.utc)
    since = reference - timedelta(days=ALERT_LOOKBACK_DAYS)
    templates = {t["id"]: t for t in list_documents(datarepo_path, "checklistTemplates")}
    machines = {m["id"]: m for m in list_documents(datarepo_path, "machines")}
    responses = find_documents(
        datarepo_path,
        "checklistResponses",
        where=lambda d: (parse_iso(d.get("createdAt")) or since - timedelta(seconds=1)) >= since,
        limit=ALERT_MAX_RESPONSES,
    )
    latest: Dict[str, dict] = {}
    for response in responses:
        template = templates.get(response.get("templateId"))
        machine = machines.get(response.get("machineId"))
        if template is None or machine is None:
            continue
        questions = {q.get("id"): q for q in template.get("questions") or [] if isinstance(q, dict)}
        for answer in response.get("answers") or []:
            if not isinstance(answer, dict):
                continue
            question = questions.get(answer.get("questionId"))
            variable = (question or {}).get("variable")
            rule = (variable or {}).get("alertRule")
            if not isinstance(rule, dict) or rule.get("showOnHomePage") is False:
                continue
            if not _alert_triggered(rule.get("triggerCondition"), answer.get("response")):
                continue
            item = {
                "variableName": variable.get("name"),
                "templateId": template["id"],
                "templateName": template.get("title"),
                "questionId": question.get("id"),
                "questionText": question.get("text"),
                "machineId": machine["id"],
                "machineName": machine.get("modelo"),
                "machinePlaca": machine.get("placa"),
                "responseId": response["id"],
                "responseDate": response.get("createdAt"),
                "alertRule": {
                    "color": rule.get("color"),
                    "message": rule.get("message"),
                    "triggerCondition": rule.get("triggerCondition"),
                    "showOnHomePage": rule.get("showOnHomePage", True),
                },
            }
            key = f"{item['variableName']}-{item['machineId']}-{item['templateId']}-{item['questionId']}"
            current = latest.get(key)
            if current is None or parse_iso(item["responseDate"]) > parse_iso(current["responseDate"]):
                latest[key] = item
    items = sorted(latest.values(), key=lambda i: parse_iso(i["responseDate"]), reverse=True)
    return {"generatedAt": now_iso(reference), "items": items}


def run_periodicity_job(datarepo_path: Path, now: Optional[datetime] = None) -> dict:
    """Compute template compliance and cache it under kpiCache/periodicity."""
    now = now or datetime.now(timezone.utc)
    result = load_periodicity_compliance(datarepo_path, now=now)
    ttl = get_periodicity_cache_ttl_minutes(datarepo_path)
    set_document(
        datarepo_path,
        CACHE_COLLECTION,
        CACHE_DOC_ID,
        {
            "generatedAt": result["generatedAt"],
            "summary": result["summary"],
            "items": result["items"],
            "cachedAt": now_iso(now),
            "expiresAt": now_iso(now + timedelta(minutes=ttl)),
        },
    )
    return {"ok": True, "generatedAt": result["generatedAt"], "summary": result["summary"]}


def get_cached_periodicity(datarepo_path: Path, now: Optional[datetime] = None) -> Optional[dict]:
    """Cached job result, or None when missing or expired."""
    now = now or datetime.now(timezone.utc)
    try:
        cached = get_document(datarepo_path, CACHE_COLLECTION, CACHE_DOC_ID)
    except FileNotFoundError:
        return None
    expires = parse_iso(cached.get("expiresAt"))
    if expires is None or expires < now:
        return None
    return cached
