from __future__ import annotations

from pathlib import Path
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
import math
import re

from .machines import find_machine_by_tag, get_machine, normalize_tag
from .nonconformities import explode_checklist_response
from .store import create_document, find_documents, get_document, now_iso, parse_iso, update_document
from .templates import (
    active_templates_for_machine,
    get_template,
    get_template_actor_config,
    get_template_header,
    resolve_photo_rule,
)
from .users import find_user_by_matricula

COLLECTION = "checklistResponses"

ANSWER_VALUES = ("ok", "nc", "na")
ANSWER_LABELS = {"ok": "Conforme", "nc": "Não conforme", "na": "Não se aplica"}
RECURRENCE_STATUSES = ("resolved", "still_nc")
TREATMENT_STATUSES = ("open", "in_progress", "resolved")
TREATMENT_LABELS = {"open": "Pendente", "in_progress": "Em andamento", "resolved": "Resolvido"}
DAYS_IN_WEEK = 7
DEFAULT_LAC = "012"


class MachineNotFoundError(FileNotFoundError):
    pass


class SubmissionError(ValueError):
    """Raised with every problem found in a checklist submission."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = list(errors)


# -------------------------------
# Parsing helpers
# -------------------------------

def parse_number(value) -> Optional[float]:
    """Parse a reading typed by an operator ('1.234', '12,5'). None when blank or invalid."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
    else:
        s = str(value).strip().replace(",", ".")
        if not s:
            return None
        try:
            f = float(s)
        except ValueError:
            return None
    if not math.isfinite(f):
        return None
    return int(f) if f.is_integer() else f


_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_TRUE = ("true", "1", "sim", "yes", "on")
_FALSE = ("false", "0", "nao", "não", "no", "off")


def variable_visible(variable: Optional[dict], response: Optional[str]) -> bool:
    if not variable or not response:
        return False
    condition = variable.get("condition") or "always"
    return condition == "always" or condition == response


def coerce_variable_value(variable: dict, raw) -> Any:
    """Convert a submitted value to the variable's declared type; ValueError if it does not fit."""
    vtype = variable.get("type")
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise ValueError("empty")
    if vtype == "int":
        n = parse_number(raw)
        if n is None or float(n) != int(n):
            raise ValueError("not an integer")
        return int(n)
    if vtype == "decimal":
        n = parse_number(raw)
        if n is None:
            raise ValueError("not a number")
        return n
    if vtype == "boolean":
        if isinstance(raw, bool):
            return raw
        s = str(raw).strip().lower()
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
        raise ValueError("not a boolean")
    s = str(raw).strip()
    if vtype == "date":
        date.fromisoformat(s[:10])
        return s[:10]
    if vtype == "time":
        if not _TIME_RE.match(s[:5]):
            raise ValueError("not a time")
        return s[:5]
    return s


def photo_urls_of(answer: Optional[dict]) -> List[str]:
    """Photo URLs of an answer, including the single legacy photoUrl."""
    a = answer or {}
    urls = [str(u) for u in a.get("photoUrls") or [] if u]
    if a.get("photoUrl") and a["photoUrl"] not in urls:
        urls.append(str(a["photoUrl"]))
    return urls


def format_date_short(dt: datetime) -> str:
    return dt.strftime("%d/%m/%y")


# -------------------------------
# Responses and previous readings
# -------------------------------

def list_responses(
    datarepo_path: Path,
    *,
    machine_id: Optional[str] = None,
    template_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[dict]:
    """Responses newest first, optionally for one machine and/or template."""
    where: Dict[str, str] = {}
    if machine_id:
        where["machineId"] = machine_id
    if template_id:
        where["templateId"] = template_id
    return find_documents(
        datarepo_path, COLLECTION, where=where or None, order_by="createdAt", descending=True, limit=limit
    )


def get_response(datarepo_path: Path, response_id: str) -> dict:
    return get_document(datarepo_path, COLLECTION, response_id)


def get_previous_response(datarepo_path: Path, machine_id: str, template_id: str) -> Optional[dict]:
    found = list_responses(datarepo_path, machine_id=machine_id, template_id=template_id, limit=1)
    return found[0] if found else None


def previous_nc_map(previous: Optional[dict]) -> Dict[str, dict]:
    """Answers of a response that were 'nc', keyed by question id."""
    out: Dict[str, dict] = {}
    for answer in (previous or {}).get("answers") or []:
        if isinstance(answer, dict) and answer.get("response") == "nc":
            out[answer.get("questionId")] = answer
    return out


def get_previous_reading(datarepo_path: Path, machine_id: str) -> dict:
    """km (else horimetro) of the latest response of the machine: {value, sourceId}."""
    found = list_responses(datarepo_path, machine_id=machine_id, limit=1)
    if not found:
        return {"value": None, "sourceId": None}
    latest = found[0]
    value = None
    for key in ("km", "horimetro"):
        v = latest.get(key)
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            value = v
            break
    return {"value": value, "sourceId": latest["id"]}


# -------------------------------
# Actor / driver / header
# -------------------------------

def resolve_driver_name(actor_kind: str, form_driver_name: Optional[str] = None, operator_user: Optional[dict] = None) -> str:
    trimmed = (form_driver_name or "").strip()
    if trimmed:
        return trimmed
    if actor_kind == "mecanico":
        return ""
    return str((operator_user or {}).get("nome") or "").strip()


def get_actor_snapshot(
    actor_kind: str,
    *,
    mechanic_matricula: Optional[str] = None,
    mechanic_nome: Optional[str] = None,
    driver_matricula: Optional[str] = None,
    driver_nome: Optional[str] = None,
) -> dict:
    snapshot: Dict[str, Any] = {"kind": actor_kind}
    if actor_kind == "mecanico":
        snapshot["mechanicMatricula"] = (mechanic_matricula or "").strip() or None
        snapshot["mechanicNome"] = (mechanic_nome or "").strip() or None
    if driver_matricula:
        snapshot["driverMatricula"] = driver_matricula.strip() or None
    if driver_nome:
        snapshot["driverNome"] = driver_nome.strip() or None
    return snapshot


def resolve_header_data(template: Optional[dict], machine: Optional[dict], response: dict) -> dict:
    """Header printed on a response: the frozen one if present, else derived from the records."""
    tpl = template or {}
    m = machine or {}

    def _num(v):
        return v if isinstance(v, (int, float)) and not isinstance(v, bool) else None

    frozen = response.get("headerFrozen")
    if isinstance(frozen, dict):
        return {
            "title": frozen.get("title") or tpl.get("title") or "Checklist",
            **{k: str(frozen.get(k) or "") for k in ("foNumber", "issueDate", "revision", "documentNumber")},
            "lac": frozen.get("lac") or DEFAULT_LAC,
            "motorista": frozen.get("motorista") or "",
            "placa": frozen.get("placa") or m.get("placa") or "",
            "kmAtual": _num(frozen.get("kmAtual")),
            "kmAnterior": _num(frozen.get("kmAnterior")),
            "dataInspecao": frozen.get("dataInspecao") or format_date_short(datetime.now(timezone.utc)),
        }
    header = get_template_header(tpl)
    actor = response.get("actor") if isinstance(response.get("actor"), dict) else {}
    kind = get_template_actor_config(tpl).get("kind")
    motorista = actor.get("driverNome") or ("" if kind == "mecanico" else response.get("operatorNome")) or ""
    reading = _num(response.get("km"))
    if reading is None:
        reading = _num(response.get("horimetro"))
    created = parse_iso(response.get("createdAt")) or datetime.now(timezone.utc)
    return {
        "title": tpl.get("title") or "Checklist",
        **header,
        "lac": DEFAULT_LAC,
        "motorista": motorista,
        "placa": m.get("placa") or m.get("tag") or "",
        "kmAtual": reading,
        "kmAnterior": _num(response.get("previousKm")),
        "dataInspecao": format_date_short(created),
    }


# -------------------------------
# Form context
# -------------------------------

def load_checklist_context(datarepo_path: Path, tag: str, template_id: Optional[str] = None) -> dict:
    """Everything the checklist form for a TAG needs.

    The selected template is `template_id` when it is one of the machine's
    active templates, otherwise the first one. Raises MachineNotFoundError.
    """
    machine = find_machine_by_tag(datarepo_path, tag)
    if machine is None:
        raise MachineNotFoundError("Máquina não encontrada pelo QR ou TAG.")
    templates = active_templates_for_machine(datarepo_path, machine)
    template = None
    if templates:
        template = next((t for t in templates if t["id"] == template_id), templates[0])
    previous = get_previous_response(datarepo_path, machine["id"], template["id"]) if template else None
    return {
        "tag": normalize_tag(tag),
        "machine": machine,
        "templates": templates,
        "template": template,
        "actor": get_template_actor_config(template) if template else None,
        "previous": {"id": previous["id"], "createdAt": previous.get("createdAt")} if previous else None,
        "previousNcMap": previous_nc_map(previous),
        "previousReading": get_previous_reading(datarepo_path, machine["id"]),
    }


# -------------------------------
# Validation and submission
# -------------------------------

def _answers_by_question(raw) -> Dict[str, dict]:
    if isinstance(raw, dict):
        return {str(k): (v if isinstance(v, dict) else {"response": v}) for k, v in raw.items()}
    out: Dict[str, dict] = {}
    for item in raw or []:
        if isinstance(item, dict) and item.get("questionId"):
            out[str(item["questionId"])] = item
    return out


def validate_submission(
    template: dict,
    payload: Dict,
    *,
    user: Optional[dict] = None,
    previous_ncs: Optional[Dict[str, dict]] = None,
) -> List[str]:
    """Return the user-facing problems of a submission, empty when it can be saved.

    `user` is the record found for the submitted matricula, if any.
    """
    errors: List[str] = []
    questions = [q for q in template.get("questions") or [] if isinstance(q, dict)]
    text_of = {q.get("id"): q.get("text") or q.get("id") for q in questions}

    matricula = str(payload.get("matricula") or payload.get("operatorMatricula") or "").strip()
    if not matricula:
        errors.append("Informe a matrícula.")
    elif user is None or str(user.get("matricula") or "").strip() != matricula:
        errors.append("Matrícula não cadastrada ou permitida.")

    decisions = payload.get("recurrence") if isinstance(payload.get("recurrence"), dict) else {}
    pending = [qid for qid in (previous_ncs or {}) if decisions.get(qid) not in RECURRENCE_STATUSES]
    if pending:
        names = ", ".join(str(text_of.get(qid) or qid) for qid in pending)
        errors.append(f"Informe se as não conformidades anteriores foram resolvidas para: {names}.")

    answers = _answers_by_question(payload.get("answers"))
    missing = [q for q in questions if answers.get(q.get("id"), {}).get("response") not in ANSWER_VALUES]
    if missing:
        errors.append(f"Responda todas as perguntas ({len(missing)} faltando).")

    no_photo = [
        q for q in questions
        if answers.get(q.get("id"), {}).get("response") == "nc"
        and resolve_photo_rule(q) == "required_nc"
        and not photo_urls_of(answers.get(q.get("id")))
    ]
    if no_photo:
        errors.append(f"Anexe ao menos uma foto para: {', '.join(str(text_of[q.get('id')]) for q in no_photo)}.")

    for q in questions:
        variable = q.get("variable")
        ans = answers.get(q.get("id")) or {}
        if not variable_visible(variable, ans.get("response")):
            continue
        var_name = variable.get("name") or q.get("id")
        raw = ans.get("variableValue")
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            errors.append(f'Informe "{var_name}" para: {text_of[q.get("id")]}.')
            continue
        try:
            coerce_variable_value(variable, raw)
        except ValueError:
            errors.append(f'Valor inválido para "{var_name}" ({text_of[q.get("id")]}).')

    for key, label in (("km", "KM"), ("horimetro", "horímetro")):
        raw = payload.get(key)
        if raw not in (None, "") and parse_number(raw) is None:
            errors.append(f"Informe um número válido para o {label}.")
    return errors


def _build_answers(template: dict, answers: Dict[str, dict], previous: Optional[dict],
                   previous_ncs: Dict[str, dict], decisions: Dict, noted_at: str) -> List[dict]:
    out: List[dict] = []
    for q in template.get("questions") or []:
        base = answers.get(q.get("id")) or {}
        response = base.get("response")
        if response not in ANSWER_VALUES:
            continue
        answer: Dict[str, Any] = {"questionId": q["id"], "response": response}
        observation = str(base.get("observation") or "").strip()
        if observation:
            answer["observation"] = observation
        urls = photo_urls_of(base)
        if urls and resolve_photo_rule(q) != "none":
            answer["photoUrls"] = urls
        variable = q.get("variable")
        if variable_visible(variable, response) and base.get("variableValue") not in (None, ""):
            answer["variableValue"] = coerce_variable_value(variable, base["variableValue"])
        if previous and q["id"] in previous_ncs and decisions.get(q["id"]) in RECURRENCE_STATUSES:
            answer["recurrence"] = {
                "previousResponseId": previous["id"],
                "status": decisions[q["id"]],
                "notedAt": noted_at,
            }
        out.append(answer)
    return out


def _clean_extras(raw) -> List[dict]:
    extras: List[dict] = []
    for e in raw or []:
        if not isinstance(e, dict):
            continue
        title = str(e.get("title") or "").strip()
        if not title:
            continue
        extra: Dict[str, Any] = {"title": title}
        description = str(e.get("description") or "").strip()
        if description:
            extra["description"] = description
        if e.get("severity") in ("baixa", "media", "alta"):
            extra["severity"] = e["severity"]
        for flag in ("safetyRisk", "impactAvailability"):
            if isinstance(e.get(flag), bool):
                extra[flag] = e[flag]
        extras.append(extra)
    return extras


def _clean_signatures(raw) -> Optional[dict]:
    if not isinstance(raw, dict):
        return None
    sig = {k: (str(raw[k]) if raw.get(k) else None) for k in ("operatorUrl", "driverUrl")}
    return sig if any(sig.values()) else None


def check_submission(datarepo_path: Path, tag: str, payload: Dict) -> dict:
    """Checklist context for `payload`, plus the matched "user". Writes nothing.

    Raises MachineNotFoundError or SubmissionError.
    """
    payload = payload or {}
    ctx = load_checklist_context(datarepo_path, tag, payload.get("templateId"))
    template = ctx["template"]
    if template is None or (payload.get("templateId") and payload["templateId"] != template["id"]):
        raise SubmissionError(["Nenhum checklist ativo selecionado para esta máquina."])
    matricula = str(payload.get("matricula") or payload.get("operatorMatricula") or "").strip()
    user = find_user_by_matricula(datarepo_path, matricula)
    errors = validate_submission(template, payload, user=user, previous_ncs=ctx["previousNcMap"])
    if errors:
        raise SubmissionError(errors)
    return {**ctx, "user": user}


def submit_checklist(datarepo_path: Path, tag: str, payload: Dict) -> dict:
    """Validate and store a checklist response for the machine with `tag`, then open its NCs.

    Returns {"response": doc, "nonConformities": [nc, ...]}. Raises
    MachineNotFoundError or SubmissionError.
    """
    payload = payload or {}
    ctx = check_submission(datarepo_path, tag, payload)
    template = ctx["template"]
    machine = ctx["machine"]
    previous_ncs = ctx["previousNcMap"]
    user = ctx["user"]
    matricula = str(payload.get("matricula") or payload.get("operatorMatricula") or "").strip()

    created_at = now_iso()
    decisions = payload.get("recurrence") if isinstance(payload.get("recurrence"), dict) else {}
    answers = _build_answers(
        template, _answers_by_question(payload.get("answers")), ctx["previous"], previous_ncs, decisions, created_at
    )
    actor_cfg = ctx["actor"]
    driver_name = resolve_driver_name(actor_cfg["kind"], payload.get("driverNome"), user)
    doc: Dict[str, Any] = {
        "machineId": machine["id"],
        "userId": user["id"],
        "templateId": template["id"],
        "createdAt": created_at,
        "operatorMatricula": matricula,
        "operatorNome": str(user.get("nome") or "").strip() or None,
        "answers": answers,
    }
    for key in ("km", "horimetro"):
        n = parse_number(payload.get(key))
        if n is not None:
            doc[key] = n
    doc["previousKm"] = ctx["previousReading"]["value"]
    extras = _clean_extras(payload.get("extraNonConformities"))
    if extras:
        doc["extraNonConformities"] = extras
    doc["actor"] = get_actor_snapshot(
        actor_cfg["kind"],
        mechanic_matricula=payload.get("mechanicMatricula"),
        mechanic_nome=payload.get("mechanicNome"),
        driver_matricula=payload.get("driverMatricula"),
        driver_nome=driver_name or None,
    )
    signatures = _clean_signatures(payload.get("signatures"))
    if signatures:
        doc["signatures"] = signatures
    doc["headerFrozen"] = resolve_header_data(template, machine, doc)

    rec = create_document(datarepo_path, COLLECTION, doc)
    ncs = explode_checklist_response(datarepo_path, rec["id"], rec)
    return {"response": rec, "nonConformities": ncs}


def submit_weekly_checklists(datarepo_path: Path, machine_id: str, payload: Dict) -> List[dict]:
    """Store seven daily responses typed in at once by an administrator.

    Each day is stamped at 12:00 UTC starting from `startDate`, carries a frozen
    header and takes its previousKm from the day before. Unanswered questions
    are not accepted. Returns the stored responses in day order.
    """
    payload = payload or {}
    machine = get_machine(datarepo_path, machine_id)
    template_id = str(payload.get("templateId") or "").strip()
    if not template_id:
        raise SubmissionError(["Selecione um template para continuar."])
    template = get_template(datarepo_path, template_id)
    start = parse_iso(str(payload.get("startDate") or "")[:10]) if payload.get("startDate") else None
    if start is None:
        raise SubmissionError(["Informe a data inicial da semana."])

    days = payload.get("days") if isinstance(payload.get("days"), list) else []
    questions = [q for q in template.get("questions") or [] if isinstance(q, dict)]
    for idx in range(DAYS_IN_WEEK):
        day = days[idx] if idx < len(days) and isinstance(days[idx], dict) else None
        if day is None:
            raise SubmissionError([f"Preencha todas as respostas do dia {idx + 1}."])
        answers = _answers_by_question(day.get("answers"))
        for q in questions:
            if answers.get(q.get("id"), {}).get("response") not in ANSWER_VALUES:
                raise SubmissionError([f'Selecione uma resposta para "{q.get("text")}" no dia {idx + 1}.'])

    actor_cfg = get_template_actor_config(template)
    header = get_template_header(template)
    operator_nome = str(payload.get("operatorNome") or "").strip()
    driver_nome = str(payload.get("driverNome") or "").strip()
    stored: List[dict] = []
    for idx in range(DAYS_IN_WEEK):
        day = days[idx]
        day_dt = datetime.combine((start + timedelta(days=idx)).date(), dt_time(12, 0), tzinfo=timezone.utc)
        km = parse_number(day.get("km"))
        horimetro = parse_number(day.get("horimetro"))
        previous_km = parse_number(days[idx - 1].get("km")) if idx > 0 else None
        answers = _answers_by_question(day.get("answers"))
        answer_list = []
        for q in questions:
            a = {"questionId": q["id"], "response": answers[q["id"]]["response"]}
            observation = str(answers[q["id"]].get("observation") or "").strip()
            if observation:
                a["observation"] = observation
            answer_list.append(a)
        doc: Dict[str, Any] = {
            "machineId": machine["id"],
            "userId": str(payload.get("userId") or "admin"),
            "templateId": template["id"],
            "createdAt": now_iso(day_dt),
            "operatorMatricula": str(payload.get("operatorMatricula") or "").strip(),
            "operatorNome": operator_nome or None,
            "answers": answer_list,
            "previousKm": previous_km,
            "headerFrozen": {
                "title": template.get("title") or "Checklist",
                **header,
                "lac": DEFAULT_LAC,
                "motorista": driver_nome or operator_nome,
                "placa": machine.get("placa") or machine.get("tag") or "",
                "kmAtual": km,
                "kmAnterior": previous_km,
                "dataInspecao": format_date_short(day_dt),
            },
            "actor": get_actor_snapshot(
                actor_cfg["kind"],
                mechanic_matricula=payload.get("mechanicMatricula"),
                mechanic_nome=payload.get("mechanicNome"),
                driver_matricula=payload.get("driverMatricula"),
                driver_nome=driver_nome or None,
            ),
        }
        if km is not None:
            doc["km"] = km
        if horimetro is not None:
            doc["horimetro"] = horimetro
        rec = create_document(datarepo_path, COLLECTION, doc)
        explode_checklist_response(datarepo_path, rec["id"], rec)
        stored.append(rec)
    return stored


# -------------------------------
# Per-answer treatments
# -------------------------------

def list_pending_items(
    datarepo_path: Path,
    *,
    machine_id: Optional[str] = None,
    status: str = "pending",
) -> List[dict]:
    """One item per 'nc' answer across responses, with its treatment, newest first.

    status: 'pending' (open or in_progress), 'all', or a treatment status.
    """
    machines = {m["id"]: m for m in find_documents(datarepo_path, "machines")}
    templates = {t["id"]: t for t in find_documents(datarepo_path, "checklistTemplates")}
    items: List[dict] = []
    for response in list_responses(datarepo_path, machine_id=machine_id):
        template = templates.get(response.get("templateId")) or {}
        text_of = {q.get("id"): q.get("text") for q in template.get("questions") or [] if isinstance(q, dict)}
        treatments = {
            t.get("questionId"): t for t in response.get("nonConformityTreatments") or [] if isinstance(t, dict)
        }
        for answer in response.get("answers") or []:
            if not isinstance(answer, dict) or answer.get("response") != "nc":
                continue
            qid = answer.get("questionId")
            treatment = treatments.get(qid) or {}
            item_status = treatment.get("status") if treatment.get("status") in TREATMENT_STATUSES else "open"
            if status == "pending" and item_status not in ("open", "in_progress"):
                continue
            if status in TREATMENT_STATUSES and item_status != status:
                continue
            photos = photo_urls_of(answer)
            items.append({
                "id": f"{response['id']}-{qid}",
                "responseId": response["id"],
                "questionId": qid,
                "createdAt": response.get("createdAt"),
                "machineId": response.get("machineId"),
                "machine": machines.get(response.get("machineId")),
                "templateTitle": template.get("title"),
                "questionText": text_of.get(qid) or qid,
                "status": item_status,
                "summary": treatment.get("summary") or "",
                "responsible": treatment.get("responsible") or "",
                "deadline": treatment.get("deadline"),
                "updatedAt": treatment.get("updatedAt"),
                "photoUrl": photos[0] if photos else None,
                "observation": answer.get("observation"),
                "operatorNome": response.get("operatorNome"),
                "operatorMatricula": response.get("operatorMatricula"),
            })
    items.sort(key=lambda i: (parse_iso(i["createdAt"]) or datetime.min.replace(tzinfo=timezone.utc)), reverse=True)
    return items


def save_treatment(
    datarepo_path: Path,
    response_id: str,
    question_id: str,
    *,
    status: str,
    summary: Optional[str] = None,
    responsible: Optional[str] = None,
    deadline: Optional[str] = None,
) -> Tuple[dict, dict]:
    """Replace the treatment of one NC answer. Returns (treatment, updated response)."""
    try:
        response = get_response(datarepo_path, response_id)
    except FileNotFoundError:
        raise FileNotFoundError("Checklist não encontrado para atualizar a tratativa.")
    if status not in TREATMENT_STATUSES:
        raise ValueError(f"status must be one of: {', '.join(TREATMENT_STATUSES)}")
    if question_id not in previous_nc_map(response):
        raise ValueError(f"Pergunta '{question_id}' não está não conforme neste checklist.")
    treatment: Dict[str, Any] = {"questionId": question_id, "status": status}
    if (summary or "").strip():
        treatment["summary"] = summary.strip()
    if (responsible or "").strip():
        treatment["responsible"] = responsible.strip()
    if deadline:
        treatment["deadline"] = deadline
    treatment["updatedAt"] = now_iso()
    existing = [
        t for t in response.get("nonConformityTreatments") or []
        if isinstance(t, dict) and t.get("questionId") != question_id
    ]
    updated = update_document(
        datarepo_path, COLLECTION, response_id, {"nonConformityTreatments": existing + [treatment]}
    )
    return treatment, updated
