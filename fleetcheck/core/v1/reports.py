from __future__ import annotations

from pathlib import Path
from typing import List, Optional
import io
import re
import unicodedata

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from xml.sax.saxutils import escape

from .checklists import (
    ANSWER_LABELS,
    TREATMENT_LABELS,
    get_response,
    photo_urls_of,
    resolve_header_data,
)
from .store import get_document, parse_iso

ACTOR_LABELS = {"operador": "Operador", "motorista": "Motorista", "mecanico": "Mecânico"}
RECURRENCE_LABELS = {
    "still_nc": "Permanece em não conformidade",
    "resolved": "Operador informou que a não conformidade foi resolvida",
}


def sanitize_filename(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value or "")
    s = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    s = re.sub(r'[<>:"/\\|?*\x00-\x1f]+', "", s)
    s = re.sub(r"\s+", "-", s)
    s = re.sub(r"-+", "-", s)
    return s.strip(".").strip()


def response_pdf_basename(response: dict, machine: Optional[dict]) -> str:
    """'(PLATE)-YYYYMMDD-HHMMSS' for a response."""
    m = machine or {}
    plate_src = m.get("placa") or m.get("tag") or response.get("machineId")
    plate = sanitize_filename(str(plate_src)).strip("-").upper() if plate_src else "CHECKLIST"
    created = parse_iso(response.get("createdAt"))
    if created is None:
        stamp = sanitize_filename(str(response.get("createdAt") or "")).strip("-") or "registro"
    else:
        stamp = created.strftime("%Y%m%d-%H%M%S")
    return f"({plate or 'CHECKLIST'})-{stamp}"


def _fmt_number(v) -> str:
    """pt-BR number: 12.345 or 12.345,67."""
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return ""
    text = f"{v:,.0f}" if float(v).is_integer() else f"{v:,.2f}"
    return text.translate(str.maketrans({",": ".", ".": ","}))


def _load_optional(datarepo_path: Path, collection: str, doc_id) -> Optional[dict]:
    if not doc_id:
        return None
    try:
        return get_document(datarepo_path, collection, str(doc_id))
    except (FileNotFoundError, ValueError):
        return None


def build_response_pdf(datarepo_path: Path, response_id: str) -> dict:
    """Render a checklist response as PDF. Returns {"filename", "pdf"} (bytes)."""
    response = get_response(datarepo_path, response_id)
    machine = _load_optional(datarepo_path, "machines", response.get("machineId"))
    template = _load_optional(datarepo_path, "checklistTemplates", response.get("templateId"))
    header = resolve_header_data(template, machine, response)

    styles = getSampleStyleSheet()
    body = styles["BodyText"]
    bold = styles["Heading4"]
    story: List = []

    head_rows = [
        ["LAR", header["title"], header.get("foNumber") or ""],
        ["Emissão", header.get("issueDate") or "", f"Rev. {header.get('revision') or ''}"],
        ["Documento", header.get("documentNumber") or "", ""],
        ["Lac", header.get("lac") or "", ""],
        ["Motorista", header.get("motorista") or "", ""],
        ["Placa", header.get("placa") or "", f"KM {_fmt_number(header.get('kmAtual'))}"],
        ["Km anterior", _fmt_number(header.get("kmAnterior")), f"Data inspeção {header.get('dataInspecao') or ''}"],
    ]
    head = Table(head_rows, colWidths=[35 * mm, 95 * mm, 50 * mm])
    head.setStyle(TableStyle([
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
        ("FONTNAME", (1, 0), (1, 0), "Helvetica-Bold"),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ]))
    story.append(head)
    story.append(Spacer(1, 6 * mm))

    machine_label = (machine or {}).get("modelo") or (machine or {}).get("tag") or response.get("machineId")
    story.append(Paragraph(escape(f"Checklist ID: {response['id']}"), body))
    story.append(Paragraph(escape(f"Máquina: {machine_label}"), body))
    created = parse_iso(response.get("createdAt"))
    if created is not None:
        story.append(Paragraph(escape(f"Emitido em: {created.strftime('%d/%m/%Y %H:%M')} UTC"), body))
    if response.get("operatorNome") or response.get("operatorMatricula"):
        kind = (response.get("actor") or {}).get("kind") or (template or {}).get("type") or "operador"
        who = response.get("operatorNome") or "Não informado"
        mat = f" (Mat. {response['operatorMatricula']})" if response.get("operatorMatricula") else ""
        story.append(Paragraph(escape(f"{ACTOR_LABELS.get(kind, 'Operador')}: {who}{mat}"), body))
    readings = []
    if response.get("km") is not None:
        readings.append(f"KM {response['km']}")
    if response.get("horimetro") is not None:
        readings.append(f"Hor {response['horimetro']}")
    if readings:
        story.append(Paragraph(escape("Leituras: " + " • ".join(readings)), body))

    story.append(Spacer(1, 4 * mm))
    story.append(Paragraph("Perguntas", bold))
    text_of = {q.get("id"): q.get("text") for q in (template or {}).get("questions") or [] if isinstance(q, dict)}
    treatments = {
        t.get("questionId"): t for t in response.get("nonConformityTreatments") or [] if isinstance(t, dict)
    }
    for idx, answer in enumerate(response.get("answers") or [], start=1):
        qid = answer.get("questionId")
        story.append(Paragraph(escape(f"{idx}. {text_of.get(qid) or qid}"), bold))
        story.append(Paragraph(escape(f"Resposta: {ANSWER_LABELS.get(answer.get('response'), 'Não se aplica')}"), body))
        if answer.get("observation"):
            story.append(Paragraph(escape(f"Observações: {answer['observation']}"), body))
        if answer.get("variableValue") is not None:
            story.append(Paragraph(escape(f"Valor informado: {answer['variableValue']}"), body))
        urls = photo_urls_of(answer)
        if urls:
            story.append(Paragraph("Fotos:" if len(urls) > 1 else "Foto:", body))
            for u in urls:
                story.append(Paragraph(escape(u), body))
        recurrence = answer.get("recurrence")
        if isinstance(recurrence, dict):
            story.append(Paragraph(escape(f"Reincidência: {RECURRENCE_LABELS.get(recurrence.get('status'), '')}"), body))
        treatment = treatments.get(qid)
        if treatment:
            parts = [TREATMENT_LABELS.get(treatment.get("status"), "Pendente")]
            if treatment.get("responsible"):
                parts.append(f"responsável {treatment['responsible']}")
            if treatment.get("deadline"):
                parts.append(f"prazo {treatment['deadline']}")
            if treatment.get("summary"):
                parts.append(treatment["summary"])
            story.append(Paragraph(escape("Tratativa: " + " | ".join(parts)), body))
        story.append(Spacer(1, 2 * mm))

    extras = response.get("extraNonConformities") or []
    if extras:
        story.append(Paragraph("Não conformidades adicionais", bold))
        for e in extras:
            line = f"{e.get('title')}"
            if e.get("severity"):
                line += f" ({e['severity']})"
            if e.get("description"):
                line += f": {e['description']}"
            story.append(Paragraph(escape(line), body))

    signatures = response.get("signatures") or {}
    if signatures:
        story.append(Spacer(1, 4 * mm))
        story.append(Paragraph("Assinaturas", bold))
        for key, label in (("operatorUrl", "Operador"), ("driverUrl", "Motorista")):
            story.append(Paragraph(escape(f"{label}: {signatures.get(key) or 'Assinatura indisponível'}"), body))

    buf = io.BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=A4, leftMargin=14 * mm, rightMargin=14 * mm,
                            topMargin=14 * mm, bottomMargin=14 * mm, title=header["title"])
    doc.build(story)
    return {"filename": f"{response_pdf_basename(response, machine)}.pdf", "pdf": buf.getvalue()}
