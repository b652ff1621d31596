from __future__ import annotations

import base64
import io
import re

import pytest
from PIL import Image

from conftest import daily_payload
from fleetcheck.core.v1.checklists import submit_checklist
from fleetcheck.core.v1.reports import build_response_pdf, response_pdf_basename, sanitize_filename
from fleetcheck.core.v1.stickers import (
    build_batch_pdf,
    checklist_url,
    generate_sticker_for_machine,
    parse_sticker_size,
)


def test_checklist_url_quotes_tag():
    assert checklist_url("https://frota.example/", "PC 01/B") == "https://frota.example/checklist/PC%2001%2FB"


def test_sticker_for_machine_by_tag_or_id(fleet, monkeypatch):
    repo = fleet["repo"]
    by_tag = generate_sticker_for_machine(repo, "ESC-01", fields=["placa", "setor"])
    assert by_tag["machineId"] == "m_esc01"
    assert by_tag["url"] == "http://localhost:8080/checklist/ESC-01"
    assert by_tag["filename"] == "sticker_ESC-01_qr.png"
    assert by_tag["fields"] == ["placa", "setor"]
    img = Image.open(io.BytesIO(base64.b64decode(by_tag["png_base64"])))
    assert img.size == (600, 300)

    monkeypatch.setenv("FC_PUBLIC_BASE_URL", "https://frota.example/")
    by_id = generate_sticker_for_machine(repo, "m_esc01")
    assert by_id["url"] == "https://frota.example/checklist/ESC-01"


def test_sticker_unknown_machine(fleet):
    with pytest.raises(FileNotFoundError):
        generate_sticker_for_machine(fleet["repo"], "NAO-EXISTE")


def test_parse_sticker_size():
    assert parse_sticker_size("2x1", "300", "24") == (2.0, 1.0, 300, 24)
    assert parse_sticker_size("3.5x2in", "150", "18") == (3.5, 2.0, 150, 18)
    for args in (("2", "300", "24"), ("2x1", "0", "24"), ("axb", "300", "24"), ("2x1", "300", "-1")):
        with pytest.raises(ValueError, match="Tamanho/DPI inválido"):
            parse_sticker_size(*args)


def test_batch_pdf_for_machines(fleet):
    pdf = build_batch_pdf(fleet["repo"], ["ESC-01", "m_esc01"], size_in=(2.0, 1.0), dpi=100)
    assert pdf.startswith(b"%PDF")

    with pytest.raises(FileNotFoundError, match="Máquina 'XX' não encontrada"):
        build_batch_pdf(fleet["repo"], ["ESC-01", "XX"], dpi=100)


def test_report_filename_helpers():
    assert sanitize_filename("Ação: teste/1") == "Acao-teste1"
    response = {"id": "r1", "machineId": "m1", "createdAt": "2024-06-03T08:15:30.000Z"}
    assert response_pdf_basename(response, {"placa": "abc 1d23"}) == "(ABC-1D23)-20240603-081530"
    assert response_pdf_basename(response, None) == "(M1)-20240603-081530"


def test_response_pdf(fleet):
    repo = fleet["repo"]
    response = submit_checklist(repo, "ESC-01", daily_payload(oleo="nc"))["response"]
    out = build_response_pdf(repo, response["id"])
    assert out["pdf"].startswith(b"%PDF")
    assert re.fullmatch(r"\(ABC1D23\)-\d{8}-\d{6}\.pdf", out["filename"])

    with pytest.raises(FileNotFoundError):
        build_response_pdf(repo, "missing")
