from __future__ import annotations

from pathlib import Path

import pytest

from conftest import daily_payload
from fleetcheck.core.v1.checklists import submit_checklist
from fleetcheck.core.v1.nonconformities import (
    NonConformityNotFoundError,
    NonConformityRuleError,
    QueryValidationError,
    bulk_update_status,
    default_due_at,
    find_recurrence,
    get_nonconformity,
    list_nonconformities,
    map_nc_document,
    map_response_to_nc_docs,
    matches_filters,
    normalize_title,
    patch_nonconformity,
    resolve_due_at,
)
from fleetcheck.core.v1.store import create_document, list_audits, list_documents


CREATED = "2024-05-10T08:00:00.000Z"


def _nc(repo: Path, nc_id: str, **fields) -> dict:
    doc = {
        "title": "Vazamento de óleo",
        "severity": "media",
        "status": "aberta",
        "createdAt": CREATED,
        "dueAt": default_due_at(CREATED, "media"),
        "linkedAsset": {"id": "m_esc01", "tag": "ESC-01", "modelo": "Escavadeira 320"},
        "createdBy": {"id": "u_ana", "matricula": "1001", "nome": "Ana Souza"},
        "linkedTemplateId": "tpl_diario",
        "originChecklistResponseId": "r1",
        "actions": [],
    }
    doc.update(fields)
    return create_document(repo, "nonConformities", doc, nc_id)


# -----------------
# Pure helpers
# -----------------

def test_normalize_title():
    assert normalize_title("  Nível de ÓLEO -- motor!") == "nivel de oleo motor"
    assert normalize_title(None) == ""


def test_default_due_at_per_severity():
    assert default_due_at(CREATED, "alta") == "2024-05-12T08:00:00.000Z"
    assert default_due_at(CREATED, "media") == "2024-05-15T08:00:00.000Z"
    assert default_due_at(CREATED, "baixa") == "2024-05-20T08:00:00.000Z"
    assert default_due_at(CREATED, "desconhecida") == "2024-05-15T08:00:00.000Z"
    assert default_due_at(CREATED, "alta", {"alta": 1, "media": 3, "baixa": 7}) == "2024-05-11T08:00:00.000Z"


def test_find_recurrence_prefers_first_match():
    recent = [
        {"id": "n3", "normalizedTitle": "freio", "systemCategory": "Freios"},
        {"id": "n2", "normalizedTitle": "oleo", "systemCategory": "Motor"},
        {"id": "n1", "normalizedTitle": "oleo", "systemCategory": None},
    ]
    assert find_recurrence(recent, "outro titulo", "Motor") == "n2"
    assert find_recurrence(recent, "oleo", None) == "n2"
    assert find_recurrence(recent, "nada", None) is None


def test_map_response_to_nc_docs():
    response = {
        "machineId": "m1",
        "templateId": "t1",
        "userId": "u1",
        "operatorMatricula": "1001",
        "operatorNome": "Ana",
        "answers": [
            {"questionId": "q1", "response": "nc", "observation": "vazando"},
            {"questionId": "q2", "response": "ok"},
            {"questionId": "q9", "response": "nc"},
        ],
        "extraNonConformities": [
            {"title": "Banco rasgado", "severity": "baixa", "safetyRisk": True},
            {"title": ""},
        ],
    }
    docs = map_response_to_nc_docs(
        response_id="r1",
        response=response,
        machine={"tag": "T1", "modelo": "Trator", "fleetType": "machine", "setor": "Mina"},
        template_questions={"q1": {"id": "q1", "text": "Óleo", "section": "Motor"}},
        recent=[],
        telemetry=None,
        created_at=CREATED,
    )
    assert [d["title"] for d in docs] == ["Óleo", "Pergunta q9", "Banco rasgado"]
    q1, q9, extra = docs
    assert q1["description"] == "vazando"
    assert q1["systemCategory"] == "Motor"
    assert q1["source"] == "checklist_question"
    assert q1["severityRank"] == 2
    assert q1["yearMonth"] == "2024-05"
    assert q1["linkedAsset"] == {"id": "m1", "tag": "T1", "modelo": "Trator", "tipo": "machine", "setor": "Mina"}
    assert q1["createdBy"] == {"id": "u1", "matricula": "1001", "nome": "Ana"}
    assert q9["description"] is None
    assert extra["source"] == "checklist_extra"
    assert extra["severity"] == "baixa"
    assert extra["dueAt"] == "2024-05-20T08:00:00.000Z"
    assert extra["safetyRisk"] is True
    assert extra["originQuestionId"] is None


def test_map_nc_document_is_defensive():
    rec = map_nc_document({"id": "x", "severity": "urgente", "status": "???", "severityRank": 3, "actions": "nope",
                           "createdAt": "2024-01-02T03:04:05Z", "telemetryRef": {"hours": "a", "odometerKm": 10}})
    assert rec["severity"] is None
    assert rec["status"] == "aberta"
    assert rec["severityRank"] == 3
    assert rec["actions"] == []
    assert rec["createdAt"] == "2024-01-02T03:04:05.000Z"
    assert rec["yearMonth"] == "2024-01"
    assert rec["telemetryRef"] == {"odometerKm": 10}
    assert rec["linkedAsset"]["tag"] == ""


def test_matches_filters():
    rec = map_nc_document({
        "id": "a", "title": "Pneu furado", "status": "aberta", "severity": "alta", "createdAt": CREATED,
        "linkedAsset": {"id": "m1", "tag": "T1"}, "createdBy": {"matricula": "77"},
    })
    assert matches_filters(rec, {})
    assert matches_filters(rec, {"statuses": ["aberta"], "severities": ["alta"], "assetId": "T1", "query": "PNEU"})
    assert not matches_filters(rec, {"statuses": ["resolvida"]})
    assert not matches_filters(rec, {"assetId": "m2"})
    assert not matches_filters(rec, {"dateFrom": "2024-05-11"})
    assert not matches_filters(rec, {"query": "freio"})


# -----------------
# Explosion from submissions
# -----------------

def test_explosion_links_recurrence_by_system_category(fleet):
    repo = fleet["repo"]
    first = submit_checklist(repo, "ESC-01", daily_payload(oleo="nc"))["nonConformities"][0]
    assert first["recurrenceOfId"] is None
    assert first["systemCategory"] == "Motor"
    assert first["telemetryRef"]["faultCodes"] is not None

    second = submit_checklist(repo, "ESC-01", daily_payload(oleo="nc", recurrence={"q_oleo": "still_nc"}))
    nc = second["nonConformities"][0]
    assert nc["recurrenceOfId"] == first["id"]
    assert nc["originChecklistResponseId"] == second["response"]["id"]
    assert nc["dueAt"] == default_due_at(nc["createdAt"], "media")


def test_explosion_uses_repo_due_days(fleet):
    repo = fleet["repo"]
    (repo / "fleetrepo.yml").write_text("nc:\n  due_days:\n    media: 1\n")
    nc = submit_checklist(repo, "ESC-01", daily_payload(oleo="nc"))["nonConformities"][0]
    assert nc["dueAt"] == default_due_at(nc["createdAt"], "media", {"media": 1})


# -----------------
# List query
# -----------------

def test_list_query_validation_errors(repo: Path):
    with pytest.raises(QueryValidationError) as ei:
        list_nonconformities(repo, {"pageSize": "15", "page": "0", "status": "fechada", "color": "red"})
    details = ei.value.details
    assert details["formErrors"] == ["Unrecognized key in query: 'color'"]
    assert set(details["fieldErrors"]) == {"pageSize", "page", "status"}

    with pytest.raises(QueryValidationError) as ei:
        list_nonconformities(repo, {"from": "2024-05-10", "to": "2024-05-01"})
    assert ei.value.details["formErrors"] == ["from must be before to"]

    with pytest.raises(QueryValidationError):
        list_nonconformities(repo, {"q": "   "})


def test_list_sorts_filters_and_paginates(repo: Path):
    for i in range(12):
        _nc(repo, f"nc{i:02d}", createdAt=f"2024-05-{i + 1:02d}T10:00:00.000Z",
            severity="alta" if i % 3 == 0 else "media")

    page1 = list_nonconformities(repo, {"pageSize": "10"})
    assert page1["total"] == 12
    assert page1["hasMore"] is True
    assert page1["data"][0]["id"] == "nc11"
    page2 = list_nonconformities(repo, {"pageSize": "10", "page": "2"})
    assert [r["id"] for r in page2["data"]] == ["nc01", "nc00"]
    assert page2["hasMore"] is False

    alta = list_nonconformities(repo, {"severity": "alta"})
    assert [r["id"] for r in alta["data"]] == ["nc09", "nc06", "nc03", "nc00"]

    # A date-only upper bound covers the whole day
    ranged = list_nonconformities(repo, {"from": "2024-05-03", "to": "2024-05-04"})
    assert [r["id"] for r in ranged["data"]] == ["nc03", "nc02"]


def test_list_template_operator_and_search_filters(repo: Path):
    _nc(repo, "a", title="Freio dianteiro", createdBy={"id": "u2", "matricula": "2002", "nome": "Bruno"})
    _nc(repo, "b", linkedTemplateId="tpl_semanal", rootCause="Desgaste natural")
    assert [r["id"] for r in list_nonconformities(repo, {"operatorMatricula": "2002"})["data"]] == ["a"]
    assert [r["id"] for r in list_nonconformities(repo, {"templateId": "tpl_semanal"})["data"]] == ["b"]
    assert [r["id"] for r in list_nonconformities(repo, {"search": "desgaste"})["data"]] == ["b"]
    assert [r["id"] for r in list_nonconformities(repo, {"machineId": "m_esc01", "q": "bruno"})["data"]] == ["a"]


# -----------------
# Detail, patch and bulk
# -----------------

def test_get_missing_nc(repo: Path):
    with pytest.raises(NonConformityNotFoundError):
        get_nonconformity(repo, "nope")
    with pytest.raises(NonConformityNotFoundError):
        patch_nonconformity(repo, "nope", {"status": "em_execucao"})


def test_resolve_due_at_rules():
    existing = {"createdAt": CREATED, "severity": "media", "dueAt": "2024-05-13T00:00:00.000Z"}
    assert resolve_due_at(existing, "media", None) == "2024-05-13T00:00:00.000Z"
    assert resolve_due_at(existing, "baixa", None) == "2024-05-20T08:00:00.000Z"
    assert resolve_due_at(existing, "media", "garbage") == "2024-05-15T08:00:00.000Z"
    assert resolve_due_at(existing, "media", "2024-05-01") == "2024-05-15T08:00:00.000Z"
    assert resolve_due_at(existing, "media", "2024-06-01") == "2024-06-01T00:00:00.000Z"
    assert resolve_due_at(existing, "alta", "2024-06-01") == "2024-05-12T08:00:00.000Z"


def test_patch_writes_diff_and_audit(repo: Path):
    _nc(repo, "nc1")
    result = patch_nonconformity(
        repo, "nc1", {"severity": "alta", "rootCause": "  Retentor  "}, actor={"id": "admin1", "nome": "Gestor"}
    )
    data = result["data"]
    assert data["severity"] == "alta"
    assert data["severityRank"] == 3
    assert data["dueAt"] == "2024-05-12T08:00:00.000Z"
    assert data["rootCause"] == "Retentor"
    assert data["updatedAt"]

    (audit,) = result["audits"]
    assert audit["byUserId"] == "admin1"
    assert audit["byNome"] == "Gestor"
    assert set(audit["diff"]) == {"severity", "severityRank", "dueAt", "rootCause", "updatedAt"}
    assert audit["diff"]["severity"] == {"before": "media", "after": "alta"}
    assert get_nonconformity(repo, "nc1")["audits"][0]["id"] == audit["id"]


def test_noop_patch_writes_nothing(repo: Path):
    _nc(repo, "nc1")
    before = (repo / "nonConformities" / "nc1" / "document.yml").read_text()
    result = patch_nonconformity(repo, "nc1", {"status": "aberta", "severity": "media"})
    assert result["audits"] == []
    assert (repo / "nonConformities" / "nc1" / "document.yml").read_text() == before
    assert list_audits(repo, "nonConformities", "nc1") == []


def test_patch_rejects_invalid_values(repo: Path):
    _nc(repo, "nc1")
    with pytest.raises(ValueError):
        patch_nonconformity(repo, "nc1", {"severity": "critica"})
    with pytest.raises(ValueError):
        patch_nonconformity(repo, "nc1", {"status": "fechada"})
    with pytest.raises(ValueError):
        patch_nonconformity(repo, "nc1", ["status"])


def test_closing_requires_completed_corrective_action(repo: Path):
    _nc(repo, "nc1")
    with pytest.raises(NonConformityRuleError):
        patch_nonconformity(repo, "nc1", {"status": "resolvida"})
    with pytest.raises(NonConformityRuleError):
        patch_nonconformity(repo, "nc1", {"status": "resolvida", "actions": [
            {"type": "corretiva", "description": "Trocar retentor", "startedAt": "2024-05-10T09:00:00Z"},
        ]})
    result = patch_nonconformity(repo, "nc1", {"status": "resolvida", "actions": [
        {"type": "corretiva", "description": "Trocar retentor", "completedAt": "2024-05-11T09:00:00Z"},
        {"type": "corretiva", "description": "   "},
    ]})
    assert result["data"]["status"] == "resolvida"
    assert len(result["data"]["actions"]) == 1
    assert result["data"]["actions"][0]["id"]


def test_closing_recurrent_nc_needs_root_cause_and_effective_preventive(repo: Path):
    _nc(repo, "nc0")
    _nc(repo, "nc1", recurrenceOfId="nc0", actions=[
        {"id": "a1", "type": "corretiva", "description": "Trocar", "completedAt": "2024-05-11T09:00:00Z"},
    ])
    with pytest.raises(NonConformityRuleError) as ei:
        patch_nonconformity(repo, "nc1", {"status": "resolvida"})
    assert "causa raiz" in str(ei.value)

    with pytest.raises(NonConformityRuleError) as ei:
        patch_nonconformity(repo, "nc1", {"status": "resolvida", "rootCause": "Retentor ressecado"})
    assert "preventiva" in str(ei.value)

    result = patch_nonconformity(repo, "nc1", {
        "status": "resolvida",
        "rootCause": "Retentor ressecado",
        "actions": [
            {"id": "a1", "type": "corretiva", "description": "Trocar", "completedAt": "2024-05-11T09:00:00Z"},
            {"type": "preventiva", "description": "Inspeção quinzenal", "effective": True},
        ],
    })
    assert result["data"]["status"] == "resolvida"


def test_bulk_update_reports_each_id(repo: Path):
    _nc(repo, "nc1")
    _nc(repo, "nc2")
    result = bulk_update_status(repo, ["nc1", "nc2", "nc1", "ghost", " "], "em_execucao", actor={"id": "admin1"})
    assert result["updated"] == ["nc1", "nc2"]
    assert result["failed"] == [{"id": "ghost", "error": "NC não encontrada"}]
    statuses = {d["id"]: d["status"] for d in list_documents(repo, "nonConformities")}
    assert statuses == {"nc1": "em_execucao", "nc2": "em_execucao"}

    closing = bulk_update_status(repo, ["nc1"], "resolvida")
    assert closing["updated"] == []
    assert closing["failed"][0]["id"] == "nc1"

    with pytest.raises(ValueError):
        bulk_update_status(repo, ["nc1"], "fechada")
    with pytest.raises(ValueError):
        bulk_update_status(repo, [], "aberta")


def test_patch_telemetry_is_sanitized(repo: Path):
    _nc(repo, "nc1")
    result = patch_nonconformity(repo, "nc1", {"telemetryRef": {"hours": 120.5, "faultCodes": ["E1", 7, None]}})
    assert result["data"]["telemetryRef"] == {"hours": 120.5, "faultCodes": ["E1"]}
