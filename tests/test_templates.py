from __future__ import annotations

from pathlib import Path

import pytest

from fleetcheck.core.v1.store import get_document
from fleetcheck.core.v1.templates import (
    TemplateNotFoundError,
    active_templates_for_machine,
    compute_window_days,
    create_template,
    get_template_actor_config,
    get_template_header,
    resolve_photo_rule,
    set_template_periodicity,
    update_template,
)


def test_photo_rule_falls_back_to_legacy_flag():
    assert resolve_photo_rule({"photoRule": "none", "requiresPhoto": True}) == "none"
    assert resolve_photo_rule({"requiresPhoto": True}) == "required_nc"
    assert resolve_photo_rule({"requiresPhoto": False}) == "optional"
    assert resolve_photo_rule({}) == "optional"
    assert resolve_photo_rule(None) == "optional"


@pytest.mark.parametrize("quantity,unit,expected", [(3, "day", 3), (2, "week", 14), (1, "month", 30)])
def test_compute_window_days(quantity, unit, expected):
    assert compute_window_days(quantity, unit) == expected


def test_questions_are_normalized_on_create(repo: Path):
    tpl = create_template(repo, {
        "title": "  Pré-uso  ",
        "questions": [
            {"text": "Freios", "requiresPhoto": True, "group": "Freios"},
            {"id": "q2", "text": "Buzina"},
        ],
    })
    assert tpl["title"] == "Pré-uso"
    assert tpl["type"] == "operador"
    assert tpl["version"] == 1
    assert tpl["isActive"] is True
    q1, q2 = tpl["questions"]
    assert q1["id"]
    assert q1["photoRule"] == "required_nc" and q1["requiresPhoto"] is True
    assert q1["group"] == "Freios"
    assert q2 == {"id": "q2", "text": "Buzina", "photoRule": "optional", "requiresPhoto": False}


def test_duplicate_question_ids_and_bad_variables_rejected(repo: Path):
    with pytest.raises(ValueError):
        create_template(repo, {"title": "T", "questions": [{"id": "a", "text": "x"}, {"id": "a", "text": "y"}]})
    with pytest.raises(ValueError):
        create_template(repo, {"title": "T", "questions": [{"text": "x", "variable": {"name": "v", "type": "color"}}]})
    with pytest.raises(ValueError):
        create_template(repo, {"title": "T", "type": "gerente"})


def test_actor_defaults_and_header():
    assert get_template_actor_config({"type": "motorista"}) == {
        "kind": "motorista",
        "requireDriverField": True,
        "requireOperatorSignature": False,
        "requireMotoristSignature": True,
    }
    cfg = get_template_actor_config({"type": "operador", "actor": {"kind": "mecanico", "requireDriverField": False}})
    assert cfg["kind"] == "mecanico"
    assert cfg["requireDriverField"] is False
    assert get_template_header({"header": {"foNumber": "FO-1"}}) == {
        "foNumber": "FO-1", "issueDate": "", "revision": "", "documentNumber": "",
    }


def test_set_periodicity_activates_and_computes_window(fleet):
    repo = fleet["repo"]
    p = set_template_periodicity(repo, "tpl_diario", {"active": True, "quantity": 2.7, "unit": "week"})
    assert p == {"quantity": 2, "unit": "week", "windowDays": 14, "anchor": "last_submission", "active": True}
    assert get_document(repo, "checklistTemplates", "tpl_diario")["periodicity"] == p


def test_set_periodicity_clamps_quantity(fleet):
    p = set_template_periodicity(fleet["repo"], "tpl_diario", {"active": True, "quantity": 0, "unit": "day"})
    assert p["quantity"] == 1
    assert p["windowDays"] == 1


def test_set_periodicity_deactivate_keeps_previous_values(fleet):
    repo = fleet["repo"]
    set_template_periodicity(repo, "tpl_diario", {"active": True, "quantity": 3, "unit": "month"})
    p = set_template_periodicity(repo, "tpl_diario", {"active": False, "unit": "fortnight", "quantity": "x"})
    assert p == {"quantity": 3, "unit": "month", "windowDays": 90, "anchor": "last_submission", "active": False}


@pytest.mark.parametrize(
    "payload,message",
    [
        ({"active": "true"}, "Input should be a valid boolean"),
        ({}, "Field required"),
        ({"active": True, "unit": "fortnight"}, "Unidade"),
        ({"active": True, "quantity": "três"}, "Quantidade"),
        ({"active": False, "anchor": "sunrise"}, "Âncora"),
        ({"active": True, "anchor": "calendar"}, "calendar"),
    ],
)
def test_set_periodicity_rejections(fleet, payload, message):
    with pytest.raises(ValueError) as ei:
        set_template_periodicity(fleet["repo"], "tpl_diario", payload)
    assert message in str(ei.value)


def test_set_periodicity_calendar_allowed_when_inactive(fleet):
    p = set_template_periodicity(fleet["repo"], "tpl_diario", {"active": False, "anchor": "calendar"})
    assert p["anchor"] == "calendar"
    assert p["active"] is False


def test_set_periodicity_unknown_template(repo: Path):
    with pytest.raises(TemplateNotFoundError):
        set_template_periodicity(repo, "nope", {"active": True})


def test_active_templates_for_machine_skips_inactive_and_missing(fleet):
    repo = fleet["repo"]
    create_template(repo, {"title": "Semanal", "isActive": False}, "tpl_semanal")
    machine = dict(fleet["machine"], checklists=["tpl_semanal", "ghost", "tpl_diario"])
    assert [t["id"] for t in active_templates_for_machine(repo, machine)] == ["tpl_diario"]

    update_template(repo, "tpl_semanal", {"isActive": True})
    assert [t["id"] for t in active_templates_for_machine(repo, machine)] == ["tpl_semanal", "tpl_diario"]
