from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from fleetcheck.core.v1.machines import (
    create_machine,
    find_machine_by_tag,
    list_machines,
    machine_display_name,
    resolve_actor_kind,
    resolve_actor_label,
    set_machine_checklists,
    update_machine,
)
from fleetcheck.core.v1.users import create_user, find_user_by_matricula, list_users, update_user


def test_create_machine_defaults(repo: Path):
    m = create_machine(repo, {"modelo": " Caminhão Pipa ", "placa": "", "fleetType": "vehicle"})
    assert m["modelo"] == "Caminhão Pipa"
    assert m["tag"]
    assert m["checklists"] == []
    assert m["setor"] == ""
    assert m["fleetType"] == "vehicle"
    assert "placa" not in m


def test_machine_requires_modelo_and_valid_fleet_type(repo: Path):
    with pytest.raises(ValueError):
        create_machine(repo, {"tag": "X"})
    with pytest.raises(ValueError):
        create_machine(repo, {"modelo": "X", "fleetType": "boat"})


def test_tag_is_unique(repo: Path):
    create_machine(repo, {"modelo": "A", "tag": "T-1"}, "m_a")
    m_b = create_machine(repo, {"modelo": "B", "tag": "T-2"}, "m_b")
    with pytest.raises(ValueError):
        create_machine(repo, {"modelo": "C", "tag": "T-1"})
    with pytest.raises(ValueError):
        update_machine(repo, m_b["id"], {"tag": "T-1"})
    # Re-saving its own tag is fine
    assert update_machine(repo, "m_a", {"tag": "T-1", "setor": "Oficina"})["setor"] == "Oficina"


def test_find_by_tag_decodes_and_trims(repo: Path):
    create_machine(repo, {"modelo": "Pá carregadeira", "tag": "PC 01/B"}, "m_pc")
    assert find_machine_by_tag(repo, "PC%2001%2FB")["id"] == "m_pc"
    assert find_machine_by_tag(repo, "  PC 01/B ")["id"] == "m_pc"
    assert find_machine_by_tag(repo, "PC-01") is None
    assert find_machine_by_tag(repo, "") is None


def test_clearing_optional_field_removes_it(repo: Path):
    create_machine(repo, {"modelo": "A", "tag": "T", "placa": "AAA0000", "combustivel": "diesel"}, "m1")
    m = update_machine(repo, "m1", {"placa": "  ", "setor": "Oficina"})
    assert "placa" not in m
    assert m["combustivel"] == "diesel"
    assert m["setor"] == "Oficina"
    stored = yaml.safe_load((repo / "machines" / "m1" / "document.yml").read_text())
    assert "placa" not in stored
    assert "id" not in stored


def test_assign_checklists_and_listing_order(repo: Path):
    create_machine(repo, {"modelo": "Trator", "tag": "B"}, "m2")
    create_machine(repo, {"modelo": "escavadeira", "tag": "A"}, "m1")
    m = set_machine_checklists(repo, "m2", ["tpl_a", " ", "tpl_b"])
    assert m["checklists"] == ["tpl_a", "tpl_b"]
    assert [x["id"] for x in list_machines(repo)] == ["m1", "m2"]


def test_actor_and_display_helpers():
    assert resolve_actor_kind({"fleetType": "vehicle"}) == "motorista"
    assert resolve_actor_kind({"fleetType": "anything"}) == "operador"
    assert resolve_actor_label(None) == "Operador"
    assert machine_display_name({"id": "m1", "tag": "T"}) == "T"
    assert machine_display_name({"id": "m1", "modelo": "Trator", "tag": "T"}) == "Trator"
    assert machine_display_name({"id": "m1"}) == "m1"


def test_users_matricula_unique_and_role_checked(repo: Path):
    u = create_user(repo, {"matricula": " 2002 ", "nome": "Bruno"})
    assert u["matricula"] == "2002"
    assert u["role"] == "operador"
    with pytest.raises(ValueError):
        create_user(repo, {"matricula": "2002", "nome": "Outro"})
    with pytest.raises(ValueError):
        create_user(repo, {"matricula": "3003", "nome": "Carla", "role": "gerente"})
    with pytest.raises(ValueError):
        create_user(repo, {"matricula": "3003"})

    other = create_user(repo, {"matricula": "3003", "nome": "carla", "role": "mecanico"})
    with pytest.raises(ValueError):
        update_user(repo, other["id"], {"matricula": "2002"})

    assert find_user_by_matricula(repo, "3003")["nome"] == "carla"
    assert find_user_by_matricula(repo, "") is None
    assert [x["nome"] for x in list_users(repo)] == ["Bruno", "carla"]
