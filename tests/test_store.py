from __future__ import annotations

import subprocess
from datetime import datetime, timezone
from pathlib import Path

import pytest

from fleetcheck.core.v1.store import (
    append_audit,
    create_document,
    delete_document,
    find_documents,
    get_document,
    list_audits,
    list_documents,
    new_doc_id,
    now_iso,
    parse_iso,
    update_document,
)


def _init_git_repo(root: Path) -> None:
    subprocess.run(["git", "init"], cwd=root, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    subprocess.run(["git", "config", "user.email", "test@example.com"], cwd=root, check=True)
    subprocess.run(["git", "config", "user.name", "Test User"], cwd=root, check=True)


def _git_log_subjects(root: Path) -> list[str]:
    out = subprocess.run(["git", "log", "--pretty=%s"], cwd=root, capture_output=True, text=True).stdout
    return [line for line in out.splitlines() if line.strip()]


def test_new_doc_id_is_crockford_ulid():
    a, b = new_doc_id(), new_doc_id()
    assert len(a) == 26
    assert a != b
    assert set(a) <= set("0123456789ABCDEFGHJKMNPQRSTVWXYZ")


def test_now_iso_and_parse_iso():
    dt = datetime(2024, 3, 5, 14, 7, 9, 123456, tzinfo=timezone.utc)
    s = now_iso(dt)
    assert s == "2024-03-05T14:07:09.123Z"
    assert parse_iso(s) == dt.replace(microsecond=123000)
    assert parse_iso("2024-03-05") == datetime(2024, 3, 5, tzinfo=timezone.utc)
    assert parse_iso("not a date") is None
    assert parse_iso(None) is None
    assert parse_iso(True) is None


def test_create_get_update_delete_roundtrip(repo: Path):
    doc = create_document(repo, "machines", {"modelo": "Trator", "id": "ignored"}, "m1")
    assert doc["id"] == "m1"

    stored = (repo / "machines" / "m1" / "document.yml").read_text()
    assert "id:" not in stored
    assert get_document(repo, "machines", "m1")["modelo"] == "Trator"

    updated = update_document(repo, "machines", "m1", {"setor": "Mina"})
    assert updated == {"modelo": "Trator", "setor": "Mina", "id": "m1"}

    with pytest.raises(FileExistsError):
        create_document(repo, "machines", {"modelo": "Outro"}, "m1")

    delete_document(repo, "machines", "m1")
    with pytest.raises(FileNotFoundError):
        get_document(repo, "machines", "m1")


def test_unknown_collection_and_invalid_id_rejected(repo: Path):
    with pytest.raises(ValueError):
        create_document(repo, "bogus", {"a": 1})
    with pytest.raises(ValueError):
        create_document(repo, "machines", {"a": 1}, "../escape")


def test_list_skips_unreadable_documents(repo: Path):
    create_document(repo, "users", {"nome": "Ana"}, "u1")
    broken = repo / "users" / "u2" / "document.yml"
    broken.parent.mkdir(parents=True)
    broken.write_text("nome: [unclosed\n")
    (repo / "users" / "u3").mkdir()

    ids = [d["id"] for d in list_documents(repo, "users")]
    assert ids == ["u1"]


def test_find_documents_where_order_and_limit(repo: Path):
    create_document(repo, "checklistResponses", {"machineId": "m1", "createdAt": "2024-01-02T10:00:00.000Z"}, "r1")
    create_document(repo, "checklistResponses", {"machineId": "m1", "createdAt": "2024-01-05T10:00:00.000Z"}, "r2")
    create_document(repo, "checklistResponses", {"machineId": "m2", "createdAt": "2024-01-09T10:00:00.000Z"}, "r3")

    found = find_documents(repo, "checklistResponses", where={"machineId": "m1"}, order_by="createdAt", descending=True)
    assert [d["id"] for d in found] == ["r2", "r1"]

    latest = find_documents(repo, "checklistResponses", order_by="createdAt", descending=True, limit=1)
    assert [d["id"] for d in latest] == ["r3"]

    by_predicate = find_documents(repo, "checklistResponses", where=lambda d: d["id"] != "r2")
    assert {d["id"] for d in by_predicate} == {"r1", "r3"}


def test_yaml_timestamps_are_kept_as_iso_strings(repo: Path):
    fp = repo / "checklistResponses" / "r1" / "document.yml"
    fp.parent.mkdir(parents=True)
    fp.write_text("createdAt: 2024-02-01 08:30:00\nday: 2024-02-01\n")
    doc = get_document(repo, "checklistResponses", "r1")
    assert doc["createdAt"] == "2024-02-01T08:30:00.000Z"
    assert doc["day"] == "2024-02-01"


def test_audits_are_append_only_and_newest_first(repo: Path):
    create_document(repo, "nonConformities", {"title": "x"}, "nc1")
    append_audit(repo, "nonConformities", "nc1", {"atISO": "2024-01-01T00:00:00.000Z", "diff": {"a": 1}})
    append_audit(repo, "nonConformities", "nc1", {"atISO": "2024-01-03T00:00:00.000Z", "diff": {"a": 2}})
    with open(repo / "nonConformities" / "nc1" / "audits.ndjson", "a") as f:
        f.write("not json\n")

    audits = list_audits(repo, "nonConformities", "nc1")
    assert [a["diff"]["a"] for a in audits] == [2, 1]
    assert all(a.get("id") for a in audits)
    assert len(list_audits(repo, "nonConformities", "nc1", limit=1)) == 1

    with pytest.raises(FileNotFoundError):
        append_audit(repo, "nonConformities", "missing", {"diff": {}})


def test_mutations_are_committed_when_git_enabled(repo: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("FC_GIT_DISABLED", raising=False)
    _init_git_repo(repo)

    create_document(repo, "machines", {"modelo": "Trator"}, "m1")
    update_document(repo, "machines", "m1", {"setor": "Mina"})
    delete_document(repo, "machines", "m1")

    subjects = _git_log_subjects(repo)
    assert subjects[:3] == [
        "[fleetcheck] Deleted machines/m1",
        "[fleetcheck] Updated machines/m1",
        "[fleetcheck] Created machines/m1",
    ]
    status = subprocess.run(["git", "status", "--porcelain"], cwd=repo, capture_output=True, text=True).stdout
    assert status.strip() == ""
