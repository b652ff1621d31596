from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

pytest.importorskip("flask", reason="Flask not installed; web API tests skipped")

from conftest import import_web_app_module
from fleetcheck.core.v1.store import create_document


def _init_git_repo(root: Path) -> None:
    subprocess.run(["git", "init"], cwd=root, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    subprocess.run(["git", "config", "user.email", "test@example.com"], cwd=root, check=True)
    subprocess.run(["git", "config", "user.name", "Test User"], cwd=root, check=True)


def _git_last_commit_author(root: Path) -> tuple[str, str]:
    name = subprocess.run(["git", "log", "-n", "1", "--pretty=%an"], cwd=root, capture_output=True, text=True).stdout.strip()
    email = subprocess.run(["git", "log", "-n", "1", "--pretty=%ae"], cwd=root, capture_output=True, text=True).stdout.strip()
    return name, email


@pytest.fixture
def git_client(fleet, monkeypatch: pytest.MonkeyPatch):
    repo = fleet["repo"]
    create_document(repo, "nonConformities", {
        "title": "Farol queimado",
        "status": "aberta",
        "severity": "baixa",
        "createdAt": "2024-05-10T08:00:00.000Z",
        "linkedAsset": {"id": "m_esc01", "tag": "ESC-01"},
    }, "nc_farol")
    _init_git_repo(repo)
    monkeypatch.delenv("FC_GIT_DISABLED", raising=False)
    monkeypatch.setenv("FC_WEB_AUTOPUSH", "0")

    mod = import_web_app_module()
    monkeypatch.setattr(mod, "get_datarepo_path", lambda: repo)
    return repo, mod.app.test_client()


def test_nc_patch_sets_commit_author_from_headers(git_client):
    repo, client = git_client
    headers = {
        "X-Forwarded-User": "Jane Doe",
        "X-Forwarded-Email": "jane.doe@example.com",
    }
    resp = client.patch("/api/nc/nc_farol", json={"status": "em_execucao"}, headers=headers)
    assert resp.status_code == 200
    data = resp.get_json() or {}
    assert data["audits"][0]["byUserId"] == "jane.doe@example.com"
    assert data["audits"][0]["byNome"] == "Jane Doe"

    an, ae = _git_last_commit_author(repo)
    assert an == "Jane Doe"
    assert ae == "jane.doe@example.com"


def test_email_only_header_derives_name(git_client):
    repo, client = git_client
    resp = client.patch(
        "/api/nc/nc_farol", json={"status": "bloqueada"}, headers={"X-Auth-Request-Email": "joao.silva@example.com"}
    )
    assert resp.status_code == 200
    assert _git_last_commit_author(repo) == ("Joao Silva", "joao.silva@example.com")


def test_custom_identity_header_names(git_client, monkeypatch: pytest.MonkeyPatch):
    repo, client = git_client
    monkeypatch.setenv("FC_WEB_IDENTITY_HEADER_NAME", "X-Remote-User")
    monkeypatch.setenv("FC_WEB_IDENTITY_HEADER_EMAIL", "X-Remote-Email")
    resp = client.patch(
        "/api/nc/nc_farol",
        json={"severity": "alta"},
        headers={"X-Remote-User": "Maria", "X-Remote-Email": "maria@example.com"},
    )
    assert resp.status_code == 200
    assert _git_last_commit_author(repo) == ("Maria", "maria@example.com")


def test_without_headers_commit_uses_repo_identity(git_client):
    repo, client = git_client
    resp = client.patch("/api/nc/nc_farol", json={"status": "aguardando_peca"})
    assert resp.status_code == 200
    assert resp.get_json()["audits"][0]["byUserId"] == "system"
    assert _git_last_commit_author(repo) == ("Test User", "test@example.com")
