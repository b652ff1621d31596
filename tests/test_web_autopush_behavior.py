from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

pytest.importorskip("flask", reason="Flask not installed; web API tests skipped")

from conftest import import_web_app_module
from fleetcheck.core.v1.templates import get_template


def _init_git_repo(root: Path) -> None:
    subprocess.run(["git", "init"], cwd=root, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    subprocess.run(["git", "config", "user.email", "test@example.com"], cwd=root, check=True)
    subprocess.run(["git", "config", "user.name", "Test User"], cwd=root, check=True)


@pytest.fixture
def web(fleet, monkeypatch: pytest.MonkeyPatch):
    repo = fleet["repo"]
    _init_git_repo(repo)
    monkeypatch.delenv("FC_GIT_DISABLED", raising=False)
    mod = import_web_app_module()
    monkeypatch.setattr(mod, "get_datarepo_path", lambda: repo)
    return repo, mod


def _patch_periodicity(client):
    return client.patch("/api/templates/tpl_diario/periodicity", json={"active": True, "quantity": 5, "unit": "day"})


def test_autopush_failure_does_not_fail_request(web, monkeypatch: pytest.MonkeyPatch):
    repo, mod = web
    monkeypatch.setenv("FC_WEB_AUTOPUSH", "1")
    calls = []

    def _raise(path, *_a, **_k):
        calls.append(path)
        raise RuntimeError("sentinel-push")

    monkeypatch.setattr(mod, "git_push", _raise)

    resp = _patch_periodicity(mod.app.test_client())
    assert resp.status_code == 200
    assert (resp.get_json() or {}).get("success") is True
    assert calls == [repo]
    assert get_template(repo, "tpl_diario")["periodicity"]["windowDays"] == 5


def test_autopush_disabled_never_pushes(web, monkeypatch: pytest.MonkeyPatch):
    repo, mod = web
    monkeypatch.delenv("FC_WEB_AUTOPUSH", raising=False)

    def _fail(*_a, **_k):
        raise AssertionError("git_push must not be called")

    monkeypatch.setattr(mod, "git_push", _fail)
    resp = _patch_periodicity(mod.app.test_client())
    assert resp.status_code == 200


def test_reads_do_not_push(web, monkeypatch: pytest.MonkeyPatch):
    repo, mod = web
    monkeypatch.setenv("FC_WEB_AUTOPUSH", "1")
    calls = []
    monkeypatch.setattr(mod, "git_push", lambda *a, **k: calls.append(a))
    client = mod.app.test_client()
    assert client.get("/api/nc").status_code == 200
    assert client.get("/api/machines").status_code == 200
    assert calls == []
