from __future__ import annotations

from pathlib import Path

import pytest
import requests

from fleetcheck.core.v1 import uploads
from fleetcheck.core.v1.uploads import (
    UploadError,
    resolve_local_upload,
    sanitize_filename,
    sanitize_name,
    save_local_upload,
    upload_image,
    upload_to_imgbb,
)


class _FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def _fake_post(calls, response):
    def _post(url, **kwargs):
        calls.append((url, kwargs))
        if isinstance(response, Exception):
            raise response
        return response
    return _post


def test_sanitize_filename_and_name():
    assert sanitize_filename("Foto do Pneu.JPEG") == "Foto-do-Pneu.jpg"
    assert sanitize_filename("arquivo.tar.gz") == "arquivo-tar.gz"
    assert sanitize_filename("semextensao") == "semextensao"
    assert sanitize_filename("   ") is None
    assert sanitize_name(" placa ABC ") == "placa-ABC"
    assert sanitize_name("") is None


def test_imgbb_upload_posts_image(monkeypatch):
    calls = []
    payload = {"success": True, "data": {"url": "https://i.ibb.co/abc/pneu.jpg"}}
    monkeypatch.setattr(uploads.requests, "post", _fake_post(calls, _FakeResponse(200, payload)))

    url = upload_to_imgbb(b"\x89PNG", filename="Pneu.JPEG", api_key="k123")
    assert url == "https://i.ibb.co/abc/pneu.jpg"
    (endpoint, kwargs), = calls
    assert endpoint == uploads.IMGBB_ENDPOINT
    assert kwargs["params"] == {"key": "k123"}
    assert kwargs["files"]["image"] == ("Pneu.jpg", b"\x89PNG")
    assert kwargs["data"] == {"name": "Pneu"}


def test_imgbb_url_falls_back_to_nested_image(monkeypatch):
    payload = {"success": True, "data": {"image": {"url": "https://i.ibb.co/x.png"}}}
    monkeypatch.setattr(uploads.requests, "post", _fake_post([], _FakeResponse(200, payload)))
    assert upload_to_imgbb(b"img", api_key="k") == "https://i.ibb.co/x.png"


def test_imgbb_accepts_any_ok_status(monkeypatch):
    payload = {"success": True, "data": {"url": "https://i.ibb.co/c.png"}}
    monkeypatch.setattr(uploads.requests, "post", _fake_post([], _FakeResponse(201, payload)))
    assert upload_to_imgbb(b"img", api_key="k") == "https://i.ibb.co/c.png"


@pytest.mark.parametrize(
    "response,code",
    [
        (requests.ConnectionError("offline"), "IMGBB_NETWORK_ERROR"),
        (_FakeResponse(400, {"success": False, "error": {"message": "bad"}}), "IMGBB_UPLOAD_FAILED"),
        (_FakeResponse(200, None), "IMGBB_UPLOAD_FAILED"),
        (_FakeResponse(200, {"success": True, "data": {}}), "IMGBB_UPLOAD_NO_URL"),
    ],
)
def test_imgbb_failures_map_to_codes(monkeypatch, response, code):
    monkeypatch.setattr(uploads.requests, "post", _fake_post([], response))
    with pytest.raises(UploadError) as ei:
        upload_to_imgbb(b"img", api_key="k")
    assert ei.value.code == code
    assert ei.value.status == 502


def test_imgbb_requires_key_and_bytes(monkeypatch):
    monkeypatch.delenv("IMGBB_API_KEY", raising=False)
    with pytest.raises(UploadError) as ei:
        upload_to_imgbb(b"img")
    assert (ei.value.code, ei.value.status) == ("IMGBB_API_KEY_MISSING", 500)

    with pytest.raises(UploadError) as ei:
        upload_to_imgbb(b"", api_key="k")
    assert (ei.value.code, ei.value.status) == ("IMGBB_INVALID_IMAGE", 400)


def test_upload_image_uses_configured_provider(repo: Path, monkeypatch):
    monkeypatch.setenv("IMGBB_API_KEY", "env-key")
    calls = []
    payload = {"success": True, "data": {"display_url": "https://i.ibb.co/d.png"}}
    monkeypatch.setattr(uploads.requests, "post", _fake_post(calls, _FakeResponse(200, payload)))
    assert upload_image(repo, b"img", filename="a.png") == {"url": "https://i.ibb.co/d.png", "provider": "imgbb"}
    assert calls[0][1]["params"] == {"key": "env-key"}

    monkeypatch.setenv("FC_UPLOAD_PROVIDER", "local")
    result = upload_image(repo, b"img", filename="a.png")
    assert result["provider"] == "local"
    assert result["url"].startswith("/uploads/")
    assert len(calls) == 1


def test_local_upload_roundtrip(repo: Path):
    web_path = save_local_upload(repo, b"bytes", filename="Foto Luz.PNG")
    assert web_path.startswith("/uploads/")
    assert web_path.endswith("-Foto-Luz.png")

    rel = web_path[len("/uploads/"):]
    stored = resolve_local_upload(repo, rel)
    assert stored.read_bytes() == b"bytes"

    with pytest.raises(FileNotFoundError):
        resolve_local_upload(repo, "../fleetrepo.yml")
    with pytest.raises(FileNotFoundError):
        resolve_local_upload(repo, "2024-01/missing.png")
