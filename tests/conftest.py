from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure project root on sys.path so 'fleetcheck' is importable when running pytest
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fleetcheck.core.v1.machines import create_machine
from fleetcheck.core.v1.templates import create_template
from fleetcheck.core.v1.users import create_user


DAILY_QUESTIONS = [
    {
        "id": "q_oleo",
        "text": "Nível de óleo do motor",
        "systemCategory": "Motor",
        "photoRule": "required_nc",
    },
    {
        "id": "q_pneu",
        "text": "Pressão dos pneus",
        "variable": {
            "name": "Pressão (psi)",
            "type": "decimal",
            "condition": "always",
            "alertRule": {"color": "red", "message": "Calibrar pneus", "triggerCondition": "nc"},
            "periodicity": {"quantity": 1, "unit": "week", "active": True},
        },
    },
    {"id": "q_luz", "text": "Faróis funcionando", "photoRule": "none"},
]


@pytest.fixture
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Empty datarepo directory; git is off unless a test turns it back on."""
    root = tmp_path / "repo"
    root.mkdir(parents=True)
    monkeypatch.setenv("FC_GIT_DISABLED", "1")
    monkeypatch.delenv("FC_PUBLIC_BASE_URL", raising=False)
    monkeypatch.delenv("FC_UPLOAD_PROVIDER", raising=False)
    monkeypatch.delenv("IMGBB_API_KEY", raising=False)
    return root


@pytest.fixture
def fleet(repo: Path) -> dict:
    """One operator, one daily template and one machine using it."""
    user = create_user(repo, {"matricula": "1001", "nome": "Ana Souza", "role": "operador"}, "u_ana")
    template = create_template(
        repo,
        {"type": "operador", "title": "Checklist diário", "questions": DAILY_QUESTIONS,
         "header": {"foNumber": "FO-12", "revision": "3"}},
        "tpl_diario",
    )
    machine = create_machine(
        repo,
        {"modelo": "Escavadeira 320", "tag": "ESC-01", "placa": "ABC1D23", "setor": "Mina",
         "checklists": ["tpl_diario"]},
        "m_esc01",
    )
    return {"repo": repo, "user": user, "template": template, "machine": machine}


def daily_payload(oleo: str = "ok", pneu: str = "ok", luz: str = "ok", **extra) -> dict:
    """A complete submission for the daily template."""
    answers = {
        "q_oleo": {"response": oleo},
        "q_pneu": {"response": pneu, "variableValue": "32,5"},
        "q_luz": {"response": luz},
    }
    if oleo == "nc":
        answers["q_oleo"]["photoUrls"] = ["https://i.ibb.co/oleo.png"]
        answers["q_oleo"]["observation"] = "  vazamento no cárter "
    payload = {"templateId": "tpl_diario", "matricula": "1001", "km": "1250", "answers": answers}
    payload.update(extra)
    return payload


def import_web_app_module():
    """Load web/app.py once per session; its Prometheus collectors register globally."""
    mod = sys.modules.get("fc_web_app")
    if mod is not None:
        return mod
    import importlib.util

    web_app_path = Path(__file__).resolve().parents[1] / "web" / "app.py"
    spec = importlib.util.spec_from_file_location("fc_web_app", str(web_app_path))
    assert spec and spec.loader
    mod = importlib.util.module_from_spec(spec)
    sys.modules["fc_web_app"] = mod
    try:
        spec.loader.exec_module(mod)  # type: ignore
    except Exception:
        sys.modules.pop("fc_web_app", None)
        raise
    return mod
