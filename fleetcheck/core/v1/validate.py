from __future__ import annotations
from pathlib import Path
from typing import Dict, List
import yaml

from .config import COLLECTIONS, validate_doc_id
from .store import DOCUMENT_FILENAME, list_documents


def _rel(p: Path, root: Path) -> str:
    try:
        return str(p.relative_to(root))
    except ValueError:
        return str(p)


def _issue(issues: List[Dict], severity: str, code: str, path: str, message: str) -> None:
    issues.append({"severity": severity, "code": code, "path": path, "message": message})


def _scan_layout(repo: Path, issues: List[Dict]) -> None:
    for name in COLLECTIONS:
        root = repo / name
        if not root.exists():
            if name != "kpiCache":
                _issue(issues, "warning", "COLLECTION_MISSING", f"{name}/", f"Missing {name}/ directory")
            continue
        for yml in root.glob("*.yml"):
            _issue(issues, "error", "DOC_LAYOUT_SINGLE_FILE", _rel(yml, repo),
                   f"Documents must live under {name}/<id>/{DOCUMENT_FILENAME}, not a single YAML file")
        for child in sorted(p for p in root.iterdir() if p.is_dir()):
            try:
                validate_doc_id(child.name)
            except ValueError as e:
                _issue(issues, "error", "DOC_ID_INVALID", f"{name}/{child.name}/", f"Invalid document id: {e}")
                continue
            fp = child / DOCUMENT_FILENAME
            if not fp.exists():
                _issue(issues, "error", "DOC_FILE_MISSING", f"{name}/{child.name}/", f"Missing {DOCUMENT_FILENAME}")
                continue
            try:
                with open(fp) as f:
                    data = yaml.safe_load(f)
            except yaml.YAMLError:
                _issue(issues, "error", "DOC_YAML_INVALID", _rel(fp, repo), f"{DOCUMENT_FILENAME} is not valid YAML")
                continue
            if data is not None and not isinstance(data, dict):
                _issue(issues, "error", "DOC_YAML_INVALID", _rel(fp, repo), f"{DOCUMENT_FILENAME} must be a YAML mapping")
            elif isinstance(data, dict) and "id" in data:
                _issue(issues, "warning", "DOC_ID_FIELD", _rel(fp, repo),
                       "Do not store 'id' in the document; identity is the directory name")


def _duplicates(docs: List[dict], key: str) -> Dict[str, List[str]]:
    seen: Dict[str, List[str]] = {}
    for d in docs:
        val = str(d.get(key) or "").strip()
        if val:
            seen.setdefault(val, []).append(d["id"])
    return {k: v for k, v in seen.items() if len(v) > 1}


def _scan_references(repo: Path, issues: List[Dict]) -> None:
    machines = {m["id"]: m for m in list_documents(repo, "machines")}
    templates = {t["id"]: t for t in list_documents(repo, "checklistTemplates")}
    users = list_documents(repo, "users")

    for tag, ids in _duplicates(list(machines.values()), "tag").items():
        _issue(issues, "error", "MACHINE_TAG_DUPLICATE", "machines/", f"TAG '{tag}' is used by: {', '.join(ids)}")
    for mat, ids in _duplicates(users, "matricula").items():
        _issue(issues, "error", "USER_MATRICULA_DUPLICATE", "users/", f"matricula '{mat}' is used by: {', '.join(ids)}")

    for m in machines.values():
        for tid in m.get("checklists") or []:
            if tid not in templates:
                _issue(issues, "warning", "MACHINE_TEMPLATE_UNKNOWN", f"machines/{m['id']}/",
                       f"Assigned checklist template '{tid}' does not exist")

    for t in templates.values():
        qids = [q.get("id") for q in t.get("questions") or [] if isinstance(q, dict)]
        if len(qids) != len(set(qids)):
            _issue(issues, "error", "TEMPLATE_QUESTION_DUPLICATE", f"checklistTemplates/{t['id']}/",
                   "Question ids must be unique within a template")

    responses = list_documents(repo, "checklistResponses")
    response_ids = set()
    for r in responses:
        response_ids.add(r["id"])
        path = f"checklistResponses/{r['id']}/"
        if r.get("machineId") not in machines:
            _issue(issues, "error", "RESPONSE_MACHINE_UNKNOWN", path, f"Unknown machine '{r.get('machineId')}'")
        template = templates.get(r.get("templateId"))
        if template is None:
            _issue(issues, "error", "RESPONSE_TEMPLATE_UNKNOWN", path, f"Unknown template '{r.get('templateId')}'")
            continue
        qids = {q.get("id") for q in template.get("questions") or [] if isinstance(q, dict)}
        for a in r.get("answers") or []:
            if isinstance(a, dict) and a.get("questionId") not in qids:
                _issue(issues, "warning", "RESPONSE_QUESTION_UNKNOWN", path,
                       f"Answer references question '{a.get('questionId')}' not in template '{template['id']}'")

    for nc in list_documents(repo, "nonConformities"):
        origin = nc.get("originChecklistResponseId")
        if origin and origin not in response_ids:
            _issue(issues, "warning", "NC_RESPONSE_UNKNOWN", f"nonConformities/{nc['id']}/",
                   f"Origin response '{origin}' does not exist")


def validate_repo(repo: Path) -> dict:
    """Integrity report of a datarepo: {errors, warnings, issues}."""
    issues: List[Dict] = []
    _scan_layout(repo, issues)
    _scan_references(repo, issues)
    errors = sum(1 for i in issues if i.get("severity") == "error")
    warnings = sum(1 for i in issues if i.get("severity") == "warning")
    return {"errors": errors, "warnings": warnings, "issues": issues}
