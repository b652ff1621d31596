#!/usr/bin/env python3
"""
fleetcheck Web UI - Flask application serving the checklist form for
operators and the non-conformity dashboards for administrators.
"""

from flask import Flask, render_template, request, jsonify, redirect, url_for, flash, send_file, Response, g
from pathlib import Path
import sys
import os
import io
import time
import uuid
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import List
from PIL import Image

# Prometheus metrics
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

# Add the parent directory to Python path to import fleetcheck modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from fleetcheck.core.v1.config import get_datarepo_path, git_disabled
from fleetcheck.core.v1.store import list_documents
from fleetcheck.core.v1.machines import (
    list_machines,
    get_machine,
    find_machine_by_tag,
    machine_display_name,
    resolve_actor_label,
)
from fleetcheck.core.v1.users import find_user_by_matricula
from fleetcheck.core.v1.templates import list_templates, get_template, set_template_periodicity
from fleetcheck.core.v1.checklists import (
    ANSWER_LABELS,
    TREATMENT_LABELS,
    TREATMENT_STATUSES,
    MachineNotFoundError,
    SubmissionError,
    check_submission,
    get_response,
    list_pending_items,
    list_responses,
    load_checklist_context,
    photo_urls_of,
    resolve_header_data,
    save_treatment,
    submit_checklist,
    submit_weekly_checklists,
)
from fleetcheck.core.v1.nonconformities import (
    STATUSES as NC_STATUSES,
    SEVERITIES as NC_SEVERITIES,
    QueryValidationError,
    bulk_update_status,
    get_nonconformity,
    list_all_nonconformities,
    list_nonconformities,
    patch_nonconformity,
)
from fleetcheck.core.v1.kpis import compute_nc_dashboard, machine_reliability
from fleetcheck.core.v1.periodicity import (
    get_cached_periodicity,
    load_periodicity_compliance,
    load_variable_alerts,
    load_variable_periodicity,
    parse_compliance_filters,
    run_periodicity_job,
)
from fleetcheck.core.v1.uploads import UploadError, resolve_local_upload, upload_image
from fleetcheck.core.v1.stickers import (
    STICKER_FIELDS,
    build_batch_pdf,
    generate_sticker_for_machine,
    parse_sticker_size,
)
from fleetcheck.core.v1.reports import build_response_pdf
from fleetcheck.core.v1.gitutils import git_push

app = Flask(__name__)
app.secret_key = os.environ.get('FC_WEB_SECRET', 'dev-only-insecure-secret')

NC_STATUS_LABELS = {
    'aberta': 'Aberta',
    'em_execucao': 'Em execução',
    'aguardando_peca': 'Aguardando peça',
    'bloqueada': 'Bloqueada',
    'resolvida': 'Resolvida',
}
NC_SEVERITY_LABELS = {'baixa': 'Baixa', 'media': 'Média', 'alta': 'Alta'}


@app.context_processor
def inject_labels():
    return {
        'nc_status_labels': NC_STATUS_LABELS,
        'nc_severity_labels': NC_SEVERITY_LABELS,
        'answer_labels': ANSWER_LABELS,
        'treatment_labels': TREATMENT_LABELS,
    }


@app.template_filter('br_datetime')
def _br_datetime_filter(value):
    """ISO timestamp -> dd/mm/yyyy HH:MM (UTC). Unparseable values pass through."""
    if not value:
        return ''
    try:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return str(value)
    return dt.strftime('%d/%m/%Y %H:%M')


# -----------------------
# Prometheus instrumentation
# -----------------------
_METRICS_ENV = os.environ.get('METRICS_ENV', 'prod')
_SERVICE_NAME = os.environ.get('SERVICE_NAME', 'fleetcheck')

HTTP_REQUESTS_TOTAL = Counter(
    'fc_web_http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status', 'env', 'service'],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    'fc_web_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path', 'status', 'env', 'service'],
    buckets=(0.05, 0.1, 0.3, 1, 3, 10),
)

DOCUMENTS_TOTAL = Gauge(
    'fc_documents_total',
    'Number of documents per collection in the fleet datarepo',
    ['collection', 'env', 'service'],
)

OPEN_NONCONFORMITIES = Gauge(
    'fc_open_nonconformities',
    'Non-conformities not yet resolved',
    ['env', 'service'],
)

_GAUGE_COLLECTIONS = ('machines', 'checklistTemplates', 'checklistResponses', 'nonConformities', 'users')

try:
    _METRICS_TTL_SEC = int(os.environ.get('FC_METRICS_TTL_SEC', '15') or '15')
except ValueError:
    _METRICS_TTL_SEC = 15

_SIMPLE_METRICS_CACHE: dict = {
    'ts': 0.0,
    'values': {},
}


@app.before_request
def _metrics_before_request():
    g._metrics_t0 = time.time()


@app.after_request
def _metrics_after_request(response: Response):
    try:
        t0 = getattr(g, '_metrics_t0', None)
        dt = (time.time() - t0) if t0 is not None else None
        method = str(request.method or 'GET')
        # Route rule keeps label cardinality bounded
        rule = request.url_rule.rule if getattr(request, 'url_rule', None) else None
        path_label = str(rule or request.path or '/')
        status = str(getattr(response, 'status_code', 0))
        HTTP_REQUESTS_TOTAL.labels(method, path_label, status, _METRICS_ENV, _SERVICE_NAME).inc()
        if dt is not None:
            HTTP_REQUEST_DURATION_SECONDS.labels(method, path_label, status, _METRICS_ENV, _SERVICE_NAME).observe(dt)
    except Exception:
        # Never break responses on metrics errors
        app.logger.warning('metrics instrumentation failed', exc_info=True)
    return response


def _compute_internal_metrics(datarepo_path: Path) -> dict:
    """Document counts per collection plus the number of open NCs."""
    counts = {name: len(list_documents(datarepo_path, name)) for name in _GAUGE_COLLECTIONS}
    open_nc = sum(1 for nc in list_all_nonconformities(datarepo_path) if nc.get('status') != 'resolvida')
    return {'counts': counts, 'open_nc': open_nc}


def _update_internal_gauges() -> None:
    """Update internal Prometheus gauges with TTL caching."""
    now = time.time()
    if now - float(_SIMPLE_METRICS_CACHE.get('ts') or 0.0) < _METRICS_TTL_SEC:
        vals = _SIMPLE_METRICS_CACHE.get('values') or {}
    else:
        vals = _compute_internal_metrics(get_datarepo_path())
        _SIMPLE_METRICS_CACHE['ts'] = now
        _SIMPLE_METRICS_CACHE['values'] = vals
    for name, count in (vals.get('counts') or {}).items():
        DOCUMENTS_TOTAL.labels(name, _METRICS_ENV, _SERVICE_NAME).set(float(count))
    OPEN_NONCONFORMITIES.labels(_METRICS_ENV, _SERVICE_NAME).set(float(vals.get('open_nc') or 0))


@app.get('/metrics')
def _metrics_endpoint():
    try:
        _update_internal_gauges()
    except Exception:
        # Scrapes still succeed without the datarepo gauges
        app.logger.warning('could not refresh datarepo gauges', exc_info=True)
    data = generate_latest()
    return Response(response=data, status=200, mimetype=CONTENT_TYPE_LATEST)


# -----------------------
# Git orchestration helpers (txn + optional autopush)
# -----------------------
_REPO_TXN_LOCK = threading.RLock()


def _autopush_enabled() -> bool:
    val = os.environ.get('FC_WEB_AUTOPUSH')
    if val is None:
        return False
    return val.lower() in ('1', 'true', 'yes', 'on')


def _get_proxy_identity_header_names() -> tuple[list[str], list[str]]:
    """Candidate header names for user and email.

    Env vars (comma-separated): FC_WEB_IDENTITY_HEADER_NAME and
    FC_WEB_IDENTITY_HEADER_EMAIL.
    """
    user_env = (os.environ.get('FC_WEB_IDENTITY_HEADER_NAME') or '').strip()
    email_env = (os.environ.get('FC_WEB_IDENTITY_HEADER_EMAIL') or '').strip()
    users = [h.strip() for h in user_env.split(',') if h.strip()] or [
        'X-Forwarded-User',
        'X-Auth-Request-User',
    ]
    emails = [h.strip() for h in email_env.split(',') if h.strip()] or [
        'X-Forwarded-Email',
        'X-Auth-Request-Email',
    ]
    return users, emails


def _extract_identity_from_headers(req) -> tuple[str | None, str | None]:
    """(name, email) from proxy headers, or (None, None) when incomplete."""
    user_hdrs, email_hdrs = _get_proxy_identity_header_names()
    user_val = next((req.headers.get(h).strip() for h in user_hdrs if req.headers.get(h)), None)
    email_val = next((req.headers.get(h).strip() for h in email_hdrs if req.headers.get(h)), None)
    if not email_val and user_val and '@' in user_val:
        email_val = user_val
    name_val = user_val
    if not name_val and email_val:
        base = email_val.split('@', 1)[0]
        name_val = base.replace('.', ' ').replace('_', ' ').strip().title() or base
    if name_val and email_val:
        return name_val, email_val
    return None, None


def _request_actor(payload: dict | None = None) -> dict | None:
    """Who is acting: payload actor first, then proxy identity headers."""
    if isinstance(payload, dict) and isinstance(payload.get('actor'), dict):
        return payload['actor']
    name, email = _extract_identity_from_headers(request)
    if name and email:
        return {'id': email, 'nome': name}
    return None


@contextmanager
def _with_git_identity(name: str, email: str):
    """Temporarily set GIT_AUTHOR_* and GIT_COMMITTER_* for subprocess git commands."""
    keys = ['GIT_AUTHOR_NAME', 'GIT_AUTHOR_EMAIL', 'GIT_COMMITTER_NAME', 'GIT_COMMITTER_EMAIL']
    prev = {k: os.environ.get(k) for k in keys}
    try:
        os.environ['GIT_AUTHOR_NAME'] = name
        os.environ['GIT_COMMITTER_NAME'] = name
        os.environ['GIT_AUTHOR_EMAIL'] = email
        os.environ['GIT_COMMITTER_EMAIL'] = email
        yield
    finally:
        for k, v in prev.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _run_repo_txn(datarepo_path: Path, mutate_fn):
    """Serialize datarepo mutations, commit as the proxy identity, then optionally push."""
    if git_disabled():
        return mutate_fn()
    with _REPO_TXN_LOCK:
        name, email = _extract_identity_from_headers(request)
        if name and email:
            with _with_git_identity(name, email):
                result = mutate_fn()
        else:
            result = mutate_fn()
        if _autopush_enabled():
            try:
                git_push(datarepo_path)
            except RuntimeError as e:
                app.logger.warning(f"[fleetcheck][git] autopush failed: {e}")
    return result


# -----------------------
# Error helpers
# -----------------------

def _api_error(e: Exception):
    """Map core exceptions to JSON responses; anything unexpected is a 500 with a requestId."""
    if isinstance(e, SubmissionError):
        return jsonify({'success': False, 'error': str(e), 'errors': e.errors}), 400
    if isinstance(e, QueryValidationError):
        return jsonify({'success': False, 'error': 'Parâmetros inválidos', 'details': e.details}), 400
    if isinstance(e, UploadError):
        return jsonify({'success': False, 'error': e.code, 'details': e.details}), e.status
    if isinstance(e, FileNotFoundError):
        return jsonify({'success': False, 'error': str(e)}), 404
    if isinstance(e, (ValueError, FileExistsError)):
        return jsonify({'success': False, 'error': str(e)}), 400
    request_id = uuid.uuid4().hex
    app.logger.exception(f"[fleetcheck] Unhandled error on {request.method} {request.path} (requestId={request_id})")
    return jsonify({'success': False, 'error': 'Erro interno', 'requestId': request_id}), 500


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValueError('JSON inválido')
    return payload


def _read_image_from_request(req, max_bytes: int = 10 * 1024 * 1024):
    """Return (png_bytes, filename) from multipart field 'image' ('file' is accepted too)."""
    f = req.files.get('image') or req.files.get('file')
    if not f or not getattr(f, 'filename', None):
        raise UploadError('IMGBB_INVALID_IMAGE', 400)
    filename = (req.form.get('filename') or '').strip() or f.filename
    return _reencode_image(f, max_bytes=max_bytes), filename


def _reencode_image(f, max_bytes: int = 10 * 1024 * 1024) -> bytes:
    # Size guard
    f.stream.seek(0, io.SEEK_END)
    size = f.stream.tell()
    f.stream.seek(0)
    if size > max_bytes:
        raise ValueError("Image too large (max 10MB).")
    # Basic type guard
    ct = (getattr(f, 'mimetype', None) or '').lower()
    if ct and not ct.startswith('image/'):
        raise ValueError("Unsupported file type; expected an image.")
    # Strip EXIF and re-encode to PNG
    try:
        img = Image.open(f.stream)
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        out = io.BytesIO()
        img.save(out, format='PNG')
        return out.getvalue()
    except OSError as e:
        raise ValueError(f"Failed to read image: {e}")


# -----------------------
# Pages
# -----------------------

@app.route('/')
def index():
    """TAG entry for operators plus the variable alerts flagged for the home page."""
    tag = (request.args.get('tag') or '').strip()
    if tag:
        return redirect(url_for('checklist_form', tag=tag))
    try:
        datarepo_path = get_datarepo_path()
        alerts = load_variable_alerts(datarepo_path)
        return render_template('index.html', alerts=alerts.get('items', []))
    except Exception as e:
        return render_template('error.html', error=str(e))


def _checklist_payload_from_form(form, files, template: dict):
    """Translate the HTML checklist form into the submission payload.

    Returns (payload, photos) where photos maps question id to the re-encoded
    (png_bytes, filename) attachments. Nothing is uploaded here; until
    _upload_form_photos runs, each answer's photoUrls holds the attachment names.
    """
    answers = {}
    recurrence = {}
    photos = {}
    for q in template.get('questions') or []:
        qid = q['id']
        answer = {
            'response': form.get(f'answer_{qid}'),
            'observation': form.get(f'observation_{qid}'),
            'variableValue': form.get(f'variable_{qid}'),
        }
        attached = [(_reencode_image(fs), fs.filename) for fs in files.getlist(f'photo_{qid}') if fs and fs.filename]
        if attached:
            photos[qid] = attached
            answer['photoUrls'] = [name for _, name in attached]
        answers[qid] = answer
        decision = form.get(f'recurrence_{qid}')
        if decision:
            recurrence[qid] = decision
    extras = []
    for title, description in zip(form.getlist('extra_title'), form.getlist('extra_description')):
        if title.strip():
            extras.append({'title': title, 'description': description})
    payload = {
        'templateId': form.get('templateId'),
        'matricula': form.get('matricula'),
        'km': form.get('km'),
        'horimetro': form.get('horimetro'),
        'driverNome': form.get('driverNome'),
        'driverMatricula': form.get('driverMatricula'),
        'mechanicMatricula': form.get('mechanicMatricula'),
        'mechanicNome': form.get('mechanicNome'),
        'answers': answers,
        'recurrence': recurrence,
        'extraNonConformities': extras,
    }
    return payload, photos


def _upload_form_photos(datarepo_path: Path, payload: dict, photos: dict) -> None:
    """Upload the attachments and replace the placeholder photoUrls with the real ones."""
    for qid, attached in photos.items():
        payload['answers'][qid]['photoUrls'] = [
            upload_image(datarepo_path, img_bytes, filename=filename)['url'] for img_bytes, filename in attached
        ]


def _submit_checklist_form(datarepo_path: Path, tag: str, payload: dict, photos: dict) -> dict:
    # Runs inside the repo txn: a rejected submission uploads nothing.
    check_submission(datarepo_path, tag, payload)
    _upload_form_photos(datarepo_path, payload, photos)
    return submit_checklist(datarepo_path, tag, payload)


@app.route('/checklist/<path:tag>', methods=['GET', 'POST'])
def checklist_form(tag):
    """Checklist form reached by scanning a machine's QR code."""
    try:
        datarepo_path = get_datarepo_path()
        template_id = request.values.get('templateId')
        ctx = load_checklist_context(datarepo_path, tag, template_id)
    except MachineNotFoundError as e:
        return render_template('error.html', error=str(e)), 404
    except Exception as e:
        return render_template('error.html', error=str(e))

    errors: List[str] = []
    if request.method == 'POST' and ctx['template'] is not None:
        try:
            payload, photos = _checklist_payload_from_form(request.form, request.files, ctx['template'])
            result = _run_repo_txn(
                datarepo_path, lambda: _submit_checklist_form(datarepo_path, tag, payload, photos)
            )
            app.logger.info(
                f"[fleetcheck] Checklist {result['response']['id']} stored for {ctx['machine']['id']} "
                f"({len(result['nonConformities'])} NC)"
            )
            return render_template('checklist/done.html', ctx=ctx, result=result)
        except SubmissionError as e:
            errors = e.errors
        except (ValueError, UploadError) as e:
            errors = [str(e)]
    return render_template(
        'checklist/form.html',
        ctx=ctx,
        errors=errors,
        form=request.form,
        actor_label=resolve_actor_label(ctx['machine']),
    )


@app.route('/machines')
def machines_list():
    try:
        datarepo_path = get_datarepo_path()
        machines = list_machines(datarepo_path)
        return render_template('machines.html', machines=machines, display_name=machine_display_name)
    except Exception as e:
        return render_template('error.html', error=str(e))


@app.route('/admin')
def admin_dashboard():
    """NC indicators and the last cached periodicity job."""
    try:
        datarepo_path = get_datarepo_path()
        records = list_all_nonconformities(datarepo_path)
        dashboard = compute_nc_dashboard(records)
        cached = get_cached_periodicity(datarepo_path)
        return render_template('admin/dashboard.html', dashboard=dashboard, periodicity=cached)
    except Exception as e:
        return render_template('error.html', error=str(e))


@app.route('/admin/non-conformities', methods=['GET', 'POST'])
def admin_nc_list():
    """NC table with filters; POST applies a status to the selected rows."""
    try:
        datarepo_path = get_datarepo_path()
    except Exception as e:
        return render_template('error.html', error=str(e))
    if request.method == 'POST':
        ids = request.form.getlist('ids')
        status = request.form.get('status') or ''
        try:
            result = _run_repo_txn(
                datarepo_path, lambda: bulk_update_status(datarepo_path, ids, status, actor=_request_actor())
            )
            flash(f"{len(result['updated'])} NC(s) atualizada(s).", 'success')
            for fail in result['failed']:
                flash(f"{fail['id']}: {fail['error']}", 'error')
        except ValueError as e:
            flash(str(e), 'error')
        return redirect(url_for('admin_nc_list', **request.args.to_dict(flat=True)))

    params = {k: v for k, v in request.args.to_dict(flat=True).items() if v.strip()}
    try:
        page = list_nonconformities(datarepo_path, params)
        error = None
    except QueryValidationError as e:
        page = {'data': [], 'page': 1, 'pageSize': 20, 'total': 0, 'hasMore': False}
        error = '; '.join(e.details.get('formErrors', []) + [
            f"{k}: {', '.join(v)}" for k, v in e.details.get('fieldErrors', {}).items()
        ])
    return render_template(
        'admin/nc_list.html',
        page=page,
        params=params,
        error=error,
        statuses=NC_STATUSES,
        severities=NC_SEVERITIES,
        machines=list_machines(datarepo_path),
    )


def _actions_from_form(form) -> list:
    """Rows of the actions table; 'action_effective' carries the indexes of checked rows."""
    columns = ('id', 'type', 'description', 'owner', 'startedAt', 'completedAt')
    values = {c: form.getlist(f'action_{c}') for c in columns}
    effective = set(form.getlist('action_effective'))
    actions = []
    for i, description in enumerate(values['description']):
        if not description.strip():
            continue
        row = {c: (values[c][i] if i < len(values[c]) else '') or None for c in columns}
        row['type'] = row['type'] or 'corretiva'
        row['effective'] = str(i) in effective
        actions.append(row)
    return actions


@app.route('/admin/non-conformities/<nc_id>', methods=['GET', 'POST'])
def admin_nc_detail(nc_id):
    try:
        datarepo_path = get_datarepo_path()
        if request.method == 'POST':
            payload = {
                'status': request.form.get('status') or None,
                'severity': request.form.get('severity') or None,
                'dueAt': request.form.get('dueAt') or None,
                'rootCause': request.form.get('rootCause', ''),
                'safetyRisk': request.form.get('safetyRisk') == 'on',
                'impactAvailability': request.form.get('impactAvailability') == 'on',
            }
            actions = _actions_from_form(request.form)
            if actions:
                payload['actions'] = actions
            try:
                result = _run_repo_txn(
                    datarepo_path,
                    lambda: patch_nonconformity(datarepo_path, nc_id, payload, actor=_request_actor()),
                )
                flash('NC atualizada.' if result['audits'] else 'Nenhuma alteração.', 'success')
            except ValueError as e:
                flash(str(e), 'error')
            return redirect(url_for('admin_nc_detail', nc_id=nc_id))
        detail = get_nonconformity(datarepo_path, nc_id)
        return render_template(
            'admin/nc_detail.html',
            nc=detail['data'],
            audits=detail['audits'],
            statuses=NC_STATUSES,
            severities=NC_SEVERITIES,
        )
    except FileNotFoundError as e:
        return render_template('error.html', error=str(e)), 404
    except Exception as e:
        return render_template('error.html', error=str(e))


@app.route('/admin/responses')
def admin_responses():
    """Latest responses and the NC answers still waiting for treatment."""
    try:
        datarepo_path = get_datarepo_path()
        machine_id = (request.args.get('machineId') or '').strip() or None
        template_id = (request.args.get('templateId') or '').strip() or None
        responses = list_responses(datarepo_path, machine_id=machine_id, template_id=template_id, limit=100)
        pending = list_pending_items(datarepo_path, machine_id=machine_id)
        machines = {m['id']: m for m in list_machines(datarepo_path)}
        templates = {t['id']: t for t in list_templates(datarepo_path)}
        return render_template(
            'admin/responses.html',
            responses=responses,
            pending=pending,
            machines=machines,
            templates=templates,
            machine_id=machine_id,
            template_id=template_id,
        )
    except Exception as e:
        return render_template('error.html', error=str(e))


@app.route('/admin/responses/<response_id>', methods=['GET', 'POST'])
def admin_response_detail(response_id):
    try:
        datarepo_path = get_datarepo_path()
        if request.method == 'POST':
            question_id = request.form.get('questionId') or ''
            try:
                _run_repo_txn(
                    datarepo_path,
                    lambda: save_treatment(
                        datarepo_path,
                        response_id,
                        question_id,
                        status=request.form.get('status') or 'open',
                        summary=request.form.get('summary'),
                        responsible=request.form.get('responsible'),
                        deadline=request.form.get('deadline') or None,
                    ),
                )
                flash('Tratativa salva.', 'success')
            except ValueError as e:
                flash(str(e), 'error')
            return redirect(url_for('admin_response_detail', response_id=response_id))
        response = get_response(datarepo_path, response_id)
        try:
            machine = get_machine(datarepo_path, response.get('machineId'))
        except (FileNotFoundError, ValueError):
            machine = None
        try:
            template = get_template(datarepo_path, response.get('templateId'))
        except (FileNotFoundError, ValueError):
            template = None
        questions = {q['id']: q for q in (template or {}).get('questions') or []}
        treatments = {t.get('questionId'): t for t in response.get('nonConformityTreatments') or []}
        return render_template(
            'admin/response_detail.html',
            response=response,
            machine=machine,
            template=template,
            header=resolve_header_data(template, machine, response),
            questions=questions,
            treatments=treatments,
            treatment_statuses=TREATMENT_STATUSES,
            photo_urls_of=photo_urls_of,
        )
    except FileNotFoundError as e:
        return render_template('error.html', error=str(e)), 404
    except Exception as e:
        return render_template('error.html', error=str(e))


@app.route('/admin/periodicity')
def admin_periodicity():
    try:
        datarepo_path = get_datarepo_path()
        params = {k: v for k, v in request.args.to_dict(flat=True).items() if v.strip()}
        result = load_periodicity_compliance(datarepo_path, parse_compliance_filters(params))
        return render_template(
            'admin/periodicity.html',
            result=result,
            params=params,
            machines=list_machines(datarepo_path),
            templates=list_templates(datarepo_path),
        )
    except Exception as e:
        return render_template('error.html', error=str(e))


@app.route('/admin/variables')
def admin_variables():
    try:
        datarepo_path = get_datarepo_path()
        return render_template(
            'admin/variables.html',
            periodicity=load_variable_periodicity(datarepo_path),
            alerts=load_variable_alerts(datarepo_path),
        )
    except Exception as e:
        return render_template('error.html', error=str(e))


def _machine_nc_records(datarepo_path: Path, machine_id: str) -> list:
    return [r for r in list_all_nonconformities(datarepo_path) if r['linkedAsset']['id'] == machine_id]


@app.route('/admin/machines/<machine_id>/reliability')
def admin_machine_reliability(machine_id):
    try:
        datarepo_path = get_datarepo_path()
        machine = get_machine(datarepo_path, machine_id)
        records = _machine_nc_records(datarepo_path, machine_id)
        return render_template(
            'admin/reliability.html',
            machine=machine,
            display_name=machine_display_name(machine),
            metrics=machine_reliability(records),
            records=records,
        )
    except FileNotFoundError as e:
        return render_template('error.html', error=str(e)), 404
    except Exception as e:
        return render_template('error.html', error=str(e))


@app.route('/uploads/<path:rel_path>')
def uploaded_file(rel_path):
    """Serve images stored by the local upload provider."""
    try:
        target = resolve_local_upload(get_datarepo_path(), rel_path)
    except FileNotFoundError:
        return render_template('404.html'), 404
    return send_file(target)


# -----------------------
# JSON API
# -----------------------

@app.route('/api/machines')
def api_machines_list():
    try:
        datarepo_path = get_datarepo_path()
        return jsonify({'success': True, 'machines': list_machines(datarepo_path)})
    except Exception as e:
        return _api_error(e)


@app.route('/api/machines/by-tag/<path:tag>')
def api_machine_by_tag(tag):
    try:
        machine = find_machine_by_tag(get_datarepo_path(), tag)
        if machine is None:
            raise MachineNotFoundError("Máquina não encontrada pelo QR ou TAG.")
        return jsonify({'success': True, 'machine': machine})
    except Exception as e:
        return _api_error(e)


@app.route('/api/machines/<machine_id>/qr')
def api_machine_qr(machine_id):
    """Sticker PNG (base64) whose QR opens the machine's checklist."""
    try:
        fields = [f for f in (request.args.get('fields') or '').split(',') if f.strip() in STICKER_FIELDS]
        res = generate_sticker_for_machine(get_datarepo_path(), machine_id, fields=fields)
        return jsonify({'success': True, 'sticker': res})
    except Exception as e:
        return _api_error(e)


@app.route('/api/machines/<machine_id>/reliability')
def api_machine_reliability(machine_id):
    try:
        datarepo_path = get_datarepo_path()
        get_machine(datarepo_path, machine_id)
        return jsonify({'success': True, 'data': machine_reliability(_machine_nc_records(datarepo_path, machine_id))})
    except Exception as e:
        return _api_error(e)


@app.route('/api/machines/<machine_id>/weekly-checklists', methods=['POST'])
def api_weekly_checklists(machine_id):
    """Store a week of responses typed in by an administrator."""
    try:
        datarepo_path = get_datarepo_path()
        payload = _json_body()
        stored = _run_repo_txn(datarepo_path, lambda: submit_weekly_checklists(datarepo_path, machine_id, payload))
        return jsonify({'success': True, 'responseIds': [r['id'] for r in stored]}), 201
    except Exception as e:
        return _api_error(e)


@app.route('/api/users/lookup')
def api_users_lookup():
    """Resolve a matricula typed on the checklist form."""
    try:
        matricula = (request.args.get('matricula') or '').strip()
        if not matricula:
            raise ValueError('Informe a matrícula.')
        user = find_user_by_matricula(get_datarepo_path(), matricula)
        if user is None:
            raise FileNotFoundError('Matrícula não cadastrada ou permitida.')
        return jsonify({'success': True, 'user': {k: user.get(k) for k in ('id', 'matricula', 'nome', 'role')}})
    except Exception as e:
        return _api_error(e)


@app.route('/api/checklists/<path:tag>')
def api_checklist_context(tag):
    try:
        ctx = load_checklist_context(get_datarepo_path(), tag, request.args.get('templateId'))
        return jsonify({'success': True, 'context': ctx})
    except Exception as e:
        return _api_error(e)


@app.route('/api/checklist-responses', methods=['POST'])
def api_checklist_submit():
    """Submit a checklist as JSON: {tag, templateId, matricula, answers, recurrence, ...}."""
    try:
        datarepo_path = get_datarepo_path()
        payload = _json_body()
        tag = str(payload.get('tag') or '').strip()
        if not tag:
            raise ValueError('Informe a TAG da máquina.')
        result = _run_repo_txn(datarepo_path, lambda: submit_checklist(datarepo_path, tag, payload))
        app.logger.info(f"[fleetcheck] Checklist {result['response']['id']} stored via API")
        return jsonify({
            'success': True,
            'id': result['response']['id'],
            'response': result['response'],
            'nonConformityIds': [nc['id'] for nc in result['nonConformities']],
        }), 201
    except Exception as e:
        return _api_error(e)


@app.route('/api/checklist-responses/<response_id>')
def api_checklist_response(response_id):
    try:
        return jsonify({'success': True, 'response': get_response(get_datarepo_path(), response_id)})
    except Exception as e:
        return _api_error(e)


@app.route('/api/checklist-responses/<response_id>/pdf')
def api_checklist_response_pdf(response_id):
    try:
        res = build_response_pdf(get_datarepo_path(), response_id)
        return send_file(
            io.BytesIO(res['pdf']), as_attachment=True, download_name=res['filename'], mimetype='application/pdf'
        )
    except Exception as e:
        return _api_error(e)


@app.route('/api/checklist-responses/<response_id>/treatments', methods=['POST'])
def api_checklist_treatment(response_id):
    try:
        datarepo_path = get_datarepo_path()
        payload = _json_body()
        treatment, _ = _run_repo_txn(
            datarepo_path,
            lambda: save_treatment(
                datarepo_path,
                response_id,
                str(payload.get('questionId') or ''),
                status=str(payload.get('status') or ''),
                summary=payload.get('summary'),
                responsible=payload.get('responsible'),
                deadline=payload.get('deadline'),
            ),
        )
        return jsonify({'success': True, 'treatment': treatment})
    except Exception as e:
        return _api_error(e)


@app.route('/api/treatments')
def api_pending_treatments():
    try:
        items = list_pending_items(
            get_datarepo_path(),
            machine_id=(request.args.get('machineId') or '').strip() or None,
            status=(request.args.get('status') or 'pending').strip(),
        )
        return jsonify({'success': True, 'items': items})
    except Exception as e:
        return _api_error(e)


@app.route('/api/nc')
def api_nc_list():
    try:
        result = list_nonconformities(get_datarepo_path(), request.args.to_dict(flat=True))
        return jsonify(result)
    except Exception as e:
        return _api_error(e)


@app.route('/api/nc/<nc_id>', methods=['GET', 'PATCH'])
def api_nc_item(nc_id):
    try:
        datarepo_path = get_datarepo_path()
        if request.method == 'GET':
            return jsonify(get_nonconformity(datarepo_path, nc_id))
        payload = _json_body()
        result = _run_repo_txn(
            datarepo_path, lambda: patch_nonconformity(datarepo_path, nc_id, payload, actor=_request_actor(payload))
        )
        return jsonify(result)
    except Exception as e:
        return _api_error(e)


@app.route('/api/nc/bulk', methods=['POST'])
def api_nc_bulk():
    """Apply one status to many NCs: {ids: [...], status}."""
    try:
        datarepo_path = get_datarepo_path()
        payload = _json_body()
        result = _run_repo_txn(
            datarepo_path,
            lambda: bulk_update_status(
                datarepo_path, payload.get('ids'), str(payload.get('status') or ''), actor=_request_actor(payload)
            ),
        )
        return jsonify({'success': not result['failed'], **result})
    except Exception as e:
        return _api_error(e)


@app.route('/api/kpi/nc')
def api_kpi_nc():
    try:
        records = list_all_nonconformities(get_datarepo_path())
        return jsonify(compute_nc_dashboard(records))
    except Exception as e:
        return _api_error(e)


@app.route('/api/kpi/periodicity-compliance')
def api_kpi_periodicity():
    try:
        filters = parse_compliance_filters(request.args.to_dict(flat=True))
        return jsonify(load_periodicity_compliance(get_datarepo_path(), filters))
    except Exception as e:
        return _api_error(e)


@app.route('/api/kpi/variable-periodicity')
def api_kpi_variable_periodicity():
    try:
        return jsonify(load_variable_periodicity(get_datarepo_path()))
    except Exception as e:
        return _api_error(e)


@app.route('/api/kpi/variable-alerts')
def api_kpi_variable_alerts():
    try:
        return jsonify(load_variable_alerts(get_datarepo_path()))
    except Exception as e:
        return _api_error(e)


@app.route('/api/templates/<template_id>/periodicity', methods=['PATCH'])
def api_template_periodicity(template_id):
    try:
        datarepo_path = get_datarepo_path()
        payload = request.get_json(silent=True)
        periodicity = _run_repo_txn(
            datarepo_path, lambda: set_template_periodicity(datarepo_path, template_id, payload)
        )
        return jsonify({'success': True, 'periodicity': periodicity})
    except Exception as e:
        return _api_error(e)


@app.route('/api/jobs/check-periodicity')
def api_job_periodicity():
    """Recompute template compliance and refresh the cache (meant for an external cron)."""
    try:
        datarepo_path = get_datarepo_path()
        result = _run_repo_txn(datarepo_path, lambda: run_periodicity_job(datarepo_path))
        app.logger.info(
            f"[fleetcheck] Periodicity job: {result['summary']['nonCompliant']} of "
            f"{result['summary']['totalTracked']} out of window"
        )
        return jsonify(result)
    except Exception as e:
        return _api_error(e)


@app.route('/api/imgbb/upload', methods=['POST'])
def api_image_upload():
    """Upload one image (multipart field 'image') with the configured provider."""
    try:
        datarepo_path = get_datarepo_path()
        img_bytes, filename = _read_image_from_request(request)
        result = _run_repo_txn(
            datarepo_path,
            lambda: upload_image(datarepo_path, img_bytes, filename=filename, name=request.form.get('name')),
        )
        return jsonify({'success': True, **result})
    except Exception as e:
        return _api_error(e)


# -----------------------
# Stickers
# -----------------------

@app.route('/stickers', methods=['GET', 'POST'])
def stickers_index():
    if request.method == 'POST':
        ref = (request.form.get('ref') or '').strip()
        if ref:
            return redirect(url_for('stickers_batch', refs=ref))
    return redirect(url_for('stickers_batch'))


@app.route('/stickers/batch', methods=['GET', 'POST'])
def stickers_batch():
    """Batch generate a PDF with one sticker per page for several machines (TAG or id)."""
    if request.method == 'POST':
        src = request.form
    else:
        src = request.args
    size_text = (src.get('size_in') or '2x1').strip()
    dpi_text = (src.get('dpi') or '300').strip()
    text_size_text = (src.get('text_size') or '24').strip()
    fields_raw = (src.get('fields') or '').strip()
    refs_text = (src.get('refs') or '').strip()

    def _render(error=None):
        return render_template(
            'stickers/batch.html',
            error=error,
            size_text=size_text,
            dpi_text=dpi_text,
            text_size_text=text_size_text,
            fields_text=fields_raw,
            refs_text=refs_text,
            available_fields=STICKER_FIELDS,
        )

    if request.method == 'GET':
        return _render()

    refs = [r.strip() for chunk in refs_text.splitlines() for r in chunk.split(',') if r.strip()]
    if not refs:
        return _render('Informe ao menos uma TAG ou ID de máquina.')
    fields = [f.strip() for f in fields_raw.split(',') if f.strip()]
    unknown = [f for f in fields if f not in STICKER_FIELDS]
    if unknown:
        return _render(f"Campos desconhecidos: {', '.join(unknown)}")
    try:
        w_in, h_in, dpi, tsize = parse_sticker_size(size_text, dpi_text, text_size_text)
        pdf = build_batch_pdf(
            get_datarepo_path(), refs, fields=fields, size_in=(w_in, h_in), dpi=dpi, text_size=tsize
        )
    except (ValueError, FileNotFoundError) as e:
        return _render(str(e))
    except Exception as e:
        app.logger.exception('sticker batch failed')
        return _render(f'Falha ao gerar o PDF: {e}')
    filename = f"stickers_batch_{len(refs)}_labels.pdf"
    return send_file(io.BytesIO(pdf), as_attachment=True, download_name=filename, mimetype='application/pdf')


@app.errorhandler(404)
def not_found(error):
    if request.path.startswith('/api/'):
        return jsonify({'success': False, 'error': 'Não encontrado'}), 404
    return render_template('404.html'), 404


@app.errorhandler(500)
def internal_error(error):
    request_id = uuid.uuid4().hex
    app.logger.error(f"[fleetcheck] Internal server error (requestId={request_id})")
    if request.path.startswith('/api/'):
        return jsonify({'success': False, 'error': 'Erro interno', 'requestId': request_id}), 500
    return render_template('error.html', error='Erro interno do servidor', request_id=request_id), 500


if __name__ == '__main__':
    # Determine port (env PORT or --port flag), default 8080
    port = int(os.environ.get('PORT', '8080'))
    if '--port' in sys.argv:
        idx = sys.argv.index('--port')
        if idx + 1 < len(sys.argv):
            port = int(sys.argv[idx + 1])

    print("🚜 Starting fleetcheck Web UI...")
    print(f"📍 Access the interface at: http://localhost:{port}")
    print("=" * 50)

    debug_mode = os.environ.get('FLASK_ENV') == 'development' or '--debug' in sys.argv

    try:
        app.run(
            debug=debug_mode,
            host='0.0.0.0',
            port=port,
            use_reloader=debug_mode
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down fleetcheck Web UI...")
