import sys
import os
import argparse
import pathlib
import json
import yaml

from fleetcheck import __version__
from fleetcheck.core.v1.config import (
    get_datarepo_path,
    CONFIG_FILENAME,
)
from fleetcheck.core.v1 import repo as repo_ops
from fleetcheck.core.v1.machines import (
    list_machines,
    get_machine,
    find_machine_by_tag,
    create_machine,
    update_machine,
    set_machine_checklists,
    delete_machine,
    machine_display_name,
)
from fleetcheck.core.v1.templates import (
    list_templates,
    get_template,
    create_template,
    update_template,
    delete_template,
    set_template_periodicity,
)
from fleetcheck.core.v1.users import list_users, create_user, update_user, delete_user
from fleetcheck.core.v1.nonconformities import (
    STATUSES as NC_STATUSES,
    QueryValidationError,
    bulk_update_status,
    get_nonconformity,
    list_all_nonconformities,
    list_nonconformities,
    patch_nonconformity,
)
from fleetcheck.core.v1.kpis import compute_nc_dashboard
from fleetcheck.core.v1.periodicity import (
    load_periodicity_compliance,
    load_variable_alerts,
    load_variable_periodicity,
    parse_compliance_filters,
    run_periodicity_job,
)
from fleetcheck.core.v1.stickers import STICKER_FIELDS, build_batch_pdf, parse_sticker_size
from fleetcheck.core.v1.validate import validate_repo


class FCArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that prints full help on error instead of short usage."""
    def error(self, message):
        self.print_help()
        sys.stderr.write(f"\nError: {message}\n")
        raise SystemExit(2)


def main(argv=None):
    # Root parser and global options (git-like)
    env_format = os.getenv("FC_FORMAT", "human").lower()
    if env_format not in ("human", "json", "yaml"):
        env_format = "human"
    parser = FCArgumentParser(prog="fc", description="fleetcheck CLI")
    parser.add_argument("-R", "--repo", dest="repo", default=os.getenv("FC_REPO"), help="Override datarepo path")
    parser.add_argument(
        "-F", "--format", dest="format", choices=["human", "json", "yaml"], default=env_format,
        help="Output format (default from FC_FORMAT or 'human')"
    )
    parser.add_argument("--version", action="version", version=f"fleetcheck {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=False, parser_class=FCArgumentParser)

    # init
    init_parser = subparsers.add_parser("init", help="Initialize a new fleet datarepo at PATH")
    init_parser.add_argument("path", help="Target directory for the new datarepo")
    init_parser.add_argument("--remote-url", dest="remote_url", default=None, help="Git repository URL to clone (optional)")
    init_parser.add_argument("--base-url", dest="base_url", default=None, help="Public URL encoded in machine QR codes (optional)")
    init_parser.add_argument("--no-default", dest="no_default", action="store_true", help="Do not set as default datarepo")

    # machines
    machines_parser = subparsers.add_parser("machines", help="Machine and vehicle registry")
    mach_sub = machines_parser.add_subparsers(dest="mach_cmd", required=False, parser_class=FCArgumentParser)
    m_add = mach_sub.add_parser("add", help="Register a machine")
    m_add.add_argument("pairs", nargs="+", help="key=value fields (modelo, tag, placa, setor, combustivel, fleetType)")
    m_add.add_argument("--id", dest="machine_id", default=None, help="Explicit document id (optional)")
    mach_sub.add_parser("ls", aliases=["list"], help="List machines")
    m_show = mach_sub.add_parser("show", help="Show a machine by id or TAG")
    m_show.add_argument("ref", help="Machine id or TAG")
    m_set = mach_sub.add_parser("set", help="Update machine fields")
    m_set.add_argument("machine_id", help="Machine id")
    m_set.add_argument("pairs", nargs="+", help="key=value fields to update")
    m_assign = mach_sub.add_parser("assign", help="Replace the checklist templates assigned to a machine")
    m_assign.add_argument("machine_id", help="Machine id")
    m_assign.add_argument("template_ids", nargs="*", help="Template ids (none clears the list)")
    m_rm = mach_sub.add_parser("rm", aliases=["delete"], help="Delete a machine")
    m_rm.add_argument("machine_id", help="Machine id")

    # templates
    templates_parser = subparsers.add_parser("templates", help="Checklist templates")
    tpl_sub = templates_parser.add_subparsers(dest="tpl_cmd", required=False, parser_class=FCArgumentParser)
    t_ls = tpl_sub.add_parser("ls", aliases=["list"], help="List templates")
    t_ls.add_argument("--active", action="store_true", help="Only active templates")
    t_show = tpl_sub.add_parser("show", help="Show a template")
    t_show.add_argument("template_id", help="Template id")
    t_add = tpl_sub.add_parser("add", help="Create a template from a YAML or JSON file")
    t_add.add_argument("file", help="Template file (title, type, questions, header, actor). Use '-' for stdin")
    t_add.add_argument("--id", dest="template_id", default=None, help="Explicit document id (optional)")
    t_set = tpl_sub.add_parser("set", help="Update a template from a YAML or JSON file with the fields to change")
    t_set.add_argument("template_id", help="Template id")
    t_set.add_argument("file", help="File with the fields to update. Use '-' for stdin")
    t_rm = tpl_sub.add_parser("rm", aliases=["delete"], help="Delete a template")
    t_rm.add_argument("template_id", help="Template id")
    t_per = tpl_sub.add_parser("periodicity", help="Set the submission periodicity of a template")
    t_per.add_argument("template_id", help="Template id")
    act = t_per.add_mutually_exclusive_group(required=True)
    act.add_argument("--active", dest="active", action="store_true", help="Track periodicity")
    act.add_argument("--inactive", dest="active", action="store_false", help="Stop tracking periodicity")
    t_per.add_argument("--quantity", type=float, default=None, help="Number of units per window")
    t_per.add_argument("--unit", choices=["day", "week", "month"], default=None, help="Window unit")
    t_per.add_argument("--anchor", default=None, help="Window anchor (last_submission)")

    # users
    users_parser = subparsers.add_parser("users", help="Operators, drivers, mechanics and admins")
    usr_sub = users_parser.add_subparsers(dest="usr_cmd", required=False, parser_class=FCArgumentParser)
    u_add = usr_sub.add_parser("add", help="Register a user")
    u_add.add_argument("pairs", nargs="+", help="key=value fields (matricula, nome, role, setor)")
    usr_sub.add_parser("ls", aliases=["list"], help="List users")
    u_set = usr_sub.add_parser("set", help="Update user fields")
    u_set.add_argument("user_id", help="User id")
    u_set.add_argument("pairs", nargs="+", help="key=value fields to update")
    u_rm = usr_sub.add_parser("rm", aliases=["delete"], help="Delete a user")
    u_rm.add_argument("user_id", help="User id")

    # nc
    nc_parser = subparsers.add_parser("nc", help="Non-conformities")
    nc_sub = nc_parser.add_subparsers(dest="nc_cmd", required=False, parser_class=FCArgumentParser)
    n_ls = nc_sub.add_parser("ls", aliases=["list"], help="List non-conformities (newest first)")
    n_ls.add_argument("--status", default=None)
    n_ls.add_argument("--severity", default=None)
    n_ls.add_argument("--asset", dest="assetId", default=None, help="Machine id")
    n_ls.add_argument("--template", dest="templateId", default=None)
    n_ls.add_argument("--operator", dest="operatorMatricula", default=None)
    n_ls.add_argument("--search", dest="q", default=None)
    n_ls.add_argument("--from", dest="from_", default=None, help="Start date (ISO)")
    n_ls.add_argument("--to", dest="to", default=None, help="End date (ISO; a plain date covers the whole day)")
    n_ls.add_argument("--page", type=int, default=1)
    n_ls.add_argument("--page-size", dest="pageSize", type=int, default=20, choices=[10, 20, 50, 100])
    n_show = nc_sub.add_parser("show", help="Show a non-conformity with its audit trail")
    n_show.add_argument("nc_id")
    n_set = nc_sub.add_parser(
        "set",
        help="Update a non-conformity",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  fc nc set <id> status=em_execucao severity=alta\n"
            "  fc nc set <id> rootCause='Filtro saturado' safetyRisk=true\n\n"
            "Notes:\n"
            "  - Closing (status=resolvida) requires a completed corrective action."
        ),
    )
    n_set.add_argument("nc_id")
    n_set.add_argument("pairs", nargs="+", help="key=value fields (status, severity, dueAt, rootCause, safetyRisk, impactAvailability)")
    n_bulk = nc_sub.add_parser("bulk", help="Apply a status to many non-conformities")
    n_bulk.add_argument("--status", required=True, choices=list(NC_STATUSES))
    n_bulk.add_argument("ids", nargs="+")

    # kpi
    kpi_parser = subparsers.add_parser("kpi", help="Indicators")
    kpi_sub = kpi_parser.add_subparsers(dest="kpi_cmd", required=False, parser_class=FCArgumentParser)
    kpi_sub.add_parser("nc", help="Non-conformity dashboard")
    k_per = kpi_sub.add_parser("periodicity", help="Template periodicity compliance")
    k_per.add_argument("--machine", dest="machineId", default=None)
    k_per.add_argument("--template", dest="templateId", default=None)
    k_per.add_argument("--from", dest="from_", default=None)
    k_per.add_argument("--to", dest="to", default=None)
    kpi_sub.add_parser("variables", help="Variable periodicity compliance")
    kpi_sub.add_parser("alerts", help="Variable alerts of the last 30 days")

    # jobs
    jobs_parser = subparsers.add_parser("jobs", help="Batch jobs (run from cron)")
    jobs_sub = jobs_parser.add_subparsers(dest="jobs_cmd", required=False, parser_class=FCArgumentParser)
    jobs_sub.add_parser("periodicity", help="Recompute and cache template periodicity compliance")

    # stickers
    stickers_parser = subparsers.add_parser("stickers", help="QR stickers for machines")
    st_sub = stickers_parser.add_subparsers(dest="st_cmd", required=False, parser_class=FCArgumentParser)
    st_batch = st_sub.add_parser("batch", help="Generate a multi-page PDF of stickers (one per page)")
    st_batch.add_argument(
        "--refs",
        dest="refs",
        default=None,
        help="Comma or newline separated TAGs or machine ids. Use '-' to read from stdin",
    )
    st_batch.add_argument(
        "--file",
        dest="file",
        default=None,
        help="Path to a file containing TAGs or ids (one per line or comma-separated)",
    )
    st_batch.add_argument("--all", dest="all", action="store_true", help="One sticker per registered machine")
    st_batch.add_argument(
        "--fields",
        dest="fields",
        default=None,
        help=f"Comma-separated extra fields to print ({', '.join(STICKER_FIELDS)})",
    )
    st_batch.add_argument("--size", dest="size", default="2x1", help="Sticker size in inches, WIDTHxHEIGHT (default 2x1)")
    st_batch.add_argument("--dpi", dest="dpi", default="300", help="Dots per inch for rendering (default 300)")
    st_batch.add_argument("--text-size", dest="text_size", default="24", help="Base text size in pixels. Default 24")
    st_batch.add_argument("-o", "--out", dest="out", default="stickers.pdf", help="Output PDF filename (default: stickers.pdf)")

    # validate
    val_parser = subparsers.add_parser("validate", help="Check datarepo integrity")
    val_parser.add_argument("--strict", action="store_true", help="Exit non-zero on warnings too")

    # web
    web_parser = subparsers.add_parser("web", help="Start the web UI")
    web_parser.add_argument("--port", type=int, default=8080, help="Port to run the web server on (default: 8080)")
    web_parser.add_argument("--host", default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    web_parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    args = parser.parse_args(argv)

    # Helper: resolve repo path honoring -R/--repo
    def _repo_path() -> pathlib.Path:
        if getattr(args, "repo", None):
            return pathlib.Path(args.repo).expanduser().resolve()
        try:
            return get_datarepo_path()
        except RuntimeError as e:
            print(str(e))
            sys.exit(1)

    def _fmt() -> str:
        return args.format

    def _fail(e) -> None:
        print(f"[fleetcheck] Error: {e}")
        sys.exit(1)

    def _print_or_dump(obj, human_line: str | None = None):
        fmt = _fmt()
        if fmt == "json":
            print(json.dumps(obj, indent=2, ensure_ascii=False))
        elif fmt == "yaml":
            print(yaml.safe_dump(obj, sort_keys=False, allow_unicode=True))
        elif human_line is not None:
            print(human_line)
        else:
            print(yaml.safe_dump(obj, sort_keys=False, allow_unicode=True))

    def _print_table(rows, fields, empty: str):
        if not rows:
            print(empty)
            return
        header = " | ".join(f"{f:<15}" for f in fields)
        print(header)
        print("-" * len(header))
        for r in rows:
            print(" | ".join(f"{str(r.get(f) if r.get(f) is not None else ''):<15}" for f in fields))

    def _parse_pairs(pairs_list):
        updates = {}
        for pair in pairs_list or []:
            if "=" not in pair:
                print(f"[fleetcheck] Error: invalid key=value pair '{pair}'")
                sys.exit(1)
            k, v = pair.split("=", 1)
            updates[k.strip()] = v.strip()
        return updates

    def _load_fields_file(path: str) -> dict:
        try:
            text = sys.stdin.read() if path == "-" else pathlib.Path(path).read_text(encoding="utf-8")
            data = yaml.safe_load(text)
        except (OSError, yaml.YAMLError) as e:
            _fail(f"cannot read '{path}': {e}")
        if not isinstance(data, dict):
            _fail(f"'{path}' must contain a mapping of template fields")
        return data

    def _as_bool(val: str) -> bool:
        return str(val).strip().lower() in ("1", "true", "yes", "on", "sim")

    def cmd_init(args):
        target_path = pathlib.Path(args.path)
        if target_path.exists() and os.listdir(str(target_path)):
            _fail(f"Target directory '{target_path}' already exists and is not empty.")
        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
            repo_path = repo_ops.init_datarepo(
                target_path, args.remote_url, base_url=args.base_url, set_default=not args.no_default
            )
        except Exception as e:
            _fail(e)
        _print_or_dump(
            {"repo_path": str(repo_path), "remote": args.remote_url or None},
            f"[fleetcheck] Initialized fleet datarepo at '{repo_path}'"
            + ("" if args.no_default else f"\n[fleetcheck] Default datarepo set in '{CONFIG_FILENAME}'"),
        )

    # Machines
    def cmd_machines_add(args):
        datarepo_path = _repo_path()
        fields = _parse_pairs(args.pairs)
        try:
            m = create_machine(datarepo_path, fields, args.machine_id)
        except Exception as e:
            _fail(e)
        _print_or_dump(m, f"[fleetcheck] Created machine '{m['id']}' (TAG {m['tag']})")

    def cmd_machines_list(args):
        machines = list_machines(_repo_path())
        if _fmt() != "human":
            _print_or_dump(machines)
            return
        _print_table(machines, ["id", "tag", "modelo", "placa", "setor", "fleetType"], "[fleetcheck] No machines found.")

    def cmd_machines_show(args):
        datarepo_path = _repo_path()
        try:
            m = find_machine_by_tag(datarepo_path, args.ref) or get_machine(datarepo_path, args.ref)
        except Exception as e:
            _fail(e)
        _print_or_dump(m)

    def cmd_machines_set(args):
        datarepo_path = _repo_path()
        updates = _parse_pairs(args.pairs)
        try:
            m = update_machine(datarepo_path, args.machine_id, updates)
        except Exception as e:
            _fail(e)
        _print_or_dump(m, f"[fleetcheck] Updated machine '{args.machine_id}'")

    def cmd_machines_assign(args):
        datarepo_path = _repo_path()
        try:
            for tid in args.template_ids:
                get_template(datarepo_path, tid)
            m = set_machine_checklists(datarepo_path, args.machine_id, args.template_ids)
        except Exception as e:
            _fail(e)
        _print_or_dump(
            m, f"[fleetcheck] {machine_display_name(m)} now uses: {', '.join(m.get('checklists') or []) or '(none)'}"
        )

    def cmd_machines_rm(args):
        try:
            delete_machine(_repo_path(), args.machine_id)
        except Exception as e:
            _fail(e)
        _print_or_dump({"deleted": args.machine_id}, f"[fleetcheck] Deleted machine '{args.machine_id}'")

    # Templates
    def cmd_templates_list(args):
        templates = list_templates(_repo_path(), active_only=args.active)
        if _fmt() != "human":
            _print_or_dump(templates)
            return
        rows = [
            {
                "id": t["id"],
                "title": t.get("title"),
                "type": t.get("type"),
                "version": t.get("version"),
                "active": t.get("isActive"),
                "questions": len(t.get("questions") or []),
            }
            for t in templates
        ]
        _print_table(rows, ["id", "title", "type", "version", "active", "questions"], "[fleetcheck] No templates found.")

    def cmd_templates_show(args):
        try:
            t = get_template(_repo_path(), args.template_id)
        except Exception as e:
            _fail(e)
        _print_or_dump(t)

    def cmd_templates_add(args):
        datarepo_path = _repo_path()
        fields = _load_fields_file(args.file)
        try:
            t = create_template(datarepo_path, fields, args.template_id)
        except Exception as e:
            _fail(e)
        _print_or_dump(
            t, f"[fleetcheck] Created template '{t['id']}' ({t['title']}, {len(t['questions'])} question(s))"
        )

    def cmd_templates_set(args):
        datarepo_path = _repo_path()
        fields = _load_fields_file(args.file)
        try:
            t = update_template(datarepo_path, args.template_id, fields)
        except Exception as e:
            _fail(e)
        _print_or_dump(t, f"[fleetcheck] Updated template '{args.template_id}'")

    def cmd_templates_rm(args):
        datarepo_path = _repo_path()
        try:
            get_template(datarepo_path, args.template_id)
            delete_template(datarepo_path, args.template_id)
        except Exception as e:
            _fail(e)
        users_of = [m["id"] for m in list_machines(datarepo_path) if args.template_id in (m.get("checklists") or [])]
        line = f"[fleetcheck] Deleted template '{args.template_id}'"
        if users_of:
            line += f"\n[fleetcheck] Warning: still assigned to {', '.join(users_of)}"
        _print_or_dump({"deleted": args.template_id, "assignedTo": users_of}, line)

    def cmd_templates_periodicity(args):
        datarepo_path = _repo_path()
        payload = {"active": args.active}
        if args.quantity is not None:
            payload["quantity"] = args.quantity
        if args.unit is not None:
            payload["unit"] = args.unit
        if args.anchor is not None:
            payload["anchor"] = args.anchor
        try:
            p = set_template_periodicity(datarepo_path, args.template_id, payload)
        except Exception as e:
            _fail(e)
        if p.get("active"):
            line = f"[fleetcheck] Template '{args.template_id}' expected every {p['quantity']} {p['unit']}(s) ({p['windowDays']} days)"
        else:
            line = f"[fleetcheck] Periodicity disabled for template '{args.template_id}'"
        _print_or_dump(p, line)

    # Users
    def cmd_users_add(args):
        try:
            u = create_user(_repo_path(), _parse_pairs(args.pairs))
        except Exception as e:
            _fail(e)
        _print_or_dump(u, f"[fleetcheck] Registered {u['nome']} (matricula {u['matricula']})")

    def cmd_users_list(args):
        users = list_users(_repo_path())
        if _fmt() != "human":
            _print_or_dump(users)
            return
        _print_table(users, ["id", "matricula", "nome", "role", "setor"], "[fleetcheck] No users found.")

    def cmd_users_set(args):
        try:
            u = update_user(_repo_path(), args.user_id, _parse_pairs(args.pairs))
        except Exception as e:
            _fail(e)
        _print_or_dump(u, f"[fleetcheck] Updated user '{args.user_id}'")

    def cmd_users_rm(args):
        try:
            delete_user(_repo_path(), args.user_id)
        except Exception as e:
            _fail(e)
        _print_or_dump({"deleted": args.user_id}, f"[fleetcheck] Deleted user '{args.user_id}'")

    # Non-conformities
    def cmd_nc_list(args):
        params = {
            k: v for k, v in {
                "status": args.status,
                "severity": args.severity,
                "assetId": args.assetId,
                "templateId": args.templateId,
                "operatorMatricula": args.operatorMatricula,
                "q": args.q,
                "from": args.from_,
                "to": args.to,
                "page": args.page,
                "pageSize": args.pageSize,
            }.items() if v is not None
        }
        try:
            result = list_nonconformities(_repo_path(), params)
        except QueryValidationError as e:
            _fail(json.dumps(e.details, ensure_ascii=False))
        if _fmt() != "human":
            _print_or_dump(result)
            return
        rows = [
            {
                "id": nc["id"],
                "createdAt": nc["createdAt"][:16],
                "tag": nc["linkedAsset"]["tag"],
                "severity": nc["severity"],
                "status": nc["status"],
                "title": nc["title"],
            }
            for nc in result["data"]
        ]
        _print_table(rows, ["id", "createdAt", "tag", "severity", "status", "title"], "[fleetcheck] No non-conformities found.")
        print(f"\nPage {result['page']} · {result['total']} total" + (" · more available" if result["hasMore"] else ""))

    def cmd_nc_show(args):
        try:
            detail = get_nonconformity(_repo_path(), args.nc_id)
        except Exception as e:
            _fail(e)
        _print_or_dump(detail)

    def cmd_nc_set(args):
        payload = _parse_pairs(args.pairs)
        for flag in ("safetyRisk", "impactAvailability"):
            if flag in payload:
                payload[flag] = _as_bool(payload[flag])
        try:
            result = patch_nonconformity(_repo_path(), args.nc_id, payload)
        except Exception as e:
            _fail(e)
        if result["audits"]:
            changed = [k for k in result["audits"][0]["diff"] if k != "updatedAt"]
            line = f"[fleetcheck] Updated {args.nc_id}: {', '.join(changed)}"
        else:
            line = f"[fleetcheck] No changes for {args.nc_id}"
        _print_or_dump(result, line)

    def cmd_nc_bulk(args):
        try:
            result = bulk_update_status(_repo_path(), args.ids, args.status)
        except Exception as e:
            _fail(e)
        lines = [f"[fleetcheck] Updated {len(result['updated'])} non-conformity(ies) to '{args.status}'"]
        lines += [f"[fleetcheck] Warning: {f['id']}: {f['error']}" for f in result["failed"]]
        _print_or_dump(result, "\n".join(lines))
        if result["failed"]:
            sys.exit(1)

    # Indicators
    def cmd_kpi_nc(args):
        dash = compute_nc_dashboard(list_all_nonconformities(_repo_path()))
        line = (
            f"Open: {dash['openTotal']} {dash['openBySeverity']}\n"
            f"On time (month): {dash['onTimePercentage']}%\n"
            f"Recurrence (30d): {dash['recurrence30d']}%\n"
            f"Avg containment: {dash['avgContainmentHours']} h · Avg resolution: {dash['avgResolutionHours']} h"
        )
        _print_or_dump(dash, line)

    def _print_compliance(result, name_key: str):
        if _fmt() != "human":
            _print_or_dump(result)
            return
        s = result["summary"]
        print(f"[fleetcheck] {s['compliant']} compliant · {s['nonCompliant']} non-compliant · {s['totalTracked']} tracked")
        _print_table(result["items"], [name_key, "machineName", "windowDays", "lastSubmissionAt", "status"], "")

    def cmd_kpi_periodicity(args):
        try:
            filters = parse_compliance_filters({
                "from": args.from_, "to": args.to, "machineId": args.machineId, "templateId": args.templateId,
            })
            result = load_periodicity_compliance(_repo_path(), filters)
        except Exception as e:
            _fail(e)
        _print_compliance(result, "templateName")

    def cmd_kpi_variables(args):
        _print_compliance(load_variable_periodicity(_repo_path()), "variableName")

    def cmd_kpi_alerts(args):
        result = load_variable_alerts(_repo_path())
        if _fmt() != "human":
            _print_or_dump(result)
            return
        if not result["items"]:
            print("[fleetcheck] No alerts in the last 30 days.")
        for a in result["items"]:
            print(f" - {a['responseDate'][:16]} {a['machineName'] or a['machineId']} :: {a['variableName']} :: {a['alertRule'].get('message') or ''}")

    def cmd_jobs_periodicity(args):
        try:
            result = run_periodicity_job(_repo_path())
        except Exception as e:
            _fail(e)
        s = result["summary"]
        _print_or_dump(result, f"[fleetcheck] Cached periodicity: {s['nonCompliant']} of {s['totalTracked']} out of window")

    # Stickers
    def cmd_stickers_batch(args):
        datarepo_path = _repo_path()
        refs: list[str] = []
        sources = []
        if args.refs:
            sources.append(sys.stdin.read() if args.refs.strip() == "-" else args.refs)
        if args.file:
            try:
                with open(args.file, "r", encoding="utf-8") as fh:
                    sources.append(fh.read())
            except OSError as e:
                _fail(f"reading --file '{args.file}': {e}")
        for src in sources:
            for chunk in src.splitlines():
                refs.extend(p.strip() for p in chunk.split(",") if p.strip())
        if args.all:
            refs.extend(m.get("tag") or m["id"] for m in list_machines(datarepo_path))
        # Deduplicate while preserving order
        seen = set()
        refs = [r for r in refs if not (r in seen or seen.add(r))]
        if not refs:
            print("[fleetcheck] Error: No machines given. Use --refs, --file, --all or '-' for stdin.")
            sys.exit(2)
        fields = [s.strip() for s in (args.fields or "").split(",") if s.strip()]
        unknown = [f for f in fields if f not in STICKER_FIELDS]
        if unknown:
            _fail(f"unknown sticker fields: {', '.join(unknown)}")
        try:
            w_in, h_in, dpi, tsize = parse_sticker_size(args.size, args.dpi, args.text_size)
            pdf = build_batch_pdf(datarepo_path, refs, fields=fields, size_in=(w_in, h_in), dpi=dpi, text_size=tsize)
            with open(args.out, "wb") as fh:
                fh.write(pdf)
        except (ValueError, FileNotFoundError, OSError) as e:
            _fail(e)
        _print_or_dump(
            {
                "output": os.path.abspath(args.out),
                "count": len(refs),
                "page_size_in": {"width": w_in, "height": h_in},
                "dpi": dpi,
                "text_size": tsize,
            },
            f"[fleetcheck] Wrote {args.out} with {len(refs)} page(s)",
        )

    def cmd_validate(args):
        datarepo_path = _repo_path()
        result = validate_repo(datarepo_path)
        errors = int(result.get("errors", 0))
        warnings = int(result.get("warnings", 0))
        if _fmt() != "human":
            _print_or_dump(result)
        else:
            print(f"[fleetcheck] Validation results for {datarepo_path}")
            print(f"Errors: {errors}, Warnings: {warnings}")
            for it in result.get("issues", []):
                print(f" - [{it['severity'].upper()}] {it['code']} :: {it['path']} :: {it['message']}")
        if errors > 0 or (args.strict and warnings > 0):
            sys.exit(1)

    def cmd_web(args):
        # Add the project root to Python path for web imports
        project_root = pathlib.Path(__file__).parent.parent.parent
        sys.path.insert(0, str(project_root))
        try:
            from web.app import app
        except ImportError as e:
            missing = getattr(e, "name", "") or ""
            if missing == "flask":
                print("[fleetcheck] Error: Flask is not installed. Install with: pip install -e .")
            else:
                print(f"[fleetcheck] Import error starting web UI: {e}")
            sys.exit(1)
        print(f"[fleetcheck] Web UI at http://localhost:{args.port}")
        try:
            app.run(debug=args.debug, host=args.host, port=args.port, use_reloader=args.debug)
        except KeyboardInterrupt:
            print("\n[fleetcheck] Shutting down web UI...")
        except OSError as e:
            if "Address already in use" in str(e):
                print(f"[fleetcheck] Error: Port {args.port} is already in use. Try --port {args.port + 1}")
            else:
                print(f"[fleetcheck] Error starting web server: {e}")
            sys.exit(1)

    # Dispatch via table
    cmd = args.command
    sub_attr = {
        "machines": "mach_cmd",
        "templates": "tpl_cmd",
        "users": "usr_cmd",
        "nc": "nc_cmd",
        "kpi": "kpi_cmd",
        "jobs": "jobs_cmd",
        "stickers": "st_cmd",
    }.get(cmd)
    sub = getattr(args, sub_attr, None) if sub_attr else None
    if sub == "list":
        sub = "ls"
    elif sub == "delete":
        sub = "rm"

    DISPATCH = {
        ("init", None): cmd_init,
        ("web", None): cmd_web,
        ("validate", None): cmd_validate,
        ("machines", "add"): cmd_machines_add,
        ("machines", "ls"): cmd_machines_list,
        ("machines", "show"): cmd_machines_show,
        ("machines", "set"): cmd_machines_set,
        ("machines", "assign"): cmd_machines_assign,
        ("machines", "rm"): cmd_machines_rm,
        ("templates", "ls"): cmd_templates_list,
        ("templates", "show"): cmd_templates_show,
        ("templates", "add"): cmd_templates_add,
        ("templates", "set"): cmd_templates_set,
        ("templates", "rm"): cmd_templates_rm,
        ("templates", "periodicity"): cmd_templates_periodicity,
        ("users", "add"): cmd_users_add,
        ("users", "ls"): cmd_users_list,
        ("users", "set"): cmd_users_set,
        ("users", "rm"): cmd_users_rm,
        ("nc", "ls"): cmd_nc_list,
        ("nc", "show"): cmd_nc_show,
        ("nc", "set"): cmd_nc_set,
        ("nc", "bulk"): cmd_nc_bulk,
        ("kpi", "nc"): cmd_kpi_nc,
        ("kpi", "periodicity"): cmd_kpi_periodicity,
        ("kpi", "variables"): cmd_kpi_variables,
        ("kpi", "alerts"): cmd_kpi_alerts,
        ("jobs", "periodicity"): cmd_jobs_periodicity,
        ("stickers", "batch"): cmd_stickers_batch,
    }

    handler = DISPATCH.get((cmd, sub))
    if handler:
        handler(args)
    else:
        group = {
            "machines": machines_parser,
            "templates": templates_parser,
            "users": users_parser,
            "nc": nc_parser,
            "kpi": kpi_parser,
            "jobs": jobs_parser,
            "stickers": stickers_parser,
        }.get(cmd, parser)
        group.print_help()


if __name__ == "__main__":
    main()
