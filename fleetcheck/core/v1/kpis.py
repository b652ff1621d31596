from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from .store import parse_iso

# -------------------------------
# NC indicators
#   Every function takes records already normalized by
#   nonconformities.map_nc_document and rounds to one decimal.
# -------------------------------

NO_ROOT_CAUSE = "Sem causa definida"
NO_SYSTEM = "Nao classificado"
UNCLASSIFIED_SEVERITY = "sem_classificacao"


def _first_corrective(actions: Optional[List[dict]]) -> Optional[dict]:
    return next((a for a in actions or [] if a.get("type") == "corretiva"), None)


def _completed_corrective(actions: Optional[List[dict]]) -> Optional[dict]:
    return next((a for a in actions or [] if a.get("type") == "corretiva" and a.get("completedAt")), None)


def hours_between(start, end) -> Optional[float]:
    s, e = parse_iso(start), parse_iso(end)
    if s is None or e is None or e < s:
        return None
    return (e - s).total_seconds() / 3600.0


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def _avg(values: List[float]) -> float:
    return round(sum(values) / len(values), 1) if values else 0.0


def calc_on_time_percentage(records: Iterable[dict]) -> float:
    """Share of resolved NCs with a due date whose corrective action was completed by then."""
    closed = [r for r in records if r.get("status") == "resolvida" and r.get("dueAt")]
    on_time = 0
    for r in closed:
        action = _completed_corrective(r.get("actions"))
        due = parse_iso(r.get("dueAt"))
        done = parse_iso((action or {}).get("completedAt"))
        if due is not None and done is not None and done <= due:
            on_time += 1
    return _pct(on_time, len(closed))


def calc_recurrence_rate(records: Iterable[dict]) -> float:
    records = list(records)
    return _pct(sum(1 for r in records if r.get("recurrenceOfId")), len(records))


def calc_avg_containment_hours(records: Iterable[dict]) -> float:
    durations = []
    for r in records:
        d = hours_between(r.get("createdAt"), (_first_corrective(r.get("actions")) or {}).get("startedAt"))
        if d is not None:
            durations.append(d)
    return _avg(durations)


def calc_avg_resolution_hours(records: Iterable[dict]) -> float:
    durations = []
    for r in records:
        d = hours_between(r.get("createdAt"), (_completed_corrective(r.get("actions")) or {}).get("completedAt"))
        if d is not None:
            durations.append(d)
    return _avg(durations)


def format_period(dt: datetime, granularity: str = "day") -> str:
    """'YYYY-MM-DD' for days; 'YYYY-Www' for weeks counted from Jan 1 with Sunday as first weekday."""
    if granularity == "week":
        jan1 = datetime(dt.year, 1, 1, tzinfo=timezone.utc)
        past_days = (dt - jan1).days
        jan1_weekday = (jan1.weekday() + 1) % 7
        week = -(-(past_days + jan1_weekday + 1) // 7)
        return f"{dt.year}-W{week:02d}"
    return dt.strftime("%Y-%m-%d")


def group_by_day_week(records: Iterable[dict], granularity: str = "day") -> List[dict]:
    """Opened/closed counts per period, sorted by period."""
    opened: Dict[str, int] = {}
    closed: Dict[str, int] = {}
    for r in records:
        created = parse_iso(r.get("createdAt"))
        if created is not None:
            p = format_period(created, granularity)
            opened[p] = opened.get(p, 0) + 1
        done = parse_iso((_completed_corrective(r.get("actions")) or {}).get("completedAt"))
        if done is not None:
            p = format_period(done, granularity)
            closed[p] = closed.get(p, 0) + 1
    periods = sorted(set(opened) | set(closed))
    return [{"period": p, "opened": opened.get(p, 0), "closed": closed.get(p, 0)} for p in periods]


def count_opened_by_severity(records: Iterable[dict]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for r in records:
        key = r.get("severity") or UNCLASSIFIED_SEVERITY
        out[key] = out.get(key, 0) + 1
    return out


def group_by_root_cause(records: Iterable[dict]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for r in records:
        key = (r.get("rootCause") or "").strip() or NO_ROOT_CAUSE
        out[key] = out.get(key, 0) + 1
    return out


def group_by_system(records: Iterable[dict]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for r in records:
        key = r.get("systemCategory") or NO_SYSTEM
        out[key] = out.get(key, 0) + 1
    return out


def severity_by_system(records: Iterable[dict]) -> List[dict]:
    buckets: Dict[str, Dict[str, int]] = {}
    for r in records:
        key = r.get("systemCategory") or "Não classificado"
        bucket = buckets.setdefault(key, {"alta": 0, "media": 0, "baixa": 0})
        sev = r.get("severity") if r.get("severity") in bucket else "media"
        bucket[sev] += 1
    return [{"system": k, **v} for k, v in buckets.items()]


def _closed_in_month(records: Iterable[dict], reference: datetime) -> List[dict]:
    month_start = reference.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if month_start.month == 12:
        next_month = month_start.replace(year=month_start.year + 1, month=1)
    else:
        next_month = month_start.replace(month=month_start.month + 1)
    out = []
    for r in records:
        if r.get("status") != "resolvida":
            continue
        done = parse_iso((_completed_corrective(r.get("actions")) or {}).get("completedAt"))
        if done is not None and month_start <= done < next_month:
            out.append(r)
    return out


def compute_nc_dashboard(records: List[dict], now: Optional[datetime] = None) -> dict:
    """Aggregate the NC dashboard from the most recent records."""
    now = now or datetime.now(timezone.utc)
    open_records = [r for r in records if r.get("status") != "resolvida"]
    threshold = now - timedelta(days=30)
    recent = [r for r in records if (parse_iso(r.get("createdAt")) or threshold - timedelta(seconds=1)) >= threshold]
    pareto = sorted(
        group_by_root_cause([r for r in records if r.get("rootCause")]).items(), key=lambda kv: kv[1], reverse=True
    )[:5]
    return {
        "openTotal": len(open_records),
        "openBySeverity": count_opened_by_severity(open_records),
        "onTimePercentage": calc_on_time_percentage(_closed_in_month(records, now)),
        "recurrence30d": calc_recurrence_rate(recent),
        "avgContainmentHours": calc_avg_containment_hours(records),
        "avgResolutionHours": calc_avg_resolution_hours(records),
        "series": {
            "daily": group_by_day_week(records, "day"),
            "weekly": group_by_day_week(records, "week"),
        },
        "rootCausePareto": [{"rootCause": k, "value": v} for k, v in pareto],
        "systemBreakdown": [{"system": k, "value": v} for k, v in group_by_system(records).items()],
        "severityBySystem": severity_by_system(records),
    }


def _telemetry_span(records: List[dict], key: str) -> Optional[float]:
    values = sorted(
        (r.get("telemetryRef") or {}).get(key)
        for r in records
        if isinstance((r.get("telemetryRef") or {}).get(key), (int, float))
    )
    if len(values) < 2:
        return None
    span = values[-1] - values[0]
    return span or None


def machine_reliability(records: List[dict]) -> dict:
    """Reliability indicators of one asset from its NCs.

    MTBF is the telemetry hour span over closed NCs, MTTR the average
    resolution time; values that cannot be computed are None.
    """
    total = len(records)
    open_nc = sum(1 for r in records if r.get("status") != "resolvida")
    closed_nc = total - open_nc
    avg_containment = calc_avg_containment_hours(records)
    avg_resolution = calc_avg_resolution_hours(records)
    hours_span = _telemetry_span(records, "hours")
    km_span = _telemetry_span(records, "odometerKm")

    mtbf = hours_span / closed_nc if hours_span and closed_nc > 0 else None
    mttr = avg_resolution if closed_nc > 0 else None
    availability = mtbf / (mtbf + mttr) if mtbf and mttr else None

    def _r(v):
        return round(v, 1) if v is not None else None

    return {
        "totalNc": total,
        "openNc": open_nc,
        "closedNc": closed_nc,
        "avgContainment": avg_containment,
        "avgResolution": avg_resolution,
        "mtbf": _r(mtbf),
        "mttr": _r(mttr),
        "availability": _r(availability * 100) if availability is not None else None,
        "ncPer100h": _r(total / hours_span * 100) if hours_span else None,
        "ncPer1000km": _r(total / km_span * 1000) if km_span else None,
    }
