from __future__ import annotations

from datetime import timedelta
from typing import Dict, Optional

from .store import now_iso, parse_iso


# -------------------------------
# Telemetry snapshot (deterministic stub)
#   No real telematics source is wired in. The snapshot is derived from a
#   hash of "<assetId>-<atIso>" so the same NC always gets the same numbers.
# -------------------------------

def _pseudo_random(seed: str) -> int:
    h = 0
    for ch in seed:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
        if h >= 0x80000000:
            h -= 0x100000000
    return abs(h)


def fetch_telemetry_snapshot(asset_id: str, at_iso: str) -> Optional[Dict]:
    """Return {hours, odometerKm, fuelUsedL, idleTimeH, faultCodes, windowStart, windowEnd}.

    Returns None when at_iso is not a parseable timestamp.
    """
    at = parse_iso(at_iso)
    if at is None:
        return None
    r = _pseudo_random(f"{asset_id}-{at_iso}")
    if r % 5 == 0:
        fault_codes = ["E123", "P2047"]
    elif r % 7 == 0:
        fault_codes = ["C880"]
    else:
        fault_codes = []
    return {
        "hours": round((r % 8000) / 10, 1),
        "odometerKm": round((r % 500000) / 10, 1),
        "fuelUsedL": round((r % 9000) / 100, 1),
        "idleTimeH": round(((r / 3) % 2000) / 10, 1),
        "faultCodes": fault_codes,
        "windowStart": now_iso(at - timedelta(hours=24)),
        "windowEnd": now_iso(at + timedelta(hours=6)),
    }


def sanitize_telemetry(raw) -> Optional[Dict]:
    """Keep only the known telemetry keys with the right types; None if nothing survives."""
    if not isinstance(raw, dict):
        return None
    out: Dict = {}
    for key in ("hours", "odometerKm", "fuelUsedL", "idleTimeH"):
        v = raw.get(key)
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            out[key] = v
    codes = raw.get("faultCodes")
    if isinstance(codes, list):
        out["faultCodes"] = [c for c in codes if isinstance(c, str)]
    for key in ("windowStart", "windowEnd"):
        v = raw.get(key)
        if isinstance(v, str) and v:
            out[key] = v
    return out or None
