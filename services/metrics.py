"""
Stakeholder KPIs computed from audits, connections and dashboards.

All windows are whole UTC days ending at the end of ``now``'s day. Records
are read by attribute, so ORM rows and plain namespaces both work.
"""
import math
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from db.models import now_ms as current_ms
from services.admission import AdmissionController

DAY_MS = 24 * 60 * 60 * 1000

TARGET_TTFI_MINUTES = 10
TARGET_ACCURACY = 0.8
TARGET_ADOPTION = 0.7
TARGET_P95_MS = 8000
ADOPTED_TILE_COUNT = 4


def clamp_days(days: Optional[int]) -> int:
    if not days:
        return 14
    return min(max(int(math.floor(days)), 7), 90)


def start_of_utc_day(ms: int) -> int:
    day = datetime.fromtimestamp(ms / 1000, tz=timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return int(day.timestamp() * 1000)


def iso_date(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def iso_timestamp(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_day_windows(days: int, end_ms: int) -> List[Dict[str, Any]]:
    start_ms = end_ms - days * DAY_MS
    windows = []
    for i in range(days):
        start = start_ms + i * DAY_MS
        windows.append({"date": iso_date(start), "start": start, "end": start + DAY_MS})
    return windows


def average(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


def percentile(values: Sequence[float], p: float) -> Optional[float]:
    if not values:
        return None
    ordered = sorted(values)
    idx = min(len(ordered) - 1, max(0, int(math.floor(p * (len(ordered) - 1)))))
    return ordered[idx]


def round_half_up(value: Optional[float], digits: int = 2) -> Optional[float]:
    if value is None:
        return None
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def last_value(trend: List[Dict[str, Any]]) -> Optional[float]:
    for point in reversed(trend):
        if point["value"] is not None:
            return point["value"]
    return None


def _in(ms: int, start: int, end: int) -> bool:
    return start <= ms < end


def compute_stakeholder_metrics(
    connections: Sequence[Any],
    audits: Sequence[Any],
    dashboards: Sequence[Any],
    tiles: Sequence[Any],
    days: Optional[int] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    days = clamp_days(days)
    now = now if now is not None else current_ms()
    today_end = start_of_utc_day(now) + DAY_MS
    windows = build_day_windows(days, today_end)
    window_start = windows[0]["start"]

    audits_in_range = [a for a in audits if _in(a.createdAt, window_start, today_end)]
    tiles_by_dashboard = Counter(str(t.dashboardId) for t in tiles)

    # Time to first insight: first successful audit per connection
    ttfi_records = []
    for conn in connections:
        successes = sorted(
            (a.createdAt for a in audits
             if a.connectionId == conn.id and a.status == "success" and a.createdAt >= conn.createdAt)
        )
        if not successes:
            continue
        minutes = (successes[0] - conn.createdAt) / 60000
        if minutes >= 0:
            ttfi_records.append((minutes, successes[0]))

    ttfi_trend = []
    accuracy_trend = []
    adoption_trend = []
    performance_trend = []
    trust_trend = []
    dashboards_in_range = [d for d in dashboards if _in(d.createdAt, window_start, today_end)]

    for win in windows:
        start, end = win["start"], win["end"]

        values = [m for m, at in ttfi_records if _in(at, start, end)]
        ttfi_trend.append({"date": win["date"], "value": round_half_up(average(values), 1), "sampleSize": len(values)})

        day_audits = [a for a in audits_in_range if _in(a.createdAt, start, end)]
        successes = [a for a in day_audits if a.status == "success"]
        rate = len(successes) / len(day_audits) if day_audits else None
        accuracy_trend.append({"date": win["date"], "value": round_half_up(rate, 4), "sampleSize": len(day_audits)})

        day_dashboards = [d for d in dashboards_in_range if _in(d.createdAt, start, end)]
        if day_dashboards:
            adopted = sum(1 for d in day_dashboards if tiles_by_dashboard[str(d.id)] >= ADOPTED_TILE_COUNT)
            adoption_trend.append({
                "date": win["date"],
                "value": round_half_up(adopted / len(day_dashboards), 4),
                "sampleSize": len(day_dashboards),
            })
        else:
            adoption_trend.append({"date": win["date"], "value": None, "sampleSize": 0})

        durations = [a.durationMs for a in successes if (a.durationMs or 0) > 0]
        performance_trend.append({
            "date": win["date"],
            "value": round_half_up(percentile(durations, 0.95), 0),
            "sampleSize": len(durations),
        })

        errors = sum(1 for a in day_audits if a.status == "error")
        trust_trend.append({"date": win["date"], "value": errors or None, "sampleSize": errors})

    return {
        "generatedAt": now,
        "range": {
            "days": days,
            "start": iso_timestamp(window_start),
            "end": iso_timestamp(today_end - 1),
        },
        "metrics": {
            "ttfi": {
                "currentMinutes": last_value(ttfi_trend),
                "targetMinutes": TARGET_TTFI_MINUTES,
                "trend": ttfi_trend,
                "sampleSize": len(ttfi_records),
            },
            "nlAccuracy": {
                "currentRate": last_value(accuracy_trend),
                "targetRate": TARGET_ACCURACY,
                "trend": accuracy_trend,
                "sampleSize": len(audits_in_range),
            },
            "dashboardAdoption": {
                "currentRate": last_value(adoption_trend),
                "targetRate": TARGET_ADOPTION,
                "trend": adoption_trend,
                "sampleSize": len(dashboards_in_range),
            },
            "performance": {
                "currentNlP95Ms": last_value(performance_trend),
                "targetNlP95Ms": TARGET_P95_MS,
                "trend": performance_trend,
                "sampleSize": sum(1 for a in audits_in_range if a.status == "success"),
            },
            "trustSafety": {
                "currentIncidents": last_value(trust_trend) or 0,
                "trend": trust_trend,
                "auditCoverage": 1 if audits_in_range else None,
                "sampleSize": len(audits_in_range),
            },
        },
    }


async def stakeholder_metrics(store, tenant_id: str, days: Optional[int] = None, now: Optional[int] = None) -> Dict[str, Any]:
    """Load the tenant's records from the state store and compute the KPIs."""
    days = clamp_days(days)
    now = now if now is not None else current_ms()
    # Connections created before the window can still record a first insight inside it
    connections = await store.list_connections(tenant_id)
    audits = await store.list_audits(tenant_id, 0)
    dashboards = await store.list_dashboards(tenant_id)
    tiles = await store.list_tiles(tenant_id)
    return compute_stakeholder_metrics(connections, audits, dashboards, tiles, days=days, now=now)


def compute_usage_series(audits: Sequence[Any], limit: int, days: Optional[int] = None, now: Optional[int] = None) -> Dict[str, Any]:
    """Per-day query totals and errors next to the daily limit."""
    days = clamp_days(days)
    now = now if now is not None else current_ms()
    windows = build_day_windows(days, start_of_utc_day(now) + DAY_MS)
    series = []
    for win in windows:
        day_audits = [a for a in audits if _in(a.createdAt, win["start"], win["end"])]
        series.append({
            "date": win["date"],
            "total": len(day_audits),
            "errors": sum(1 for a in day_audits if a.status == "error"),
            "limit": limit,
        })
    return {"days": days, "series": series, "limit": limit}


async def usage_series(store, tenant_id: str, days: Optional[int] = None, now: Optional[int] = None) -> Dict[str, Any]:
    days = clamp_days(days)
    now = now if now is not None else current_ms()
    since = start_of_utc_day(now) + DAY_MS - days * DAY_MS
    audits = await store.list_audits(tenant_id, since)
    limits = await AdmissionController(store).limits_for(tenant_id)
    return compute_usage_series(audits, limits["rateLimitDaily"], days=days, now=now)
