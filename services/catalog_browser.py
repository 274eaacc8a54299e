"""
Read-only views over a connection's semantic artifacts: listing, substring
search and a per-table detail with freshness.
"""
import json
from typing import Any, Dict, List, Optional, Sequence

from db.models import now_ms as current_ms
from services.errors import NotFoundError

STALE_AFTER_MS = 72 * 60 * 60 * 1000
SEARCH_LIMIT = 50


def artifact_view(artifact) -> Dict[str, Any]:
    return {
        "id": artifact.id,
        "type": artifact.artifactType,
        "key": artifact.artifactKey,
        "version": artifact.version,
        "payload": artifact.payload,
        "updatedAt": artifact.updatedAt,
    }


def search_artifacts(artifacts: Sequence[Any], query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
    needle = (query or "").strip().lower()
    if not needle:
        return []
    results = []
    for artifact in artifacts:
        haystack = f"{artifact.artifactKey} {json.dumps(artifact.payload or {}, default=str)}".lower()
        if needle in haystack:
            results.append(artifact_view(artifact))
            if len(results) >= limit:
                break
    return results


def last_sync_at(runs: Sequence[Any]) -> Optional[int]:
    if not runs:
        return None
    latest = runs[0]
    return latest.completedAt or latest.startedAt


def describe_table(artifacts: Sequence[Any], runs: Sequence[Any], key: str, now: Optional[int] = None) -> Dict[str, Any]:
    """
    Table payload, its column artifacts and foreign keys. ``runs`` is newest
    first; a table with no sync in the last 72 hours is reported stale.
    """
    lowered = key.lower()
    table = next(
        (a for a in artifacts if a.artifactType == "table" and a.artifactKey.lower() == lowered),
        None,
    )
    if table is None:
        raise NotFoundError("Table not found", context={"key": key})

    prefix = lowered + "."
    columns = [
        {"key": a.artifactKey, **(a.payload or {})}
        for a in artifacts
        if a.artifactType == "column" and a.artifactKey.lower().startswith(prefix)
    ]
    synced = last_sync_at(runs)
    now = now if now is not None else current_ms()
    return {
        "table": table.payload,
        "columns": columns,
        "foreignKeys": (table.payload or {}).get("foreignKeys") or [],
        "lastSyncAt": synced,
        "isStale": synced is None or now - synced > STALE_AFTER_MS,
    }
