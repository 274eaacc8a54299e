import math
from typing import Dict, Optional
import structlog

from db.models import now_ms
from services.config import settings

logger = structlog.get_logger()

DAY_MS = 24 * 60 * 60 * 1000
MIN_RETENTION_DAYS = 30


def retention_days(older_than_days: Optional[float]) -> int:
    value = older_than_days if older_than_days is not None else settings.audit_retention_days
    return max(MIN_RETENTION_DAYS, int(math.floor(value)))


async def archive_audits(store, tenant_id: str, older_than_days: Optional[float] = None, now: int = None) -> Dict[str, int]:
    """Move audits older than the cutoff into audit_archives. Never below 30 days."""
    days = retention_days(older_than_days)
    cutoff = (now if now is not None else now_ms()) - days * DAY_MS
    archived = await store.archive_audits(tenant_id, cutoff)
    logger.info("Audit retention run", tenant_id=tenant_id, days=days, archived=archived)
    return {"archived": archived, "days": days}
