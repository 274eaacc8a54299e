"""
Admission control for ask requests.

Both limits are derived from query_audits at request time, so there is no
counter state to keep in sync:

- daily quota     all audits for the tenant in the last 24h
- error circuit   error audits in the last 10 minutes
"""
from typing import Any, Dict, Optional
import structlog

from db.models import now_ms as current_ms
from services.config import settings
from services.errors import QuotaExceeded, CircuitOpen

logger = structlog.get_logger()

DAY_MS = 24 * 60 * 60 * 1000
ERROR_WINDOW_MS = 10 * 60 * 1000


def _positive_int(value: Any) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


class AdmissionController:
    def __init__(self, store, daily_limit: int = None, error_window_limit: int = None):
        self.store = store
        self.daily_limit = daily_limit or settings.org_daily_query_limit
        self.error_window_limit = error_window_limit or settings.org_error_window_limit

    async def limits_for(self, tenant_id: str) -> Dict[str, int]:
        org = await self.store.get_org_settings(tenant_id)
        return {
            "rateLimitDaily": _positive_int(org.get("rateLimitDaily")) or self.daily_limit,
            "errorWindowLimit": _positive_int(org.get("errorWindowLimit")) or self.error_window_limit,
        }

    async def check(self, tenant_id: str, now_ms: int = None) -> Dict[str, int]:
        """Raise QuotaExceeded or CircuitOpen; otherwise return the current usage."""
        now = now_ms if now_ms is not None else current_ms()
        limits = await self.limits_for(tenant_id)

        daily = await self.store.count_audits(tenant_id, now - DAY_MS)
        if daily >= limits["rateLimitDaily"]:
            logger.warning("Daily query limit reached", tenant_id=tenant_id, count=daily, limit=limits["rateLimitDaily"])
            raise QuotaExceeded(
                "Daily query limit reached. Try again tomorrow or ask an admin to raise the limit.",
                context={"count": daily, "limit": limits["rateLimitDaily"]},
            )

        errors = await self.store.count_audits(tenant_id, now - ERROR_WINDOW_MS, status="error")
        if errors >= limits["errorWindowLimit"]:
            logger.warning("Error circuit open", tenant_id=tenant_id, errors=errors, limit=limits["errorWindowLimit"])
            raise CircuitOpen(
                "Temporary pause due to repeated errors. Please try again in a few minutes.",
                context={"errors": errors, "limit": limits["errorWindowLimit"]},
            )

        return {"daily": daily, "recentErrors": errors}
