from typing import Optional
import httpx
import structlog

from services.config import settings

logger = structlog.get_logger()


class SyncDispatcher:
    """Hands a created sync run to the internal run endpoint."""

    def __init__(self, base_url: Optional[str] = None, internal_api_key: Optional[str] = None, timeout: float = 5.0):
        self.base_url = (base_url or settings.runtime_base_url).rstrip("/")
        self.internal_api_key = internal_api_key or settings.internal_api_key
        self.timeout = timeout

    async def dispatch(self, tenant_id: str, connection_id: str, run_id: str) -> Optional[str]:
        """Returns None when accepted, otherwise the error text."""
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.base_url}/api/semantic-sync/run",
                    json={"tenantId": tenant_id, "connectionId": connection_id, "runId": run_id},
                    headers={"X-Internal-Api-Key": self.internal_api_key},
                    timeout=self.timeout,
                )
                response.raise_for_status()
            logger.info("Sync run dispatched", run_id=run_id, connection_id=connection_id)
            return None
        except httpx.HTTPError as e:
            logger.error("Failed to dispatch sync run", run_id=run_id, error=str(e))
            return str(e) or type(e).__name__
