from typing import Any, Dict
import structlog

from services.cache_service import ResultCache, make_cache_key
from services.config import settings
from services.data_sources import decrypt_connection_config
from services.errors import NotFoundError

logger = structlog.get_logger()


class TileDataService:
    """Runs a saved tile's SQL through the injected result cache."""

    def __init__(self, store, executor, cache: ResultCache, max_rows: int = None, config_loader=decrypt_connection_config):
        self.store = store
        self.executor = executor
        self.cache = cache
        self.max_rows = max_rows or settings.tile_max_rows
        self.config_loader = config_loader

    async def fetch(self, tenant_id: str, tile_id: str) -> Dict[str, Any]:
        tile = await self.store.get_tile(tenant_id, tile_id)
        if tile is None:
            raise NotFoundError("Tile not found", context={"tile_id": tile_id})

        key = make_cache_key(tenant_id, tile.connectionId, sql=tile.sql, max_rows=self.max_rows)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug("Tile data served from cache", tile_id=tile_id)
            return {**cached["payload"], "cached": True, "cachedAt": cached["timestamp"]}

        connection = await self.store.require_connection(tenant_id, tile.connectionId)
        result = await self.executor.execute(self.config_loader(connection), tile.sql, max_rows=self.max_rows)
        payload: Dict[str, Any] = {
            "rows": result["rows"],
            "columns": result["columns"],
            "rowCount": result["rowCount"],
            "executionMs": result["executionMs"],
        }
        await self.cache.set(key, payload)
        logger.info("Tile data fetched", tile_id=tile_id, row_count=result["rowCount"])
        return {**payload, "cached": False}
