import re
from typing import Any, Dict, List, Optional
import structlog
from sqlalchemy import select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from db.models import CatalogEmbedding, VectorBase, new_id, now_ms
from services.config import settings

logger = structlog.get_logger()


def collection_name(tenant_id: str) -> str:
    """Per-tenant collection identifier: ``tenant_`` + sanitized tenant id."""
    safe = re.sub(r"[^a-z0-9_]", "_", str(tenant_id).lower())
    return f"tenant_{safe}"[:120]


class VectorStore:
    """
    pgvector-backed index. One table, partitioned logically by collection.
    Keys are ``table:<schema.table>`` or ``column:<schema.table>.<column>``.
    """

    def __init__(self, url: str = None, engine: Optional[AsyncEngine] = None):
        url = url or settings.pgvector_url
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        self.url = url
        self._engine = engine
        self._schema_ready = False

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.url, pool_size=5, max_overflow=5, pool_pre_ping=True)
        return self._engine

    async def ensure_schema(self):
        if self._schema_ready:
            return
        async with self.engine.begin() as conn:
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(VectorBase.metadata.create_all)
        self._schema_ready = True
        logger.info("Vector index schema ready", table=CatalogEmbedding.__tablename__)

    async def upsert(self, collection: str, items: List[Dict[str, Any]]) -> List[str]:
        """Insert or replace vectors by key. Returns the stored keys."""
        if not items:
            return []
        await self.ensure_schema()

        rows = [
            {
                "id": new_id(),
                "collection": collection,
                "key": item["key"],
                "text": item.get("text", ""),
                "embedding": item["vector"],
                "metadata": item.get("metadata") or {},
                "updated_at": now_ms(),
            }
            for item in items
        ]
        stmt = pg_insert(CatalogEmbedding.__table__).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["collection", "key"],
            set_={
                "text": stmt.excluded["text"],
                "embedding": stmt.excluded["embedding"],
                "metadata": stmt.excluded["metadata"],
                "updated_at": stmt.excluded["updated_at"],
            },
        )
        async with self.engine.begin() as conn:
            await conn.execute(stmt)

        logger.info("Vectors upserted", collection=collection, count=len(rows))
        return [row["key"] for row in rows]

    async def search(self, collection: str, vector: List[float], top_k: int = None) -> List[Dict[str, Any]]:
        """Top-K nearest neighbours by cosine similarity (1 - cosine distance)."""
        await self.ensure_schema()
        distance = CatalogEmbedding.embedding.cosine_distance(vector)
        stmt = (
            select(CatalogEmbedding.key, CatalogEmbedding.meta, (1 - distance).label("score"))
            .where(CatalogEmbedding.collection == collection)
            .order_by(distance)
            .limit(top_k or settings.retrieval_top_k)
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return [
                {"id": row.key, "score": float(row.score), "metadata": row.meta or {}}
                for row in result
            ]

    async def close(self):
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None


vector_store = VectorStore()
