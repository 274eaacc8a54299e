import re
from typing import Any, Dict, List, Tuple
import openai
from sqlalchemy.exc import InterfaceError, OperationalError
import structlog

from services.config import settings
from services.errors import ConfigurationError
from services.vector_store import collection_name

logger = structlog.get_logger()

_WHITESPACE = re.compile(r"\s+")

# Service-level failures: splitting the batch cannot help
UNREACHABLE_ERRORS = (
    ConfigurationError,
    ConnectionError,
    OSError,
    openai.APIConnectionError,
    openai.AuthenticationError,
    InterfaceError,
    OperationalError,
)


class ServiceUnreachable(Exception):
    pass


def normalize_text(text: str, max_chars: int) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()[:max_chars]


def table_embedding_text(table: Dict[str, Any]) -> str:
    row_count = table.get("rowCount")
    columns = "; ".join(
        f"{c['name']} ({c.get('dataType')} {'nullable' if c.get('nullable') else 'not null'})"
        for c in table.get("columns", [])
    )
    text = (
        f"Table {table['key']}. Row count: {row_count if row_count is not None else 'unknown'}. "
        f"Columns: {columns}."
    )
    if table.get("description"):
        text += f" Description: {table['description']}"
    if table.get("businessQuestions"):
        text += f" Questions: {' '.join(table['businessQuestions'])}"
    return text


def column_embedding_text(table: Dict[str, Any], column: Dict[str, Any]) -> str:
    text = f"Column {column['name']} in table {table['key']}. Type: {column.get('dataType')}."
    samples = column.get("sampleValues") or []
    if samples:
        text += f" Sample values: {', '.join(str(v) for v in samples)}."
    return text


def build_embedding_items(tables: List[Dict[str, Any]], max_chars: int = None) -> List[Dict[str, Any]]:
    max_chars = max_chars or settings.embedding_text_max_chars
    items: List[Dict[str, Any]] = []
    for table in tables:
        items.append({
            "key": f"table:{table['key']}",
            "artifactKey": table["key"],
            "text": normalize_text(table_embedding_text(table), max_chars),
            "metadata": {
                "type": "table",
                "schema": table["schema"],
                "table": table["name"],
                "rowCount": table.get("rowCount"),
            },
        })
        for column in table.get("columns", []):
            items.append({
                "key": f"column:{table['key']}.{column['name']}",
                "artifactKey": f"{table['key']}.{column['name']}",
                "text": normalize_text(column_embedding_text(table, column), max_chars),
                "metadata": {
                    "type": "column",
                    "schema": table["schema"],
                    "table": table["name"],
                    "column": column["name"],
                    "dataType": column.get("dataType"),
                },
            })
    return items


class EmbeddingIndexer:
    """
    Embeds catalog text and upserts it into the tenant's vector collection.

    A failing batch is split in half and each half retried, down to single
    items; an item that still fails is skipped. Returns a mapping of
    artifact key -> vector key for everything that was stored.
    """

    def __init__(self, embedding_service, vector_store, batch_size: int = None):
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.batch_size = max(1, batch_size or settings.embedding_batch_size)

    @property
    def available(self) -> bool:
        return bool(
            self.embedding_service is not None
            and self.vector_store is not None
            and getattr(self.embedding_service, "available", True)
        )

    async def index(self, tenant_id: str, items: List[Dict[str, Any]]) -> Dict[str, str]:
        if not items:
            return {}
        if not self.available:
            logger.warning("Embedding services unavailable, skipping vector indexing", items=len(items))
            return {}

        collection = collection_name(tenant_id)
        stored: Dict[str, str] = {}
        skipped = 0
        try:
            for i in range(0, len(items), self.batch_size):
                batch_stored, batch_skipped = await self._index_batch(collection, items[i:i + self.batch_size])
                stored.update(batch_stored)
                skipped += batch_skipped
        except ServiceUnreachable as e:
            logger.warning("Vector indexing stopped, services unreachable", stored=len(stored), error=str(e))
            return stored

        logger.info(
            "Catalog embeddings indexed",
            collection=collection,
            stored=len(stored),
            skipped=skipped,
            total=len(items),
        )
        return stored

    async def _index_batch(self, collection: str, batch: List[Dict[str, Any]]) -> Tuple[Dict[str, str], int]:
        try:
            vectors = await self.embedding_service.generate_embeddings([item["text"] for item in batch])
            if len(vectors) != len(batch):
                raise ValueError(f"Expected {len(batch)} embeddings, got {len(vectors)}")
            keys = await self.vector_store.upsert(collection, [
                {"key": item["key"], "vector": vector, "text": item["text"], "metadata": item["metadata"]}
                for item, vector in zip(batch, vectors)
            ])
            return {item["artifactKey"]: key for item, key in zip(batch, keys)}, 0
        except UNREACHABLE_ERRORS as e:
            raise ServiceUnreachable(str(e)) from e
        except Exception as e:
            if len(batch) == 1:
                logger.warning("Skipping item that failed to embed", key=batch[0]["key"], error=str(e))
                return {}, 1
            logger.warning("Embedding batch failed, splitting", size=len(batch), error=str(e))

        middle = len(batch) // 2
        left, left_skipped = await self._index_batch(collection, batch[:middle])
        right, right_skipped = await self._index_batch(collection, batch[middle:])
        return {**left, **right}, left_skipped + right_skipped
