from typing import Any, Awaitable, Callable, Dict, Optional
import structlog

from agent.embedding_indexer import EmbeddingIndexer, build_embedding_items
from agent.summarizer import TableSummarizer
from db.models import now_ms
from services.config import settings
from sql_tools.column_sampler import ColumnSampler
from sql_tools.mssql import SqlConnectionConfig, open_session
from sql_tools.schema_introspector import SchemaIntrospector, table_key

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int], Awaitable[None]]


def progress_step(total: int) -> int:
    """Report roughly every 2% of tables."""
    return max(1, total // 50)


class SnapshotBuilder:
    """
    Introspect -> sample -> summarize -> index, as one logical phase.

    Introspection runs on a session with the normal statement timeout,
    sampling on a second session with the long sampling timeout.
    """

    def __init__(
        self,
        summarizer: TableSummarizer,
        indexer: Optional[EmbeddingIndexer],
        session_opener=open_session,
        sampler_factory=ColumnSampler,
        introspector_factory=SchemaIntrospector,
    ):
        self.summarizer = summarizer
        self.indexer = indexer
        self.session_opener = session_opener
        self.sampler_factory = sampler_factory
        self.introspector_factory = introspector_factory

    async def build(
        self,
        tenant_id: str,
        config: SqlConnectionConfig,
        selection: Optional[Dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        generated_at = now_ms()

        async with self.session_opener(config) as session:
            schema = await self.introspector_factory(session).introspect(selection)
        tables = schema["tables"]
        for table in tables:
            table["key"] = table_key(table["schema"], table["name"])

        total = len(tables)
        step = progress_step(total)
        if on_progress:
            await on_progress(0, total)

        async with self.session_opener(config, timeout=settings.semantic_sample_timeout_seconds) as session:
            sampler = self.sampler_factory(session)
            for index, table in enumerate(tables, start=1):
                samples = await sampler.sample_table(table)
                for column in table["columns"]:
                    column["sampleValues"] = samples.get(column["name"], [])
                if on_progress and (index % step == 0 or index == total):
                    await on_progress(index, total)

        summaries = await self.summarizer.summarize(tables)
        for table in tables:
            summary = summaries.get(table["key"], {})
            table["description"] = summary.get("description")
            table["businessQuestions"] = summary.get("businessQuestions") or []

        embedding_ids: Dict[str, str] = {}
        if self.indexer is not None:
            embedding_ids = await self.indexer.index(tenant_id, build_embedding_items(tables))
        for table in tables:
            table["embeddingId"] = embedding_ids.get(table["key"])
            for column in table["columns"]:
                column["embeddingId"] = embedding_ids.get(f"{table['key']}.{column['name']}")

        logger.info(
            "Semantic snapshot generated",
            tenant_id=tenant_id,
            tables=total,
            columns=sum(len(t["columns"]) for t in tables),
            embedded=len(embedding_ids),
            generated_at=generated_at,
        )
        return {"generatedAt": generated_at, "tables": tables}
