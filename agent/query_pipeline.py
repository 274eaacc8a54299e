import time
from typing import Any, Dict, Optional

import structlog

from agent.retrieval import RetrievalRanker
from agent.sql_generator import SQLGenerator
from services.admission import AdmissionController
from services.audit_service import AuditService
from services.data_sources import decrypt_connection_config
from services.errors import CatalogNotReady, SafetyViolation
from sql_tools.sql_executor import SQLExecutor
from sql_tools.sql_guard import enforce_read_only

logger = structlog.get_logger()


class QueryPipeline:
    """
    Answers a natural-language question against one connection:

        admission -> table artifacts -> rank -> generate -> guard -> execute

    Each execution attempt and each safety rejection is written to the
    audit log.
    """

    def __init__(
        self,
        store,
        ranker: RetrievalRanker,
        generator: SQLGenerator,
        executor: SQLExecutor,
        admission: Optional[AdmissionController] = None,
        audit: Optional[AuditService] = None,
        config_loader=decrypt_connection_config,
    ):
        self.store = store
        self.ranker = ranker
        self.generator = generator
        self.executor = executor
        self.admission = admission or AdmissionController(store)
        self.audit = audit or AuditService(store)
        self.config_loader = config_loader

    async def ask(
        self,
        tenant_id: str,
        user_id: Optional[str],
        connection_id: str,
        question: str,
        max_rows: Optional[int] = None,
    ) -> Dict[str, Any]:
        log = logger.bind(tenant_id=tenant_id, connection_id=connection_id)
        start_time = time.time()

        await self.admission.check(tenant_id)
        connection = await self.store.require_connection(tenant_id, connection_id)

        tables = await self.store.list_artifacts(tenant_id, connection_id, "table")
        if not tables:
            raise CatalogNotReady(
                "No semantic catalog found. Run a semantic sync first.",
                context={"connection_id": connection_id},
            )

        ranking = await self.ranker.rank(tenant_id, connection_id, question, tables)
        ranked = ranking["tables"] or tables[: self.ranker.max_tables]

        generated = await self.generator.generate(question, ranked)

        try:
            sql = enforce_read_only(generated["sql"])
        except SafetyViolation as e:
            log.warning("Generated SQL rejected", reason=e.message, **e.context)
            await self.audit.record(
                tenant_id, connection_id, user_id, question, generated["sql"],
                status="error", row_count=0, duration_ms=0, error=e.message,
            )
            raise

        async def on_attempt(attempt: int, status: str, row_count: int, duration_ms: int, error: Optional[str]):
            await self.audit.record(
                tenant_id, connection_id, user_id, question, sql,
                status=status, row_count=row_count, duration_ms=duration_ms, error=error,
            )

        config = self.config_loader(connection)
        result = await self.executor.execute(config, sql, max_rows=max_rows, on_attempt=on_attempt)

        log.info(
            "Question answered",
            strategy=ranking["strategy"],
            tables=[t.artifactKey for t in ranked],
            row_count=result["rowCount"],
            total_ms=int((time.time() - start_time) * 1000),
        )
        return {
            "sql": result["sql"],
            "rationale": generated["rationale"],
            "chart": generated["chart"],
            "followUpQuestions": generated["followUpQuestions"],
            "rows": result["rows"],
            "rowCount": result["rowCount"],
            "columns": result["columns"],
            "executionMs": result["executionMs"],
        }
