"""
Semantic sync orchestrator.

A run moves pending -> running -> completed | failed. Stages execute in a
fixed order and each one is persisted as a SyncStage row so the UI can
poll progress:

    get_connection, validate_config   (only recorded when they fail)
    generate_snapshot                 introspect + sample + summarize + index
    write_artifacts                   table and column artifacts
    write_catalog_v2                  optional enrichment, never fails the run
"""
import time
from typing import Any, Callable, Dict, List, Optional
import structlog

from agent.catalog_v2 import CatalogV2Writer
from agent.snapshot import SnapshotBuilder, progress_step
from services.cache_service import ResultCache, connection_cache_prefix
from services.config import settings
from services.data_sources import decrypt_connection_config, selection_for
from services.errors import ArtifactTooLarge

logger = structlog.get_logger()

STAGE_GET_CONNECTION = "get_connection"
STAGE_VALIDATE_CONFIG = "validate_config"
STAGE_GENERATE_SNAPSHOT = "generate_snapshot"
STAGE_WRITE_ARTIFACTS = "write_artifacts"
STAGE_WRITE_CATALOG_V2 = "write_catalog_v2"


def table_payload(table: Dict[str, Any], columns_max: int) -> Dict[str, Any]:
    return {
        "schema": table["schema"],
        "name": table["name"],
        "rowCount": table.get("rowCount"),
        "description": table.get("description"),
        "businessQuestions": table.get("businessQuestions") or [],
        "columns": [
            {"name": c["name"], "dataType": c.get("dataType"), "sampleValues": (c.get("sampleValues") or [])[:3]}
            for c in table.get("columns", [])[:columns_max]
        ],
        "foreignKeys": table.get("foreignKeys") or [],
    }


def slim_table_payload(table: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "schema": table["schema"],
        "name": table["name"],
        "rowCount": table.get("rowCount"),
        "description": table.get("description"),
    }


def column_payload(table: Dict[str, Any], column: Dict[str, Any], with_samples: bool = True) -> Dict[str, Any]:
    entry = {
        "name": column["name"],
        "dataType": column.get("dataType"),
        "nullable": column.get("nullable"),
        "maxLength": column.get("maxLength"),
        "precision": column.get("precision"),
        "scale": column.get("scale"),
        "isIdentity": column.get("isIdentity"),
    }
    if with_samples:
        entry["sampleValues"] = (column.get("sampleValues") or [])[:5]
    return {"schema": table["schema"], "table": table["name"], "column": entry}


class SyncOrchestrator:
    def __init__(
        self,
        store,
        snapshot_builder: SnapshotBuilder,
        result_cache: Optional[ResultCache] = None,
        catalog_v2: Optional[CatalogV2Writer] = None,
        config_loader: Callable = decrypt_connection_config,
        table_columns_max: int = None,
        catalog_v2_enabled: bool = None,
    ):
        self.store = store
        self.snapshot_builder = snapshot_builder
        self.result_cache = result_cache
        self.catalog_v2 = catalog_v2 or CatalogV2Writer(store)
        self.config_loader = config_loader
        self.table_columns_max = table_columns_max or settings.semantic_table_columns_max
        self.catalog_v2_enabled = settings.catalog_v2_enabled if catalog_v2_enabled is None else catalog_v2_enabled

    async def run(self, tenant_id: str, connection_id: str, run_id: str) -> Dict[str, Any]:
        log = logger.bind(tenant_id=tenant_id, connection_id=connection_id, run_id=run_id)
        started = time.monotonic()
        stage = STAGE_GET_CONNECTION

        try:
            await self.store.set_run_status(run_id, "running")
            connection = await self.store.require_connection(tenant_id, connection_id)

            active = await self.store.list_active_runs(tenant_id, connection_id)
            if len(active) > 1:
                log.warning("Another sync run is active for this connection", active_runs=len(active))

            stage = STAGE_VALIDATE_CONFIG
            config = self.config_loader(connection)

            stage = STAGE_GENERATE_SNAPSHOT
            snapshot = await self._generate_snapshot(tenant_id, run_id, config, selection_for(connection))

            stage = STAGE_WRITE_ARTIFACTS
            written = await self._write_artifacts(tenant_id, connection_id, run_id, snapshot)

            if self.catalog_v2_enabled:
                await self._write_catalog_v2(tenant_id, connection_id, run_id, snapshot, log)

            await self.store.set_run_status(run_id, "completed")
            await self.store.record_verification(tenant_id, connection_id)
            if self.result_cache is not None:
                await self.result_cache.invalidate(connection_cache_prefix(tenant_id, connection_id))

        except Exception as e:
            message = f"{stage}: {e}"
            log.error("Semantic sync failed", stage=stage, error=str(e), exc_info=True)
            await self._record_failure(tenant_id, connection_id, run_id, stage, message)
            return {"runId": run_id, "status": "failed", "error": message}

        duration_ms = int((time.monotonic() - started) * 1000)
        log.info("Semantic sync completed", duration_ms=duration_ms, **written)
        return {"runId": run_id, "status": "completed", "durationMs": duration_ms, **written}

    async def _generate_snapshot(self, tenant_id, run_id, config, selection) -> Dict[str, Any]:
        await self.store.upsert_stage(run_id, STAGE_GENERATE_SNAPSHOT, "running", {"totalTables": 0, "processedTables": 0})

        async def on_progress(processed: int, total: int):
            await self.store.upsert_stage(
                run_id,
                STAGE_GENERATE_SNAPSHOT,
                "running",
                {"totalTables": total, "processedTables": processed},
            )

        snapshot = await self.snapshot_builder.build(tenant_id, config, selection, on_progress)
        tables = snapshot["tables"]
        await self.store.upsert_stage(
            run_id,
            STAGE_GENERATE_SNAPSHOT,
            "completed",
            {
                "tables": len(tables),
                "columns": sum(len(t["columns"]) for t in tables),
                "totalTables": len(tables),
                "processedTables": len(tables),
            },
        )
        return snapshot

    async def _write_artifacts(self, tenant_id, connection_id, run_id, snapshot) -> Dict[str, int]:
        tables = snapshot["tables"]
        version = snapshot["generatedAt"]
        total_tables = len(tables)
        total_columns = sum(len(t["columns"]) for t in tables)
        step = progress_step(total_tables)
        processed_columns = 0

        def metrics(processed_tables: int) -> Dict[str, int]:
            return {
                "processedTables": processed_tables,
                "totalTables": total_tables,
                "processedColumns": processed_columns,
                "totalColumns": total_columns,
            }

        await self.store.upsert_stage(run_id, STAGE_WRITE_ARTIFACTS, "running", metrics(0))

        for index, table in enumerate(tables, start=1):
            try:
                await self.store.upsert_artifact(
                    tenant_id, connection_id, "table", table["key"],
                    table_payload(table, self.table_columns_max), version, table.get("embeddingId"),
                )
            except ArtifactTooLarge as e:
                logger.warning("Table artifact too large, writing slim payload", table=table["key"], **e.context)
                await self.store.upsert_artifact(
                    tenant_id, connection_id, "table", table["key"],
                    slim_table_payload(table), version, table.get("embeddingId"),
                )

            for column in table["columns"]:
                key = f"{table['key']}.{column['name']}"
                try:
                    await self.store.upsert_artifact(
                        tenant_id, connection_id, "column", key,
                        column_payload(table, column), version, column.get("embeddingId"),
                    )
                except ArtifactTooLarge:
                    logger.warning("Column artifact too large, dropping samples", column=key)
                    await self.store.upsert_artifact(
                        tenant_id, connection_id, "column", key,
                        column_payload(table, column, with_samples=False), version, column.get("embeddingId"),
                    )
                processed_columns += 1

            if index % step == 0 or index == total_tables:
                await self.store.upsert_stage(run_id, STAGE_WRITE_ARTIFACTS, "running", metrics(index))

        await self.store.upsert_stage(run_id, STAGE_WRITE_ARTIFACTS, "completed", metrics(total_tables))
        return {"tables": total_tables, "columns": total_columns}

    async def _write_catalog_v2(self, tenant_id, connection_id, run_id, snapshot, log):
        await self.store.upsert_stage(run_id, STAGE_WRITE_CATALOG_V2, "running")
        try:
            counts = await self.catalog_v2.write(tenant_id, connection_id, snapshot["tables"])
        except Exception as e:
            log.warning("Catalog v2 enrichment failed, continuing", error=str(e))
            await self.store.upsert_stage(run_id, STAGE_WRITE_CATALOG_V2, "failed", {"error": 1})
            return
        await self.store.upsert_stage(run_id, STAGE_WRITE_CATALOG_V2, "completed", counts)

    async def _record_failure(self, tenant_id, connection_id, run_id, stage, message):
        try:
            await self.store.upsert_stage(run_id, stage, "failed")
            await self.store.set_run_status(run_id, "failed", error=message)
            await self.store.record_verification(tenant_id, connection_id, error=message)
        except Exception as e:
            # State store unavailable; the run stays in its last persisted state
            logger.error("Failed to record sync failure", run_id=run_id, stage=stage, error=str(e))


def stage_progress(stage) -> Optional[Dict[str, Any]]:
    metrics = stage.metrics or {}
    for processed_key, total_key in (("processedTables", "totalTables"), ("processedColumns", "totalColumns")):
        total = metrics.get(total_key)
        if total:
            processed = metrics.get(processed_key) or 0
            return {"processed": processed, "total": total, "ratio": min(1.0, processed / total)}
    return None


def estimate_eta_seconds(stage, now_ms: int) -> Optional[int]:
    progress = stage_progress(stage)
    if stage.status != "running" or not progress or not stage.startedAt or progress["ratio"] <= 0:
        return None
    elapsed = max(0, now_ms - stage.startedAt) / 1000.0
    return int(elapsed * (1 - progress["ratio"]) / progress["ratio"])


def describe_run(run, now_ms: int) -> Dict[str, Any]:
    stages: List[Dict[str, Any]] = []
    for stage in run.stages:
        stages.append({
            "stage": stage.stage,
            "status": stage.status,
            "metrics": stage.metrics or {},
            "progress": stage_progress(stage),
            "etaSeconds": estimate_eta_seconds(stage, now_ms),
            "startedAt": stage.startedAt,
            "completedAt": stage.completedAt,
        })
    return {
        "id": run.id,
        "status": run.status,
        "startedAt": run.startedAt,
        "completedAt": run.completedAt,
        "error": run.error,
        "stages": stages,
    }
