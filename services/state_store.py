"""
Typed access to the application state store.

All reads and writes for connections, sync runs/stages, semantic
artifacts, catalog v2 records, query audits, org settings and dashboards
go through ``StateStore``. Every lookup is scoped by tenant id.
"""
import json
from typing import Any, Dict, List, Optional
import structlog
from sqlalchemy import select, func, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from db.models import (
    Connection,
    SyncRun,
    SyncStage,
    SemanticArtifact,
    QueryAudit,
    AuditArchive,
    SemanticEntity,
    SemanticAttribute,
    SemanticGraphEdge,
    OrgSettings,
    Dashboard,
    DashboardTile,
    now_ms,
)
from services.config import settings
from services.errors import ArtifactTooLarge, NotFoundError, TenantIsolationError

logger = structlog.get_logger()

TERMINAL_STATUSES = {"completed", "failed"}
RUN_TRANSITIONS = {
    "pending": {"running", "completed", "failed"},
    "running": {"completed", "failed"},
}


def payload_size(payload: Dict[str, Any]) -> int:
    return len(json.dumps(payload, default=str).encode("utf-8"))


class StateStore:
    def __init__(self, session_factory: async_sessionmaker = None, artifact_max_bytes: int = None):
        if session_factory is None:
            from db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.artifact_max_bytes = artifact_max_bytes or settings.artifact_max_bytes

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def create_connection(
        self,
        tenant_id: str,
        name: str,
        encrypted_config: Dict[str, Any],
        table_selection: Dict[str, Any],
        created_by: Optional[str] = None,
    ) -> Connection:
        async with self.session_factory() as session:
            connection = Connection(
                tenantId=tenant_id,
                name=name,
                encryptedConfig=encrypted_config,
                tableSelectionMode=table_selection["mode"],
                selectedTables=table_selection.get("selectedTables"),
                excludedTables=table_selection.get("excludedTables"),
                createdBy=created_by,
            )
            session.add(connection)
            await session.commit()
            await session.refresh(connection)
            logger.info("Connection created", tenant_id=tenant_id, connection_id=connection.id)
            return connection

    async def get_connection(self, tenant_id: str, connection_id: str) -> Optional[Connection]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Connection).where(Connection.id == connection_id, Connection.tenantId == tenant_id)
            )
            return result.scalar_one_or_none()

    async def require_connection(self, tenant_id: str, connection_id: str) -> Connection:
        connection = await self.get_connection(tenant_id, connection_id)
        if connection is None:
            raise NotFoundError("Connection not found", context={"connection_id": connection_id})
        return connection

    async def list_connections(self, tenant_id: str) -> List[Connection]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Connection).where(Connection.tenantId == tenant_id).order_by(Connection.createdAt)
            )
            return list(result.scalars())

    async def update_connection(self, tenant_id: str, connection_id: str, **fields) -> Connection:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Connection).where(Connection.id == connection_id, Connection.tenantId == tenant_id)
            )
            connection = result.scalar_one_or_none()
            if connection is None:
                raise NotFoundError("Connection not found", context={"connection_id": connection_id})
            for name, value in fields.items():
                setattr(connection, name, value)
            connection.updatedAt = now_ms()
            await session.commit()
            await session.refresh(connection)
            return connection

    async def mark_sync_requested(self, tenant_id: str, connection_id: str) -> Connection:
        return await self.update_connection(tenant_id, connection_id, syncRequestedAt=now_ms())

    async def record_verification(self, tenant_id: str, connection_id: str, error: Optional[str] = None) -> Connection:
        """Success refreshes lastVerifiedAt and clears lastError; failure only sets lastError."""
        if error is None:
            return await self.update_connection(tenant_id, connection_id, lastVerifiedAt=now_ms(), lastError=None)
        return await self.update_connection(tenant_id, connection_id, lastError=error)

    # ------------------------------------------------------------------
    # Sync runs and stages
    # ------------------------------------------------------------------

    async def create_run(
        self,
        tenant_id: str,
        connection_id: str,
        status: str = "pending",
        created_by: Optional[str] = None,
    ) -> SyncRun:
        async with self.session_factory() as session:
            run = SyncRun(tenantId=tenant_id, connectionId=connection_id, status=status, createdBy=created_by)
            session.add(run)
            await session.commit()
            await session.refresh(run)
            return run

    async def get_run(self, tenant_id: str, run_id: str) -> Optional[SyncRun]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncRun)
                .options(selectinload(SyncRun.stages))
                .where(SyncRun.id == run_id, SyncRun.tenantId == tenant_id)
            )
            return result.scalar_one_or_none()

    async def set_run_status(self, run_id: str, status: str, error: Optional[str] = None) -> bool:
        """
        Move a run to ``status``. Terminal runs never change again; an
        illegal transition is logged and ignored. Returns True when applied.
        """
        async with self.session_factory() as session:
            run = await session.get(SyncRun, run_id)
            if run is None:
                raise NotFoundError("Sync run not found", context={"run_id": run_id})
            if status == run.status:
                return False
            if status not in RUN_TRANSITIONS.get(run.status, set()):
                logger.warning("Ignoring sync run transition", run_id=run_id, current=run.status, requested=status)
                return False
            run.status = status
            if status in TERMINAL_STATUSES:
                run.completedAt = now_ms()
                run.error = error
            await session.commit()
            return True

    async def list_active_runs(self, tenant_id: str, connection_id: str) -> List[SyncRun]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncRun).where(
                    SyncRun.tenantId == tenant_id,
                    SyncRun.connectionId == connection_id,
                    SyncRun.status.in_(["pending", "running"]),
                )
            )
            return list(result.scalars())

    async def list_runs(self, tenant_id: str, connection_id: str, limit: int = 5) -> List[SyncRun]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncRun)
                .options(selectinload(SyncRun.stages))
                .where(SyncRun.tenantId == tenant_id, SyncRun.connectionId == connection_id)
                .order_by(SyncRun.startedAt.desc())
                .limit(limit)
            )
            return list(result.scalars())

    async def upsert_stage(
        self,
        run_id: str,
        stage: str,
        status: str,
        metrics: Optional[Dict[str, Any]] = None,
    ) -> SyncStage:
        """
        Create or update the single row for (run, stage). startedAt is set on
        the first ``running`` write and kept; completedAt is set on a
        terminal status. A terminal stage is not moved back to running.
        """
        async with self.session_factory() as session:
            for attempt in range(2):
                result = await session.execute(
                    select(SyncStage).where(SyncStage.runId == run_id, SyncStage.stage == stage)
                )
                row = result.scalar_one_or_none()
                now = now_ms()
                if row is None:
                    row = SyncStage(runId=run_id, stage=stage, status=status, metrics=metrics or {})
                    session.add(row)
                elif row.status in TERMINAL_STATUSES and status not in TERMINAL_STATUSES:
                    logger.warning("Ignoring update to finished stage", run_id=run_id, stage=stage, status=status)
                    return row
                else:
                    row.status = status
                    if metrics is not None:
                        row.metrics = {**(row.metrics or {}), **metrics}
                    row.updatedAt = now
                if status == "running" and row.startedAt is None:
                    row.startedAt = now
                if status in TERMINAL_STATUSES:
                    row.startedAt = row.startedAt or now
                    row.completedAt = now
                try:
                    await session.commit()
                    return row
                except IntegrityError:
                    # Concurrent insert of the same (run, stage); retry as an update
                    await session.rollback()
                    if attempt:
                        raise
            return row

    # ------------------------------------------------------------------
    # Semantic artifacts
    # ------------------------------------------------------------------

    async def upsert_artifact(
        self,
        tenant_id: str,
        connection_id: str,
        artifact_type: str,
        artifact_key: str,
        payload: Dict[str, Any],
        version: int,
        embedding_id: Optional[str] = None,
    ) -> SemanticArtifact:
        size = payload_size(payload)
        if size > self.artifact_max_bytes:
            raise ArtifactTooLarge(
                f"Artifact {artifact_key} length limit exceeded",
                context={"bytes": size, "limit": self.artifact_max_bytes},
            )

        async with self.session_factory() as session:
            result = await session.execute(
                select(SemanticArtifact).where(
                    SemanticArtifact.connectionId == connection_id,
                    SemanticArtifact.artifactKey == artifact_key,
                )
            )
            artifact = result.scalar_one_or_none()
            if artifact is None:
                artifact = SemanticArtifact(
                    tenantId=tenant_id,
                    connectionId=connection_id,
                    artifactKey=artifact_key,
                )
                session.add(artifact)
            elif artifact.tenantId != tenant_id:
                raise TenantIsolationError(
                    "Artifact belongs to another tenant",
                    context={"artifact_key": artifact_key},
                )
            artifact.artifactType = artifact_type
            artifact.payload = payload
            artifact.version = version
            artifact.embeddingId = embedding_id
            artifact.updatedAt = now_ms()
            await session.commit()
            return artifact

    async def list_artifacts(
        self,
        tenant_id: str,
        connection_id: str,
        artifact_type: Optional[str] = None,
    ) -> List[SemanticArtifact]:
        async with self.session_factory() as session:
            stmt = select(SemanticArtifact).where(
                SemanticArtifact.tenantId == tenant_id,
                SemanticArtifact.connectionId == connection_id,
            )
            if artifact_type:
                stmt = stmt.where(SemanticArtifact.artifactType == artifact_type)
            result = await session.execute(stmt.order_by(SemanticArtifact.artifactKey))
            return list(result.scalars())

    # ------------------------------------------------------------------
    # Catalog v2
    # ------------------------------------------------------------------

    async def replace_catalog_v2(
        self,
        tenant_id: str,
        connection_id: str,
        entities: List[Dict[str, Any]],
        attributes: List[Dict[str, Any]],
        edges: List[Dict[str, Any]],
    ) -> Dict[str, int]:
        """Replace a connection's entities, attributes and edges in one transaction."""
        async with self.session_factory() as session:
            for model in (SemanticAttribute, SemanticEntity, SemanticGraphEdge):
                await session.execute(
                    delete(model).where(model.tenantId == tenant_id, model.connectionId == connection_id)
                )
            session.add_all(SemanticEntity(tenantId=tenant_id, connectionId=connection_id, **e) for e in entities)
            session.add_all(SemanticAttribute(tenantId=tenant_id, connectionId=connection_id, **a) for a in attributes)
            session.add_all(SemanticGraphEdge(tenantId=tenant_id, connectionId=connection_id, **e) for e in edges)
            await session.commit()
        return {"entities": len(entities), "attributes": len(attributes), "edges": len(edges)}

    async def list_entities(self, tenant_id: str, connection_id: str) -> List[SemanticEntity]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SemanticEntity)
                .where(SemanticEntity.tenantId == tenant_id, SemanticEntity.connectionId == connection_id)
                .order_by(SemanticEntity.entityKey)
            )
            return list(result.scalars())

    # ------------------------------------------------------------------
    # Query audits
    # ------------------------------------------------------------------

    async def insert_audit(self, **fields) -> QueryAudit:
        async with self.session_factory() as session:
            audit = QueryAudit(**fields)
            session.add(audit)
            await session.commit()
            return audit

    async def count_audits(self, tenant_id: str, since_ms: int, status: Optional[str] = None) -> int:
        async with self.session_factory() as session:
            stmt = select(func.count(QueryAudit.id)).where(
                QueryAudit.tenantId == tenant_id,
                QueryAudit.createdAt >= since_ms,
            )
            if status:
                stmt = stmt.where(QueryAudit.status == status)
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def list_audits(self, tenant_id: str, since_ms: int, until_ms: Optional[int] = None) -> List[QueryAudit]:
        async with self.session_factory() as session:
            stmt = select(QueryAudit).where(QueryAudit.tenantId == tenant_id, QueryAudit.createdAt >= since_ms)
            if until_ms is not None:
                stmt = stmt.where(QueryAudit.createdAt < until_ms)
            result = await session.execute(stmt.order_by(QueryAudit.createdAt))
            return list(result.scalars())

    async def search_audits(
        self,
        tenant_id: str,
        connection_id: Optional[str] = None,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None,
        limit: int = 1000,
    ) -> List[QueryAudit]:
        """Newest first; ``from_ms`` and ``to_ms`` are both inclusive."""
        async with self.session_factory() as session:
            stmt = select(QueryAudit).where(QueryAudit.tenantId == tenant_id)
            if connection_id:
                stmt = stmt.where(QueryAudit.connectionId == connection_id)
            if status:
                stmt = stmt.where(QueryAudit.status == status)
            if user_id:
                stmt = stmt.where(QueryAudit.userId == user_id)
            if from_ms is not None:
                stmt = stmt.where(QueryAudit.createdAt >= from_ms)
            if to_ms is not None:
                stmt = stmt.where(QueryAudit.createdAt <= to_ms)
            result = await session.execute(stmt.order_by(QueryAudit.createdAt.desc()).limit(limit))
            return list(result.scalars())

    async def archive_audits(self, tenant_id: str, cutoff_ms: int) -> int:
        """Copy audits older than ``cutoff_ms`` into audit_archives and delete them."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(QueryAudit).where(QueryAudit.tenantId == tenant_id, QueryAudit.createdAt < cutoff_ms)
            )
            audits = list(result.scalars())
            if not audits:
                return 0
            archived_at = now_ms()
            session.add_all(
                AuditArchive(
                    tenantId=a.tenantId,
                    connectionId=a.connectionId,
                    createdAt=a.createdAt,
                    archivedAt=archived_at,
                    doc={
                        "id": a.id,
                        "userId": a.userId,
                        "question": a.question,
                        "sql": a.sql,
                        "rowCount": a.rowCount,
                        "durationMs": a.durationMs,
                        "status": a.status,
                        "error": a.error,
                        "createdAt": a.createdAt,
                    },
                )
                for a in audits
            )
            await session.execute(delete(QueryAudit).where(QueryAudit.id.in_([a.id for a in audits])))
            await session.commit()
            return len(audits)

    # ------------------------------------------------------------------
    # Org settings and dashboards
    # ------------------------------------------------------------------

    async def get_org_settings(self, tenant_id: str) -> Dict[str, Any]:
        async with self.session_factory() as session:
            row = await session.get(OrgSettings, tenant_id)
            return dict(row.settings or {}) if row else {}

    async def update_org_settings(self, tenant_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as session:
            row = await session.get(OrgSettings, tenant_id)
            if row is None:
                row = OrgSettings(tenantId=tenant_id, settings={})
                session.add(row)
            row.settings = {**(row.settings or {}), **values}
            row.updatedAt = now_ms()
            await session.commit()
            return dict(row.settings)

    async def list_dashboards(self, tenant_id: str) -> List[Dashboard]:
        async with self.session_factory() as session:
            result = await session.execute(select(Dashboard).where(Dashboard.tenantId == tenant_id))
            return list(result.scalars())

    async def list_tiles(self, tenant_id: str) -> List[DashboardTile]:
        async with self.session_factory() as session:
            result = await session.execute(select(DashboardTile).where(DashboardTile.tenantId == tenant_id))
            return list(result.scalars())

    async def get_tile(self, tenant_id: str, tile_id: str) -> Optional[DashboardTile]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DashboardTile).where(DashboardTile.id == tile_id, DashboardTile.tenantId == tenant_id)
            )
            return result.scalar_one_or_none()

    async def create_dashboard(self, tenant_id: str, name: str, tiles: List[Dict[str, Any]]) -> Dashboard:
        async with self.session_factory() as session:
            dashboard = Dashboard(tenantId=tenant_id, name=name)
            session.add(dashboard)
            await session.flush()
            session.add_all(
                DashboardTile(tenantId=tenant_id, dashboardId=dashboard.id, **tile) for tile in tiles
            )
            await session.commit()
            await session.refresh(dashboard)
            return dashboard
