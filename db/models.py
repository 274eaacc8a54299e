from typing import List, Optional, Dict, Any
import time
import uuid
from sqlalchemy import String, Integer, Text, ForeignKey, JSON, BigInteger, Float, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from pgvector.sqlalchemy import Vector

from services.config import settings

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Connection(Base):
    __tablename__ = "connections"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_connections_tenant_name"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenantId: Mapped[str] = mapped_column("tenant_id", String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    driver: Mapped[str] = mapped_column(String(32), default="mssql")
    encryptedConfig: Mapped[Dict[str, Any]] = mapped_column("encrypted_config", JSONType, nullable=False)
    tableSelectionMode: Mapped[str] = mapped_column("table_selection_mode", String(16), default="all")
    selectedTables: Mapped[Optional[List[str]]] = mapped_column("selected_tables", JSONType)
    excludedTables: Mapped[Optional[List[str]]] = mapped_column("excluded_tables", JSONType)
    createdBy: Mapped[Optional[str]] = mapped_column("created_by", String(64))
    createdAt: Mapped[int] = mapped_column("created_at", BigInteger, default=now_ms)
    updatedAt: Mapped[int] = mapped_column("updated_at", BigInteger, default=now_ms, onupdate=now_ms)
    lastVerifiedAt: Mapped[Optional[int]] = mapped_column("last_verified_at", BigInteger)
    lastError: Mapped[Optional[str]] = mapped_column("last_error", Text)
    syncRequestedAt: Mapped[Optional[int]] = mapped_column("sync_requested_at", BigInteger)

    runs: Mapped[List["SyncRun"]] = relationship("SyncRun", back_populates="connection")


class SyncRun(Base):
    __tablename__ = "sync_runs"
    __table_args__ = (Index("ix_sync_runs_connection_started", "connection_id", "started_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenantId: Mapped[str] = mapped_column("tenant_id", String(64), nullable=False, index=True)
    connectionId: Mapped[str] = mapped_column("connection_id", ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    createdBy: Mapped[Optional[str]] = mapped_column("created_by", String(64))
    startedAt: Mapped[int] = mapped_column("started_at", BigInteger, default=now_ms)
    completedAt: Mapped[Optional[int]] = mapped_column("completed_at", BigInteger)
    error: Mapped[Optional[str]] = mapped_column(Text)

    connection: Mapped["Connection"] = relationship("Connection", back_populates="runs")
    stages: Mapped[List["SyncStage"]] = relationship("SyncStage", back_populates="run", order_by="SyncStage.createdAt")


class SyncStage(Base):
    __tablename__ = "sync_stages"
    __table_args__ = (UniqueConstraint("run_id", "stage", name="uq_sync_stages_run_stage"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    runId: Mapped[str] = mapped_column("run_id", ForeignKey("sync_runs.id", ondelete="CASCADE"), nullable=False)
    stage: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    metrics: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType)
    createdAt: Mapped[int] = mapped_column("created_at", BigInteger, default=now_ms)
    startedAt: Mapped[Optional[int]] = mapped_column("started_at", BigInteger)
    completedAt: Mapped[Optional[int]] = mapped_column("completed_at", BigInteger)
    updatedAt: Mapped[int] = mapped_column("updated_at", BigInteger, default=now_ms, onupdate=now_ms)

    run: Mapped["SyncRun"] = relationship("SyncRun", back_populates="stages")


class SemanticArtifact(Base):
    __tablename__ = "semantic_artifacts"
    __table_args__ = (
        UniqueConstraint("connection_id", "artifact_key", name="uq_semantic_artifacts_connection_key"),
        Index("ix_semantic_artifacts_connection_type", "connection_id", "artifact_type"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenantId: Mapped[str] = mapped_column("tenant_id", String(64), nullable=False)
    connectionId: Mapped[str] = mapped_column("connection_id", ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    artifactType: Mapped[str] = mapped_column("artifact_type", String(16), nullable=False)
    artifactKey: Mapped[str] = mapped_column("artifact_key", String(512), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False)
    embeddingId: Mapped[Optional[str]] = mapped_column("embedding_id", String(600))
    updatedAt: Mapped[int] = mapped_column("updated_at", BigInteger, default=now_ms, onupdate=now_ms)


class QueryAudit(Base):
    __tablename__ = "query_audits"
    __table_args__ = (
        Index("ix_query_audits_tenant_created", "tenant_id", "created_at"),
        Index("ix_query_audits_tenant_status_created", "tenant_id", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenantId: Mapped[str] = mapped_column("tenant_id", String(64), nullable=False)
    connectionId: Mapped[Optional[str]] = mapped_column("connection_id", String(36))
    userId: Mapped[Optional[str]] = mapped_column("user_id", String(64))
    question: Mapped[str] = mapped_column(Text, nullable=False)
    sql: Mapped[Optional[str]] = mapped_column(Text)
    rowCount: Mapped[int] = mapped_column("row_count", Integer, default=0)
    durationMs: Mapped[int] = mapped_column("duration_ms", Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text)
    createdAt: Mapped[int] = mapped_column("created_at", BigInteger, default=now_ms)


class AuditArchive(Base):
    __tablename__ = "audit_archives"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenantId: Mapped[str] = mapped_column("tenant_id", String(64), nullable=False, index=True)
    connectionId: Mapped[Optional[str]] = mapped_column("connection_id", String(36))
    createdAt: Mapped[int] = mapped_column("created_at", BigInteger, nullable=False)
    archivedAt: Mapped[int] = mapped_column("archived_at", BigInteger, default=now_ms)
    doc: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)


class SemanticEntity(Base):
    __tablename__ = "semantic_entities"
    __table_args__ = (UniqueConstraint("connection_id", "entity_key", name="uq_semantic_entities_connection_key"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenantId: Mapped[str] = mapped_column("tenant_id", String(64), nullable=False)
    connectionId: Mapped[str] = mapped_column("connection_id", ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    entityKey: Mapped[str] = mapped_column("entity_key", String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    defaultTable: Mapped[str] = mapped_column("default_table", String(512), nullable=False)
    idColumn: Mapped[Optional[str]] = mapped_column("id_column", String(255))
    synonyms: Mapped[List[str]] = mapped_column(JSONType, default=list)
    updatedAt: Mapped[int] = mapped_column("updated_at", BigInteger, default=now_ms, onupdate=now_ms)


class SemanticAttribute(Base):
    __tablename__ = "semantic_attributes"
    __table_args__ = (
        UniqueConstraint("connection_id", "entity_key", "name", name="uq_semantic_attributes_entity_name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenantId: Mapped[str] = mapped_column("tenant_id", String(64), nullable=False)
    connectionId: Mapped[str] = mapped_column("connection_id", ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    entityKey: Mapped[str] = mapped_column("entity_key", String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sourceTable: Mapped[str] = mapped_column("source_table", String(512), nullable=False)
    sourceColumn: Mapped[str] = mapped_column("source_column", String(255), nullable=False)
    dataType: Mapped[Optional[str]] = mapped_column("data_type", String(100))
    synonyms: Mapped[List[str]] = mapped_column(JSONType, default=list)
    updatedAt: Mapped[int] = mapped_column("updated_at", BigInteger, default=now_ms, onupdate=now_ms)


class SemanticGraphEdge(Base):
    __tablename__ = "semantic_graph_edges"
    __table_args__ = (
        UniqueConstraint("connection_id", "source_table", "target_table", "source_column", name="uq_semantic_edges"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenantId: Mapped[str] = mapped_column("tenant_id", String(64), nullable=False)
    connectionId: Mapped[str] = mapped_column("connection_id", ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    sourceTable: Mapped[str] = mapped_column("source_table", String(512), nullable=False)
    sourceColumn: Mapped[str] = mapped_column("source_column", String(255), nullable=False)
    targetTable: Mapped[str] = mapped_column("target_table", String(512), nullable=False)
    targetColumn: Mapped[str] = mapped_column("target_column", String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), default="fk")
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    updatedAt: Mapped[int] = mapped_column("updated_at", BigInteger, default=now_ms, onupdate=now_ms)


class OrgSettings(Base):
    __tablename__ = "org_settings"

    tenantId: Mapped[str] = mapped_column("tenant_id", String(64), primary_key=True)
    settings: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict)
    updatedAt: Mapped[int] = mapped_column("updated_at", BigInteger, default=now_ms, onupdate=now_ms)


class Dashboard(Base):
    __tablename__ = "dashboards"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenantId: Mapped[str] = mapped_column("tenant_id", String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    createdAt: Mapped[int] = mapped_column("created_at", BigInteger, default=now_ms)

    tiles: Mapped[List["DashboardTile"]] = relationship("DashboardTile", back_populates="dashboard")


class DashboardTile(Base):
    __tablename__ = "dashboard_tiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenantId: Mapped[str] = mapped_column("tenant_id", String(64), nullable=False, index=True)
    dashboardId: Mapped[str] = mapped_column("dashboard_id", ForeignKey("dashboards.id", ondelete="CASCADE"), nullable=False)
    connectionId: Mapped[str] = mapped_column("connection_id", String(36), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    sql: Mapped[str] = mapped_column(Text, nullable=False)
    chart: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType)
    createdAt: Mapped[int] = mapped_column("created_at", BigInteger, default=now_ms)

    dashboard: Mapped["Dashboard"] = relationship("Dashboard", back_populates="tiles")


class VectorBase(DeclarativeBase):
    """Separate metadata: the vector table lives in the pgvector database."""
    pass


class CatalogEmbedding(VectorBase):
    __tablename__ = settings.vector_table
    __table_args__ = (UniqueConstraint("collection", "key", name=f"uq_{settings.vector_table}_collection_key"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    collection: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    key: Mapped[str] = mapped_column(String(600), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding = mapped_column(Vector(settings.embedding_dimension), nullable=False)
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSONB)
    updatedAt: Mapped[int] = mapped_column("updated_at", BigInteger, default=now_ms, onupdate=now_ms)
