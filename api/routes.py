from fastapi import APIRouter, HTTPException, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict, Any
import structlog

from agent.auto_dashboard import AutoDashboardBuilder
from agent.query_pipeline import QueryPipeline
from agent.sync_pipeline import SyncOrchestrator, describe_run
from api.dependencies import (
    get_store,
    get_executor,
    get_job_manager,
    get_dispatcher,
    get_orchestrator,
    get_query_pipeline,
    get_tile_service,
    get_auto_dashboard_builder,
)
from api.http_errors import internal_error, to_http_exception
from db.models import now_ms
from services.auth import get_current_user, require_internal_api_key, User
from services.catalog_browser import artifact_view, describe_table, search_artifacts
from services.data_sources import create_data_source, decrypt_connection_config, parse_connection_config
from services.errors import RuntimeBaseError
from services.tile_data import TileDataService
from sql_tools.sql_executor import SQLExecutor, clamp_max_rows

router = APIRouter()
logger = structlog.get_logger()


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class HealthResponse(BaseModel):
    status: str
    version: str


@router.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse(status="healthy", version="1.0.0")


def connection_summary(connection) -> Dict[str, Any]:
    """Public view of a connection; credentials never leave the store."""
    return {
        "id": connection.id,
        "name": connection.name,
        "driver": connection.driver,
        "tableSelectionMode": connection.tableSelectionMode,
        "selectedTables": connection.selectedTables or [],
        "excludedTables": connection.excludedTables or [],
        "createdAt": connection.createdAt,
        "lastVerifiedAt": connection.lastVerifiedAt,
        "lastError": connection.lastError,
        "syncRequestedAt": connection.syncRequestedAt,
    }


# ---------------------------------------------------------------------------
# Data sources
# ---------------------------------------------------------------------------

class CreateDataSourceRequest(CamelModel):
    name: str
    config: Dict[str, Any]
    table_selection_mode: Optional[str] = Field(None, alias="tableSelectionMode")
    selected_tables: Optional[List[Any]] = Field(None, alias="selectedTables")
    excluded_tables: Optional[List[Any]] = Field(None, alias="excludedTables")


@router.post("/data-sources", status_code=status.HTTP_201_CREATED)
async def register_data_source(
    request: CreateDataSourceRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store),
):
    try:
        connection = await create_data_source(
            store,
            user.tenant_id,
            request.name,
            request.config,
            table_selection_mode=request.table_selection_mode,
            selected_tables=request.selected_tables,
            excluded_tables=request.excluded_tables,
            created_by=user.id,
        )
        return connection_summary(connection)
    except RuntimeBaseError as e:
        raise to_http_exception(e)


@router.get("/data-sources")
async def list_data_sources(user: User = Depends(get_current_user), store=Depends(get_store)):
    connections = await store.list_connections(user.tenant_id)
    return {"dataSources": [connection_summary(c) for c in connections]}


@router.post("/data-sources/{connection_id}/test")
async def test_data_source(
    connection_id: str,
    user: User = Depends(get_current_user),
    store=Depends(get_store),
    executor: SQLExecutor = Depends(get_executor),
):
    try:
        connection = await store.require_connection(user.tenant_id, connection_id)
        result = await executor.test_connection(decrypt_connection_config(connection))
        await store.record_verification(
            user.tenant_id, connection_id, error=None if result["success"] else result["message"]
        )
        return result
    except RuntimeBaseError as e:
        raise to_http_exception(e)


class RunQueryRequest(CamelModel):
    query: str = Field(..., min_length=1)
    connection_id: Optional[str] = Field(None, alias="connectionId")
    config: Optional[Dict[str, Any]] = None
    max_rows: Optional[int] = Field(None, alias="maxRows")


@router.post("/data-sources/run-query")
async def run_read_only_query(
    request: RunQueryRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store),
    executor: SQLExecutor = Depends(get_executor),
):
    """Run a caller-written read-only statement against a stored or inline connection."""
    if not request.connection_id and request.config is None:
        raise HTTPException(status_code=422, detail="connectionId or config is required")
    try:
        if request.connection_id:
            connection = await store.require_connection(user.tenant_id, request.connection_id)
            config = decrypt_connection_config(connection)
        else:
            config = parse_connection_config(request.config)
        max_rows = clamp_max_rows(request.max_rows)
        result = await executor.execute(config, request.query, max_rows=max_rows)
    except RuntimeBaseError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(e, "Direct query failed")

    logger.info("Direct query executed", tenant_id=user.tenant_id, user_id=user.id, row_count=result["rowCount"])
    return {
        "rows": result["rows"],
        "rowCount": result["rowCount"],
        "columns": result["columns"],
        "statistics": {"maxRows": max_rows, "executionMs": result["executionMs"]},
    }


@router.get("/data-sources/{connection_id}/runs")
async def get_sync_runs(
    connection_id: str,
    user: User = Depends(get_current_user),
    store=Depends(get_store),
):
    try:
        connection = await store.require_connection(user.tenant_id, connection_id)
    except RuntimeBaseError as e:
        raise to_http_exception(e)

    runs = await store.list_runs(user.tenant_id, connection_id, limit=5)
    now = now_ms()
    return {
        "connection": connection_summary(connection),
        "runs": [describe_run(run, now) for run in runs],
    }


# ---------------------------------------------------------------------------
# Semantic sync
# ---------------------------------------------------------------------------

class SemanticSyncRequest(CamelModel):
    connection_id: str = Field(..., alias="connectionId")


class SemanticSyncRunRequest(CamelModel):
    tenant_id: str = Field(..., alias="tenantId")
    connection_id: str = Field(..., alias="connectionId")
    run_id: str = Field(..., alias="runId")


@router.post("/semantic-sync", status_code=status.HTTP_202_ACCEPTED)
async def trigger_semantic_sync(
    request: SemanticSyncRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store),
    dispatcher=Depends(get_dispatcher),
):
    """
    Create a run and hand it to the internal run endpoint. The caller polls
    GET /data-sources/{id}/runs for progress.
    """
    try:
        connection = await store.require_connection(user.tenant_id, request.connection_id)
        decrypt_connection_config(connection)
    except RuntimeBaseError as e:
        raise to_http_exception(e)

    await store.mark_sync_requested(user.tenant_id, request.connection_id)
    run = await store.create_run(user.tenant_id, request.connection_id, status="running", created_by=user.id)

    error = await dispatcher.dispatch(user.tenant_id, request.connection_id, run.id)
    if error:
        await store.set_run_status(run.id, "failed", error=f"dispatch: {error}")

    logger.info("Semantic sync requested", tenant_id=user.tenant_id, connection_id=request.connection_id, run_id=run.id)
    return {"success": True, "runId": run.id}


@router.post(
    "/semantic-sync/run",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_internal_api_key)],
)
async def run_semantic_sync(
    request: SemanticSyncRunRequest,
    store=Depends(get_store),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    jobs=Depends(get_job_manager),
):
    run = await store.get_run(request.tenant_id, request.run_id)
    if run is None or run.connectionId != request.connection_id:
        raise HTTPException(status_code=404, detail="Sync run not found")

    jobs.submit_job(
        request.run_id,
        request.connection_id,
        orchestrator.run(request.tenant_id, request.connection_id, request.run_id),
    )
    return {"accepted": True, "runId": request.run_id}


# ---------------------------------------------------------------------------
# Semantic catalog browsing
# ---------------------------------------------------------------------------

@router.get("/semantic-artifacts")
async def list_semantic_artifacts(
    connection_id: str = Query(..., alias="connectionId"),
    artifact_type: Optional[str] = Query(None, alias="type"),
    user: User = Depends(get_current_user),
    store=Depends(get_store),
):
    try:
        await store.require_connection(user.tenant_id, connection_id)
    except RuntimeBaseError as e:
        raise to_http_exception(e)
    artifacts = await store.list_artifacts(user.tenant_id, connection_id, artifact_type)
    return {"artifacts": [artifact_view(a) for a in artifacts]}


@router.get("/data-map/search")
async def search_data_map(
    connection_id: str = Query(..., alias="connectionId"),
    q: str = Query(""),
    user: User = Depends(get_current_user),
    store=Depends(get_store),
):
    if not q.strip():
        return {"results": []}
    try:
        await store.require_connection(user.tenant_id, connection_id)
    except RuntimeBaseError as e:
        raise to_http_exception(e)
    artifacts = await store.list_artifacts(user.tenant_id, connection_id)
    return {"results": search_artifacts(artifacts, q)}


@router.get("/data-map/table")
async def get_data_map_table(
    connection_id: str = Query(..., alias="connectionId"),
    key: str = Query(..., min_length=1),
    user: User = Depends(get_current_user),
    store=Depends(get_store),
):
    try:
        await store.require_connection(user.tenant_id, connection_id)
        artifacts = await store.list_artifacts(user.tenant_id, connection_id)
        runs = await store.list_runs(user.tenant_id, connection_id, limit=1)
        return describe_table(artifacts, runs, key)
    except RuntimeBaseError as e:
        raise to_http_exception(e)


# ---------------------------------------------------------------------------
# Ask
# ---------------------------------------------------------------------------

class AskRequest(CamelModel):
    connection_id: str = Field(..., alias="connectionId")
    question: str = Field(..., min_length=1)
    max_rows: Optional[int] = Field(None, alias="maxRows")


@router.post("/ai/query")
async def ask_question(
    request: AskRequest,
    user: User = Depends(get_current_user),
    pipeline: QueryPipeline = Depends(get_query_pipeline),
):
    try:
        return await pipeline.ask(
            user.tenant_id,
            user.id,
            request.connection_id,
            request.question.strip(),
            max_rows=request.max_rows,
        )
    except RuntimeBaseError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(e, "Question failed")


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------

class AutoDashboardTile(BaseModel):
    title: str
    sql: str
    chart: Optional[Dict[str, Any]] = None


class AutoDashboardRequest(CamelModel):
    connection_id: str = Field(..., alias="connectionId")
    prompt: Optional[str] = None
    name: Optional[str] = None
    tiles: Optional[List[AutoDashboardTile]] = None


@router.post("/ai/auto-dashboard")
async def create_auto_dashboard(
    request: AutoDashboardRequest,
    user: User = Depends(get_current_user),
    builder: AutoDashboardBuilder = Depends(get_auto_dashboard_builder),
):
    if not request.prompt and not request.tiles:
        raise HTTPException(status_code=422, detail="connectionId and (prompt or tiles) are required")
    try:
        result = await builder.build(
            user.tenant_id,
            request.connection_id,
            prompt=request.prompt,
            name=request.name,
            tiles=[t.model_dump() for t in request.tiles] if request.tiles else None,
        )
        return {"success": True, **result}
    except RuntimeBaseError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(e, "Auto dashboard failed")


@router.get("/dashboards/tiles/{tile_id}/data")
async def get_tile_data(
    tile_id: str,
    user: User = Depends(get_current_user),
    tiles: TileDataService = Depends(get_tile_service),
):
    try:
        return await tiles.fetch(user.tenant_id, tile_id)
    except RuntimeBaseError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(e, "Tile data failed")
