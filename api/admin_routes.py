from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
import structlog

from api.dependencies import get_store, get_result_cache
from db.models import now_ms
from services.auth import get_current_user, require_admin, User
from services.cache_service import CACHE_NAMESPACE, ResultCache, connection_cache_prefix
from services.audit_service import audit_to_dict, audits_to_csv
from services.metrics import stakeholder_metrics, usage_series
from services.retention import archive_audits

router = APIRouter()
logger = structlog.get_logger()


class CacheInvalidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    connection_id: Optional[str] = Field(None, alias="connectionId")


@router.post("/admin/cache/invalidate")
async def invalidate_cache(
    request: CacheInvalidateRequest,
    user: User = Depends(require_admin),
    cache: ResultCache = Depends(get_result_cache),
):
    if request.connection_id:
        prefix = connection_cache_prefix(user.tenant_id, request.connection_id)
    else:
        prefix = f"{CACHE_NAMESPACE}{user.tenant_id}:"
    invalidated = await cache.invalidate(prefix)
    logger.info("Cache invalidated by admin", tenant_id=user.tenant_id, user_id=user.id, count=invalidated)
    return {"invalidated": invalidated}


class OrgLimitsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rate_limit_daily: Optional[int] = Field(None, alias="rateLimitDaily", ge=1)
    error_window_limit: Optional[int] = Field(None, alias="errorWindowLimit", ge=1)


@router.get("/admin/org-settings")
async def get_org_settings(user: User = Depends(require_admin), store=Depends(get_store)):
    return await store.get_org_settings(user.tenant_id)


@router.put("/admin/org-settings")
async def update_org_settings(
    request: OrgLimitsRequest,
    user: User = Depends(require_admin),
    store=Depends(get_store),
):
    values = request.model_dump(by_alias=True, exclude_none=True)
    updated = await store.update_org_settings(user.tenant_id, values)
    logger.info("Org settings updated", tenant_id=user.tenant_id, **values)
    return updated


class RetentionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    older_than_days: Optional[float] = Field(None, alias="olderThanDays")


@router.post("/admin/retention/run")
async def run_retention(
    request: RetentionRequest,
    user: User = Depends(require_admin),
    store=Depends(get_store),
):
    return await archive_audits(store, user.tenant_id, request.older_than_days)


@router.get("/metrics/stakeholder")
async def get_stakeholder_metrics(
    days: Optional[int] = Query(None),
    user: User = Depends(get_current_user),
    store=Depends(get_store),
):
    return await stakeholder_metrics(store, user.tenant_id, days=days)


@router.get("/metrics/usage")
async def get_usage_series(
    days: Optional[int] = Query(None),
    user: User = Depends(get_current_user),
    store=Depends(get_store),
):
    return await usage_series(store, user.tenant_id, days=days)


@router.get("/metrics/audit")
async def list_query_audits(
    connection_id: Optional[str] = Query(None, alias="connectionId"),
    status: Optional[str] = Query(None, pattern="^(success|error)$"),
    audit_user: Optional[str] = Query(None, alias="user"),
    from_ms: Optional[int] = Query(None, alias="from"),
    to_ms: Optional[int] = Query(None, alias="to"),
    export_format: str = Query("json", alias="format"),
    user: User = Depends(require_admin),
    store=Depends(get_store),
):
    audits = await store.search_audits(
        user.tenant_id,
        connection_id=connection_id,
        status=status,
        user_id=audit_user,
        from_ms=from_ms,
        to_ms=to_ms,
    )
    if export_format.lower() == "csv":
        return Response(
            content=audits_to_csv(audits),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="audit_{now_ms()}.csv"'},
        )
    return {"audits": [audit_to_dict(a) for a in audits]}
