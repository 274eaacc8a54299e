import pytest

from agent.query_pipeline import QueryPipeline
from agent.retrieval import RetrievalRanker
from agent.sql_generator import SQLGenerator, normalize_chart
from db.models import now_ms
from services.admission import AdmissionController, DAY_MS
from services.audit_service import AuditService, scrub_error
from services.errors import (
    CatalogNotReady,
    CircuitOpen,
    ModelOutputError,
    NotFoundError,
    QueryExecutionError,
    QuotaExceeded,
    SafetyViolation,
)
from sql_tools.sql_executor import SQLExecutor
from tests.fakes import FakeLLM, FakeSqlSession, OTHER_TENANT, TENANT, make_session_opener

ORDERS_PAYLOAD = {
    "schema": "dbo",
    "name": "Orders",
    "description": "Customer orders",
    "columns": [{"name": "region", "dataType": "nvarchar"}, {"name": "total", "dataType": "decimal"}],
}


async def no_sleep(seconds):
    return None


def make_pipeline(store, llm, session=None, **admission):
    session = session or FakeSqlSession([("SELECT", [{"region": "EU", "revenue": 10}, {"region": "US", "revenue": 7}])])
    return QueryPipeline(
        store,
        RetrievalRanker(store),
        SQLGenerator(lambda: llm),
        SQLExecutor(session_opener=make_session_opener(session), sleep=no_sleep),
        admission=AdmissionController(store, **admission),
    ), session


async def add_orders_artifact(store, connection):
    await store.upsert_artifact(TENANT, connection.id, "table", "dbo.Orders", ORDERS_PAYLOAD, 1)


@pytest.mark.asyncio
async def test_question_is_answered_and_audited(store, connection):
    await add_orders_artifact(store, connection)
    llm = FakeLLM(parsed={
        "sql": "SELECT region, SUM(total) AS revenue FROM dbo.Orders GROUP BY region",
        "rationale": "Sum of order totals per region",
        "chart": {"type": "bar", "x": "region", "y": "revenue"},
        "follow_up_questions": ["Which region grew fastest?"],
    })
    pipeline, session = make_pipeline(store, llm)

    result = await pipeline.ask(TENANT, "user-1", connection.id, "revenue by region", max_rows=100)

    assert result["rowCount"] == 2
    assert result["columns"] == ["region", "revenue"]
    assert result["chart"] == {"type": "bar", "x": "region", "y": ["revenue"], "grouping": None, "options": {}}
    assert result["followUpQuestions"] == ["Which region grew fastest?"]
    assert session.queries[0].startswith("SET ROWCOUNT 100; SELECT region")

    [audit] = await store.list_audits(TENANT, 0)
    assert (audit.status, audit.rowCount, audit.userId) == ("success", 2, "user-1")
    assert audit.question == "revenue by region"


@pytest.mark.asyncio
async def test_raw_json_content_is_accepted_when_structured_parse_is_missing(store, connection):
    await add_orders_artifact(store, connection)
    llm = FakeLLM(content='```json\n{"sql": "SELECT COUNT(*) AS n FROM dbo.Orders", "chart": {"type": "radar"}}\n```')
    pipeline, _ = make_pipeline(store, llm)

    result = await pipeline.ask(TENANT, "user-1", connection.id, "how many orders")

    assert result["sql"] == "SELECT COUNT(*) AS n FROM dbo.Orders"
    assert result["chart"] == normalize_chart(None)
    assert result["rationale"] == ""


@pytest.mark.asyncio
async def test_unusable_model_output_raises(store, connection):
    await add_orders_artifact(store, connection)
    pipeline, _ = make_pipeline(store, FakeLLM(content="Sorry, I can't do that."))

    with pytest.raises(ModelOutputError):
        await pipeline.ask(TENANT, "user-1", connection.id, "how many orders")


@pytest.mark.asyncio
async def test_unsafe_sql_is_audited_and_never_executed(store, connection):
    await add_orders_artifact(store, connection)
    pipeline, session = make_pipeline(store, FakeLLM(parsed={"sql": "DELETE FROM dbo.Orders"}))

    with pytest.raises(SafetyViolation):
        await pipeline.ask(TENANT, "user-1", connection.id, "remove all orders")

    assert session.queries == []
    [audit] = await store.list_audits(TENANT, 0)
    assert audit.status == "error"
    assert audit.sql == "DELETE FROM dbo.Orders"


@pytest.mark.asyncio
async def test_failed_execution_is_audited(store, connection):
    await add_orders_artifact(store, connection)
    session = FakeSqlSession([("SELECT", ValueError("Invalid column name 'regoin'"))])
    pipeline, _ = make_pipeline(store, FakeLLM(parsed={"sql": "SELECT regoin FROM dbo.Orders"}), session)

    with pytest.raises(QueryExecutionError):
        await pipeline.ask(TENANT, "user-1", connection.id, "regions")

    [audit] = await store.list_audits(TENANT, 0)
    assert audit.status == "error"
    assert "regoin" in audit.error


@pytest.mark.asyncio
async def test_missing_catalog_is_reported(store, connection):
    pipeline, _ = make_pipeline(store, FakeLLM())

    with pytest.raises(CatalogNotReady):
        await pipeline.ask(TENANT, "user-1", connection.id, "anything")


@pytest.mark.asyncio
async def test_connection_of_another_tenant_is_not_found(store, connection):
    await add_orders_artifact(store, connection)
    pipeline, _ = make_pipeline(store, FakeLLM())

    with pytest.raises(NotFoundError):
        await pipeline.ask(OTHER_TENANT, "user-9", connection.id, "anything")


@pytest.mark.asyncio
async def test_daily_quota_blocks_requests(store, connection):
    for _ in range(3):
        await store.insert_audit(tenantId=TENANT, connectionId=connection.id, question="q", status="success")

    with pytest.raises(QuotaExceeded):
        await AdmissionController(store, daily_limit=3).check(TENANT)
    assert await AdmissionController(store, daily_limit=3).check(OTHER_TENANT) == {"daily": 0, "recentErrors": 0}


@pytest.mark.asyncio
async def test_old_audits_do_not_count_toward_quota(store, connection):
    now = now_ms()
    await store.insert_audit(tenantId=TENANT, question="q", status="success", createdAt=now - DAY_MS - 1)

    usage = await AdmissionController(store, daily_limit=1).check(TENANT, now_ms=now)
    assert usage == {"daily": 0, "recentErrors": 0}


@pytest.mark.asyncio
async def test_error_circuit_opens_after_recent_errors(store, connection):
    for _ in range(2):
        await store.insert_audit(tenantId=TENANT, question="q", status="error", error="boom")

    with pytest.raises(CircuitOpen):
        await AdmissionController(store, error_window_limit=2).check(TENANT)


@pytest.mark.asyncio
async def test_org_settings_override_limits(store, connection):
    await store.update_org_settings(TENANT, {"rateLimitDaily": 1, "errorWindowLimit": "not a number"})
    controller = AdmissionController(store, daily_limit=100, error_window_limit=7)

    assert await controller.limits_for(TENANT) == {"rateLimitDaily": 1, "errorWindowLimit": 7}

    await store.insert_audit(tenantId=TENANT, question="q", status="success")
    with pytest.raises(QuotaExceeded):
        await controller.check(TENANT)


def test_scrub_error_masks_credentials():
    assert scrub_error("Login failed: server=db;password=hunter2;") == "Login failed: server=db;password=***"
    assert scrub_error(None) is None


@pytest.mark.asyncio
async def test_audit_write_failure_is_not_raised():
    class BrokenStore:
        async def insert_audit(self, **fields):
            raise RuntimeError("state store offline")

    assert await AuditService(BrokenStore()).record(TENANT, "c1", "u1", "q", "SELECT 1", "success") is None
