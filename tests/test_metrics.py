from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from services.audit_service import audits_to_csv
from services.catalog_browser import describe_table
from services.errors import NotFoundError
from services.metrics import clamp_days, compute_stakeholder_metrics, compute_usage_series, percentile, stakeholder_metrics
from services.retention import archive_audits, retention_days
from tests.fakes import TENANT

DAY_MS = 24 * 60 * 60 * 1000


def utc_ms(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


WINDOW_START = utc_ms(2025, 1, 1)
NOW = utc_ms(2025, 1, 7, 12)


def kpi_records():
    connections = [SimpleNamespace(id="conn1", createdAt=WINDOW_START)]
    audits = [
        SimpleNamespace(connectionId="conn1", createdAt=WINDOW_START + 30 * 60 * 1000, status="success", durationMs=4500),
        SimpleNamespace(connectionId="conn1", createdAt=WINDOW_START + DAY_MS + 10 * 60 * 1000, status="error", durationMs=None),
        SimpleNamespace(connectionId="conn1", createdAt=WINDOW_START + 2 * DAY_MS + 20 * 60 * 1000, status="success", durationMs=5000),
    ]
    dashboards = [SimpleNamespace(id="dash1", createdAt=WINDOW_START + DAY_MS)]
    tiles = [SimpleNamespace(dashboardId="dash1") for _ in range(4)]
    return connections, audits, dashboards, tiles


def test_stakeholder_kpis_over_a_week():
    result = compute_stakeholder_metrics(*kpi_records(), days=7, now=NOW)
    metrics = result["metrics"]

    assert result["range"] == {"days": 7, "start": "2025-01-01T00:00:00.000Z", "end": "2025-01-07T23:59:59.999Z"}

    assert metrics["ttfi"]["currentMinutes"] == pytest.approx(30)
    assert metrics["ttfi"]["sampleSize"] == 1

    assert metrics["nlAccuracy"]["currentRate"] == 1
    assert metrics["nlAccuracy"]["sampleSize"] == 3

    assert metrics["dashboardAdoption"]["currentRate"] == 1
    assert metrics["dashboardAdoption"]["sampleSize"] == 1

    assert metrics["performance"]["currentNlP95Ms"] == 5000
    assert metrics["performance"]["sampleSize"] == 2

    assert metrics["trustSafety"]["currentIncidents"] == 1
    assert metrics["trustSafety"]["sampleSize"] == 3
    assert metrics["trustSafety"]["auditCoverage"] == 1

    for name in ("ttfi", "nlAccuracy", "dashboardAdoption", "performance", "trustSafety"):
        assert len(metrics[name]["trend"]) == 7
    assert metrics["nlAccuracy"]["trend"][1] == {"date": "2025-01-02", "value": 0, "sampleSize": 1}


def test_empty_tenant_has_no_values():
    result = compute_stakeholder_metrics([], [], [], [], days=7, now=NOW)
    metrics = result["metrics"]

    assert metrics["ttfi"]["currentMinutes"] is None
    assert metrics["nlAccuracy"]["currentRate"] is None
    assert metrics["trustSafety"]["currentIncidents"] == 0
    assert metrics["trustSafety"]["auditCoverage"] is None


@pytest.mark.parametrize("days,expected", [(None, 14), (0, 14), (3, 7), (30.9, 30), (365, 90)])
def test_clamp_days(days, expected):
    assert clamp_days(days) == expected


def test_percentile_uses_floor_index():
    assert percentile([], 0.95) is None
    assert percentile([300, 100, 200], 0.95) == 200
    assert percentile([5000], 0.95) == 5000


@pytest.mark.asyncio
async def test_metrics_read_from_state_store(store, connection):
    await store.insert_audit(
        tenantId=TENANT, connectionId=connection.id, question="q", status="success",
        durationMs=1200, createdAt=connection.createdAt + 5 * 60 * 1000,
    )
    result = await stakeholder_metrics(store, TENANT, days=7, now=connection.createdAt + 10 * 60 * 1000)

    assert result["metrics"]["nlAccuracy"]["sampleSize"] == 1
    assert result["metrics"]["performance"]["currentNlP95Ms"] == 1200


@pytest.mark.parametrize("requested,expected", [(None, 730), (5, 30), (45.7, 45)])
def test_retention_days_never_below_minimum(requested, expected):
    assert retention_days(requested) == expected


@pytest.mark.asyncio
async def test_archive_moves_old_audits(store):
    now = utc_ms(2025, 6, 1)
    await store.insert_audit(tenantId=TENANT, question="old", status="success", createdAt=now - 40 * DAY_MS)
    await store.insert_audit(tenantId=TENANT, question="recent", status="success", createdAt=now - 10 * DAY_MS)

    result = await archive_audits(store, TENANT, older_than_days=1, now=now)

    assert result == {"archived": 1, "days": 30}
    remaining = await store.list_audits(TENANT, 0)
    assert [a.question for a in remaining] == ["recent"]


def test_usage_series_counts_per_utc_day():
    audits = [
        SimpleNamespace(createdAt=WINDOW_START + 60_000, status="success"),
        SimpleNamespace(createdAt=WINDOW_START + 2 * 60_000, status="error"),
        SimpleNamespace(createdAt=NOW, status="success"),
        SimpleNamespace(createdAt=WINDOW_START - 1, status="error"),
    ]
    result = compute_usage_series(audits, limit=500, days=7, now=NOW)

    assert result["days"] == 7
    assert result["series"][0] == {"date": "2025-01-01", "total": 2, "errors": 1, "limit": 500}
    assert result["series"][-1] == {"date": "2025-01-07", "total": 1, "errors": 0, "limit": 500}
    assert sum(day["total"] for day in result["series"]) == 3


def test_audit_export_masks_long_tokens():
    audit = SimpleNamespace(
        createdAt=WINDOW_START,
        userId="user_2abcdefghijklmnopqrstuvwxyz",
        connectionId="conn1",
        question='revenue, "gross"',
        sql="SELECT 1",
        rowCount=1,
        durationMs=40,
        status="success",
        error=None,
    )
    [header, row] = audits_to_csv([audit]).splitlines()

    assert header.split(",")[0] == "createdAt"
    assert row == '2025-01-01T00:00:00.000Z,user…wxyz,conn1,"revenue, ""gross""",SELECT 1,1,40,success,'


def test_table_detail_reports_staleness():
    artifacts = [
        SimpleNamespace(artifactType="table", artifactKey="dbo.Orders", payload={"name": "Orders", "foreignKeys": []}),
        SimpleNamespace(artifactType="column", artifactKey="dbo.Orders.id", payload={"column": {"name": "id"}}),
        SimpleNamespace(artifactType="column", artifactKey="dbo.OrdersArchive.id", payload={"column": {"name": "id"}}),
    ]
    runs = [SimpleNamespace(startedAt=NOW - 2 * DAY_MS, completedAt=NOW - 2 * DAY_MS + 5_000)]

    fresh = describe_table(artifacts, runs, "dbo.orders", now=NOW)
    assert fresh["lastSyncAt"] == NOW - 2 * DAY_MS + 5_000
    assert fresh["isStale"] is False
    assert [c["key"] for c in fresh["columns"]] == ["dbo.Orders.id"]

    assert describe_table(artifacts, runs, "dbo.Orders", now=NOW + 2 * DAY_MS)["isStale"] is True
    with pytest.raises(NotFoundError):
        describe_table(artifacts, runs, "dbo.Customers", now=NOW)
