import pytest

from agent.auto_dashboard import AutoDashboardBuilder
from agent.retrieval import RetrievalRanker
from services.cache_service import InMemoryResultCache, connection_cache_prefix, make_cache_key
from services.errors import NotFoundError
from services.tile_data import TileDataService
from sql_tools.sql_executor import SQLExecutor
from tests.fakes import FakeSqlSession, OTHER_TENANT, TENANT, make_session_opener


class Clock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_cache_key_is_stable_and_scoped():
    a = make_cache_key("t1", "c1", sql="SELECT 1", max_rows=10)
    b = make_cache_key("t1", "c1", max_rows=10, sql="SELECT 1")
    assert a == b
    assert a.startswith(connection_cache_prefix("t1", "c1"))
    assert a != make_cache_key("t2", "c1", sql="SELECT 1", max_rows=10)


@pytest.mark.asyncio
async def test_entries_expire_after_ttl():
    clock = Clock()
    cache = InMemoryResultCache(ttl_seconds=30, clock=clock)
    await cache.set("result:t1:c1:abc", {"rows": [1]})

    entry = await cache.get("result:t1:c1:abc")
    assert entry == {"timestamp": 1_000_000, "payload": {"rows": [1]}}

    clock.now += 30
    assert await cache.get("result:t1:c1:abc") is None


@pytest.mark.asyncio
async def test_invalidate_by_prefix():
    cache = InMemoryResultCache(ttl_seconds=30)
    await cache.set(make_cache_key("t1", "c1", sql="a"), 1)
    await cache.set(make_cache_key("t1", "c1", sql="b"), 2)
    await cache.set(make_cache_key("t1", "c2", sql="a"), 3)
    other = make_cache_key("t2", "c1", sql="a")
    await cache.set(other, 4)

    assert await cache.invalidate(connection_cache_prefix("t1", "c1")) == 2
    assert await cache.invalidate("result:t1:") == 1
    assert (await cache.get(other))["payload"] == 4


async def create_tile(store, connection):
    builder = AutoDashboardBuilder(store, RetrievalRanker(store))
    await builder.build(TENANT, connection.id, name="Orders", tiles=[{"title": "Count", "sql": "SELECT COUNT(*) AS n FROM dbo.Orders"}])
    [tile] = await store.list_tiles(TENANT)
    return tile


@pytest.mark.asyncio
async def test_tile_data_is_served_from_cache_on_second_read(store, connection, result_cache):
    tile = await create_tile(store, connection)
    session = FakeSqlSession([("SELECT", [{"n": 42}])])
    service = TileDataService(store, SQLExecutor(session_opener=make_session_opener(session)), result_cache, max_rows=100)

    first = await service.fetch(TENANT, tile.id)
    second = await service.fetch(TENANT, tile.id)

    assert first["rows"] == [{"n": 42}]
    assert first["cached"] is False
    assert second["cached"] is True
    assert second["rows"] == [{"n": 42}]
    assert "cachedAt" in second
    assert len(session.queries) == 1
    assert session.queries[0].startswith("SET ROWCOUNT 100;")


@pytest.mark.asyncio
async def test_tile_of_another_tenant_is_not_found(store, connection, result_cache):
    tile = await create_tile(store, connection)
    service = TileDataService(store, SQLExecutor(session_opener=make_session_opener(FakeSqlSession())), result_cache)

    with pytest.raises(NotFoundError):
        await service.fetch(OTHER_TENANT, tile.id)
