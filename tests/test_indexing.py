import json

import pytest

from agent.embedding_indexer import EmbeddingIndexer, build_embedding_items
from agent.summarizer import TableSummarizer, fallback_summary
from tests.fakes import FakeEmbeddingService, FakeLLM, FakeVectorStore, TENANT


def orders_table(**extra):
    return {
        "key": "dbo.Orders",
        "schema": "dbo",
        "name": "Orders",
        "rowCount": 120,
        "columns": [
            {"name": "id", "dataType": "int", "nullable": False},
            {"name": "customer", "dataType": "nvarchar", "nullable": True, "sampleValues": ["Acme", "Globex"]},
        ],
        **extra,
    }


def test_embedding_items_cover_tables_and_columns():
    items = build_embedding_items([orders_table(description="Customer orders")])

    assert [i["key"] for i in items] == ["table:dbo.Orders", "column:dbo.Orders.id", "column:dbo.Orders.customer"]
    assert "Row count: 120" in items[0]["text"]
    assert "Description: Customer orders" in items[0]["text"]
    assert items[2]["text"].endswith("Sample values: Acme, Globex.")
    assert items[2]["metadata"] == {
        "type": "column", "schema": "dbo", "table": "Orders", "column": "customer", "dataType": "nvarchar",
    }


def test_embedding_text_is_truncated():
    items = build_embedding_items([orders_table(description="x " * 500)], max_chars=50)
    assert all(len(i["text"]) <= 50 for i in items)


@pytest.mark.asyncio
async def test_failing_item_is_skipped_by_bisection():
    items = [
        {"key": f"table:dbo.t{i}", "artifactKey": f"dbo.t{i}", "text": f"Table t{i}", "metadata": {}}
        for i in range(4)
    ]
    items[2]["text"] = "Table poison"
    embeddings = FakeEmbeddingService(fail_on="poison")
    vectors = FakeVectorStore()

    stored = await EmbeddingIndexer(embeddings, vectors, batch_size=4).index(TENANT, items)

    assert stored == {"dbo.t0": "table:dbo.t0", "dbo.t1": "table:dbo.t1", "dbo.t3": "table:dbo.t3"}
    assert set(vectors.items) == {"tenant_tenant_a/table:dbo.t0", "tenant_tenant_a/table:dbo.t1", "tenant_tenant_a/table:dbo.t3"}


@pytest.mark.asyncio
async def test_unreachable_service_stops_indexing():
    items = build_embedding_items([orders_table()])
    embeddings = FakeEmbeddingService(error=ConnectionError("connection refused"))

    stored = await EmbeddingIndexer(embeddings, FakeVectorStore(), batch_size=1).index(TENANT, items)

    assert stored == {}
    # No bisection and no further batches once the service is unreachable
    assert len(embeddings.calls) == 1


@pytest.mark.asyncio
async def test_indexing_is_skipped_without_services():
    assert await EmbeddingIndexer(None, None).index(TENANT, build_embedding_items([orders_table()])) == {}


def test_fallback_summary_lists_columns():
    summary = fallback_summary(orders_table())
    assert summary == {
        "description": "Table dbo.Orders with 2 columns (id, customer).",
        "businessQuestions": ["What are the trends in Orders?"],
    }


@pytest.mark.asyncio
async def test_summarizer_uses_fallback_when_model_fails():
    summarizer = TableSummarizer(lambda: FakeLLM(error=RuntimeError("rate limited")))
    summaries = await summarizer.summarize([orders_table()])
    assert summaries["dbo.Orders"] == fallback_summary(orders_table())


@pytest.mark.asyncio
async def test_summarizer_uses_fallback_on_unparseable_output():
    summarizer = TableSummarizer(lambda: FakeLLM(content="I cannot help with that"))
    summaries = await summarizer.summarize([orders_table()])
    assert summaries["dbo.Orders"] == fallback_summary(orders_table())


@pytest.mark.asyncio
async def test_summarizer_ignores_tables_it_did_not_ask_about():
    content = json.dumps({"tables": [
        {"table_key": "dbo.Orders", "description": " Customer orders ", "business_questions": ["Revenue by customer?", ""]},
        {"table_key": "dbo.Secret", "description": "Not requested", "business_questions": []},
    ]})
    summarizer = TableSummarizer(lambda: FakeLLM(content=content))

    summaries = await summarizer.summarize([orders_table()])

    assert summaries == {
        "dbo.Orders": {"description": "Customer orders", "businessQuestions": ["Revenue by customer?"]},
    }


@pytest.mark.asyncio
async def test_summarizer_without_model_returns_fallbacks():
    def unavailable():
        raise ValueError("No API key configured")

    summaries = await TableSummarizer(unavailable).summarize([orders_table()])
    assert summaries["dbo.Orders"]["description"].startswith("Table dbo.Orders")
