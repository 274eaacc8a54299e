from types import SimpleNamespace

import pytest

from agent.retrieval import (
    RetrievalRanker,
    aggregate_table_scores,
    entity_match_rank,
    lexical_rank,
    rank_tables_from_hits,
)
from tests.fakes import FakeEmbeddingService, FakeVectorStore

COLUMN_AND_TABLE_HITS = [
    {"id": "column:dbo.t1.c1", "score": 0.8},
    {"id": "table:dbo.t2", "score": 0.4},
    {"id": "column:dbo.t3.c2", "score": 0.9},
]


def artifact(key, description="", questions=None, columns=()):
    return SimpleNamespace(
        artifactKey=key,
        payload={
            "description": description,
            "businessQuestions": questions or [],
            "columns": [{"name": c} for c in columns],
        },
    )


def entity(name, default_table, synonyms=()):
    return SimpleNamespace(name=name, defaultTable=default_table, synonyms=list(synonyms))


class StubStore:
    def __init__(self, entities=None, error=None):
        self.entities = entities or []
        self.error = error

    async def list_entities(self, tenant_id, connection_id):
        if self.error:
            raise self.error
        return self.entities


def test_column_hits_aggregate_into_their_table():
    scores = aggregate_table_scores(COLUMN_AND_TABLE_HITS)
    assert scores == pytest.approx({"dbo.t1": 0.8, "dbo.t2": 0.4, "dbo.t3": 0.9})
    assert rank_tables_from_hits(COLUMN_AND_TABLE_HITS) == ["dbo.t3", "dbo.t1", "dbo.t2"]


def test_scores_for_one_table_are_summed_and_non_positive_dropped():
    hits = [
        {"id": "column:dbo.a.x", "score": 0.3},
        {"id": "column:dbo.a.y", "score": 0.3},
        {"id": "table:dbo.b", "score": 0.5},
        {"id": "table:dbo.c", "score": 0.0},
        {"id": "something-else", "score": 9.0},
    ]
    assert rank_tables_from_hits(hits) == ["dbo.a", "dbo.b"]


def test_lexical_rank_counts_terms_and_keeps_catalog_order_on_ties():
    tables = [
        artifact("dbo.Customers", "Customer master data", columns=["id", "name"]),
        artifact("dbo.Orders", "Sales orders placed by customers", columns=["id", "total"]),
        artifact("dbo.Invoices", "Invoices issued", columns=["total"]),
    ]
    ranked = lexical_rank("total of orders per customer", tables)
    assert [t.artifactKey for t in ranked] == ["dbo.Orders", "dbo.Customers", "dbo.Invoices"]


def test_lexical_rank_ignores_short_terms():
    tables = [artifact("dbo.Misc"), artifact("dbo.to")]
    assert [t.artifactKey for t in lexical_rank("a to of", tables)] == ["dbo.Misc", "dbo.to"]


def test_lexical_rank_pads_with_unmatched_tables_up_to_limit():
    tables = [artifact(f"dbo.T{i}") for i in range(6)] + [artifact("dbo.Orders")]
    ranked = lexical_rank("orders this week", tables)
    assert [t.artifactKey for t in ranked] == ["dbo.Orders", "dbo.T0", "dbo.T1", "dbo.T2", "dbo.T3"]


def test_entity_match_puts_default_table_first():
    tables = [artifact("dbo.Customers"), artifact("dbo.Orders"), artifact("dbo.Invoices")]
    entities = [entity("Order", "DBO.ORDERS", synonyms=["order", "orders"])]

    ranked = entity_match_rank("How many orders last week?", entities, tables)
    assert [t.artifactKey for t in ranked] == ["dbo.Orders", "dbo.Customers", "dbo.Invoices"]


@pytest.mark.asyncio
async def test_ranker_prefers_entity_match():
    tables = [artifact("dbo.Customers"), artifact("dbo.Orders")]
    ranker = RetrievalRanker(
        StubStore([entity("Order", "dbo.Orders", ["orders"])]),
        FakeEmbeddingService(),
        FakeVectorStore([{"id": "table:dbo.Customers", "score": 0.9}]),
    )
    result = await ranker.rank("t1", "c1", "list orders", tables)
    assert result["strategy"] == "entity"
    assert result["tables"][0].artifactKey == "dbo.Orders"


@pytest.mark.asyncio
async def test_ranker_falls_through_to_vector_when_entities_fail():
    tables = [artifact("dbo.t1"), artifact("dbo.t2"), artifact("dbo.t3")]
    ranker = RetrievalRanker(StubStore(error=RuntimeError("catalog v2 offline")), FakeEmbeddingService(), FakeVectorStore(COLUMN_AND_TABLE_HITS))

    result = await ranker.rank("t1", "c1", "anything", tables)
    assert result["strategy"] == "vector"
    assert [t.artifactKey for t in result["tables"]] == ["dbo.t3", "dbo.t1", "dbo.t2"]


@pytest.mark.asyncio
async def test_ranker_falls_through_to_lexical_when_embeddings_fail():
    tables = [artifact("dbo.Customers"), artifact("dbo.Orders")]
    ranker = RetrievalRanker(StubStore(), FakeEmbeddingService(error=ConnectionError("down")), FakeVectorStore(COLUMN_AND_TABLE_HITS))

    result = await ranker.rank("t1", "c1", "orders by region", tables)
    assert result["strategy"] == "lexical"
    assert [t.artifactKey for t in result["tables"]] == ["dbo.Orders", "dbo.Customers"]
