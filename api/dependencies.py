"""
Request-scoped providers for the HTTP layer.

Routes never reach for module state directly; everything is obtained via
``Depends`` so tests can swap any collaborator through
``app.dependency_overrides``.
"""
from functools import lru_cache

from fastapi import Depends, Request

from agent.auto_dashboard import AutoDashboardBuilder
from agent.embedding_indexer import EmbeddingIndexer
from agent.query_pipeline import QueryPipeline
from agent.retrieval import RetrievalRanker
from agent.snapshot import SnapshotBuilder
from agent.sql_generator import SQLGenerator
from agent.summarizer import TableSummarizer
from agent.sync_pipeline import SyncOrchestrator
from services.cache_service import ResultCache
from services.embedding_service import embedding_service
from services.state_store import StateStore
from services.sync_dispatcher import SyncDispatcher
from services.sync_job_manager import job_manager
from services.tile_data import TileDataService
from services.vector_store import vector_store
from sql_tools.sql_executor import SQLExecutor


@lru_cache()
def get_store() -> StateStore:
    return StateStore()


def get_result_cache(request: Request) -> ResultCache:
    return request.app.state.result_cache


def get_embedding_service():
    return embedding_service


def get_vector_store():
    return vector_store


def get_executor() -> SQLExecutor:
    return SQLExecutor()


def get_job_manager():
    return job_manager


def get_dispatcher() -> SyncDispatcher:
    return SyncDispatcher()


def get_ranker(
    store=Depends(get_store),
    embeddings=Depends(get_embedding_service),
    vectors=Depends(get_vector_store),
) -> RetrievalRanker:
    return RetrievalRanker(store, embeddings, vectors)


def get_query_pipeline(
    store=Depends(get_store),
    ranker: RetrievalRanker = Depends(get_ranker),
    executor: SQLExecutor = Depends(get_executor),
) -> QueryPipeline:
    return QueryPipeline(store, ranker, SQLGenerator(), executor)


def get_orchestrator(
    store=Depends(get_store),
    cache: ResultCache = Depends(get_result_cache),
    embeddings=Depends(get_embedding_service),
    vectors=Depends(get_vector_store),
) -> SyncOrchestrator:
    snapshot_builder = SnapshotBuilder(TableSummarizer(), EmbeddingIndexer(embeddings, vectors))
    return SyncOrchestrator(store, snapshot_builder, result_cache=cache)


def get_tile_service(
    store=Depends(get_store),
    executor: SQLExecutor = Depends(get_executor),
    cache: ResultCache = Depends(get_result_cache),
) -> TileDataService:
    return TileDataService(store, executor, cache)


def get_auto_dashboard_builder(
    store=Depends(get_store),
    ranker: RetrievalRanker = Depends(get_ranker),
) -> AutoDashboardBuilder:
    return AutoDashboardBuilder(store, ranker)
