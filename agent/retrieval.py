"""
Table retrieval for a natural-language question.

Strategies run in order and the first non-empty result wins:

1. entity match   catalog v2 entity name/synonym found in the question
2. vector search  top-K table+column hits, column scores summed per table
3. lexical        count of question terms found in each table's text
"""
from typing import Any, Dict, List, Optional, Sequence
import structlog

from agent.text_utils import tokenize
from services.config import settings
from services.vector_store import collection_name

logger = structlog.get_logger()


def hit_table_key(hit_id: str) -> Optional[str]:
    if hit_id.startswith("table:"):
        return hit_id[len("table:"):]
    if hit_id.startswith("column:"):
        column_key = hit_id[len("column:"):]
        if "." not in column_key:
            return None
        return column_key.rsplit(".", 1)[0]
    return None


def aggregate_table_scores(hits: Sequence[Dict[str, Any]]) -> Dict[str, float]:
    scores: Dict[str, float] = {}
    for hit in hits:
        key = hit_table_key(str(hit.get("id", "")))
        if key is None:
            continue
        scores[key] = scores.get(key, 0.0) + float(hit.get("score") or 0.0)
    return scores


def rank_tables_from_hits(hits: Sequence[Dict[str, Any]], limit: int = 5) -> List[str]:
    scores = aggregate_table_scores(hits)
    ranked = sorted((item for item in scores.items() if item[1] > 0), key=lambda item: item[1], reverse=True)
    return [key for key, _ in ranked[:limit]]


def artifact_search_text(artifact) -> str:
    payload = artifact.payload or {}
    parts = [artifact.artifactKey, payload.get("description") or ""]
    parts.extend(payload.get("businessQuestions") or [])
    parts.extend(c.get("name", "") for c in payload.get("columns") or [])
    return " ".join(parts).lower()


def lexical_rank(question: str, artifacts: Sequence[Any], limit: int = 5) -> List[Any]:
    terms = tokenize(question)
    scored = []
    for artifact in artifacts:
        text = artifact_search_text(artifact)
        scored.append((sum(1 for term in terms if term in text), artifact))
    # sorted() is stable, so ties (zero scores included) keep catalog order
    scored = sorted(scored, key=lambda item: item[0], reverse=True)
    return [artifact for _, artifact in scored[:limit]]


def entity_match_rank(question: str, entities: Sequence[Any], artifacts: Sequence[Any], limit: int = 5) -> List[Any]:
    lowered = question.lower()
    by_key = {a.artifactKey.lower(): a for a in artifacts}
    for entity in entities:
        names = [entity.name.lower(), *[s.lower() for s in (entity.synonyms or [])]]
        if not any(name and name in lowered for name in names):
            continue
        hit = by_key.get((entity.defaultTable or "").lower())
        if hit is None:
            continue
        rest = [a for a in artifacts if a is not hit]
        return [hit, *rest][:limit]
    return []


class RetrievalRanker:
    def __init__(self, store, embedding_service=None, vector_store=None, top_k: int = None, max_tables: int = None):
        self.store = store
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.top_k = top_k or settings.retrieval_top_k
        self.max_tables = max_tables or settings.retrieval_max_tables

    async def rank(self, tenant_id: str, connection_id: str, question: str, artifacts: List[Any]) -> Dict[str, Any]:
        """Returns {"strategy": name, "tables": [artifact, ...]}."""
        log = logger.bind(tenant_id=tenant_id, connection_id=connection_id)

        try:
            entities = await self.store.list_entities(tenant_id, connection_id)
            ranked = entity_match_rank(question, entities, artifacts, self.max_tables)
            if ranked:
                log.info("Tables ranked", strategy="entity", tables=[a.artifactKey for a in ranked])
                return {"strategy": "entity", "tables": ranked}
        except Exception as e:
            log.warning("Entity match failed, falling through", error=str(e))

        try:
            ranked = await self._vector_rank(tenant_id, question, artifacts)
            if ranked:
                log.info("Tables ranked", strategy="vector", tables=[a.artifactKey for a in ranked])
                return {"strategy": "vector", "tables": ranked}
        except Exception as e:
            log.warning("Vector search failed, falling through", error=str(e))

        ranked = lexical_rank(question, artifacts, self.max_tables)
        log.info("Tables ranked", strategy="lexical", tables=[a.artifactKey for a in ranked])
        return {"strategy": "lexical", "tables": ranked}

    async def _vector_rank(self, tenant_id: str, question: str, artifacts: List[Any]) -> List[Any]:
        if self.embedding_service is None or self.vector_store is None:
            return []
        if not getattr(self.embedding_service, "available", True):
            return []
        vector = await self.embedding_service.generate_single_embedding(question)
        if not vector:
            return []
        hits = await self.vector_store.search(collection_name(tenant_id), vector, self.top_k)
        by_key = {a.artifactKey.lower(): a for a in artifacts}
        ranked = []
        for key in rank_tables_from_hits(hits, limit=len(hits) or self.max_tables):
            artifact = by_key.get(key.lower())
            if artifact is not None:
                ranked.append(artifact)
            if len(ranked) >= self.max_tables:
                break
        return ranked
