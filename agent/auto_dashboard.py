import re
from typing import Any, Callable, Dict, List, Optional
import structlog
from langchain_core.messages import SystemMessage, HumanMessage

from agent.llm import get_llm
from agent.prompts import DASHBOARD_SYSTEM_PROMPT, DASHBOARD_SCHEMA, build_dashboard_prompt
from agent.utils import parse_json_content
from services.config import settings
from services.errors import CatalogNotReady, ModelOutputError, SafetyViolation
from sql_tools.sql_guard import enforce_read_only

logger = structlog.get_logger()

_WHITESPACE = re.compile(r"\s+")
_TRAILING_SEMICOLON = re.compile(r";\s*$")


def normalize_tile_sql(sql: Optional[str]) -> str:
    text = _TRAILING_SEMICOLON.sub("", (sql or "").strip())
    return _WHITESPACE.sub(" ", text).lower()


def normalize_tile_title(title: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", (title or "").strip().lower())


def dedupe_and_limit_tiles(tiles: List[Dict[str, Any]], limit: int = 8) -> List[Dict[str, Any]]:
    """Drop tiles with empty or repeated SQL or a repeated title; keep at most ``limit``."""
    seen_sql = set()
    seen_titles = set()
    out: List[Dict[str, Any]] = []
    for tile in tiles or []:
        sql_key = normalize_tile_sql(tile.get("sql"))
        title_key = normalize_tile_title(tile.get("title"))
        if not sql_key or sql_key in seen_sql or title_key in seen_titles:
            continue
        seen_sql.add(sql_key)
        seen_titles.add(title_key)
        out.append({**tile, "chart": tile.get("chart") or {"type": "table"}})
        if len(out) >= limit:
            break
    return out


class AutoDashboardBuilder:
    """
    Builds a dashboard from explicit tiles or from a prompt answered by the
    model over the connection's ranked tables. Unsafe tiles are dropped.
    """

    def __init__(self, store, ranker, llm_factory: Callable[[], Any] = get_llm, max_tiles: int = None):
        self.store = store
        self.ranker = ranker
        self.llm_factory = llm_factory
        self.max_tiles = max_tiles or settings.auto_dash_max_tiles

    async def propose_tiles(self, tenant_id: str, connection_id: str, prompt: str) -> List[Dict[str, Any]]:
        tables = await self.store.list_artifacts(tenant_id, connection_id, "table")
        if not tables:
            raise CatalogNotReady("No semantic catalog found. Run a semantic sync first.")
        ranking = await self.ranker.rank(tenant_id, connection_id, prompt, tables)
        ranked = ranking["tables"] or tables[: self.ranker.max_tables]

        llm = self.llm_factory()
        structured = llm.with_structured_output(DASHBOARD_SCHEMA, method="json_schema", include_raw=True)
        result = await structured.ainvoke([
            SystemMessage(content=DASHBOARD_SYSTEM_PROMPT),
            HumanMessage(content=build_dashboard_prompt(prompt, [
                {"artifactKey": t.artifactKey, "payload": t.payload} for t in ranked
            ])),
        ])
        parsed = result.get("parsed") if isinstance(result, dict) else None
        if not isinstance(parsed, dict):
            raw = result.get("raw") if isinstance(result, dict) else result
            parsed = parse_json_content(getattr(raw, "content", raw))
        if not isinstance(parsed, dict) or not isinstance(parsed.get("tiles"), list):
            raise ModelOutputError("Model output parse error")
        return [t for t in parsed["tiles"] if isinstance(t, dict)]

    def safe_tiles(self, tiles: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        kept = []
        for tile in dedupe_and_limit_tiles(tiles, self.max_tiles):
            try:
                tile = {**tile, "sql": enforce_read_only(tile.get("sql") or "")}
            except SafetyViolation as e:
                logger.warning("Dropping unsafe dashboard tile", title=tile.get("title"), reason=e.message)
                continue
            kept.append(tile)
        return kept

    async def build(
        self,
        tenant_id: str,
        connection_id: str,
        prompt: Optional[str] = None,
        name: Optional[str] = None,
        tiles: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        await self.store.require_connection(tenant_id, connection_id)
        candidates = tiles if tiles else await self.propose_tiles(tenant_id, connection_id, prompt or "")
        final = self.safe_tiles(candidates)

        dashboard = await self.store.create_dashboard(
            tenant_id,
            name or prompt or "Insights",
            [
                {"connectionId": connection_id, "title": t.get("title") or "Untitled", "sql": t["sql"], "chart": t["chart"]}
                for t in final
            ],
        )
        logger.info("Auto dashboard created", tenant_id=tenant_id, dashboard_id=dashboard.id, tiles=len(final))
        return {"dashboardId": dashboard.id, "tiles": len(final)}
