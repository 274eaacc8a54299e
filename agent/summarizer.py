import time
from typing import Any, Callable, Dict, List, Optional
import structlog
from langchain_core.messages import SystemMessage, HumanMessage

from agent.llm import get_summary_llm
from agent.prompts import SUMMARY_SYSTEM_PROMPT, build_summary_prompt
from agent.utils import parse_json_content
from services.config import settings

logger = structlog.get_logger()

MAX_FALLBACK_COLUMNS = 8


def fallback_summary(table: Dict[str, Any]) -> Dict[str, Any]:
    key = table["key"]
    names = [c["name"] for c in table.get("columns", [])]
    listed = ", ".join(names[:MAX_FALLBACK_COLUMNS])
    if len(names) > MAX_FALLBACK_COLUMNS:
        listed += ", ..."
    return {
        "description": f"Table {key} with {len(names)} columns ({listed}).",
        "businessQuestions": [f"What are the trends in {table['name']}?"],
    }


def summary_payload(table: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "table_key": table["key"],
        "row_count": table.get("rowCount"),
        "columns": [
            {
                "name": c["name"],
                "data_type": c.get("dataType"),
                "nullable": c.get("nullable"),
                "sample_values": (c.get("sampleValues") or [])[:3],
            }
            for c in table.get("columns", [])
        ],
    }


class TableSummarizer:
    """
    Describes tables via the language model, batch by batch.

    Never raises: a missing model, a failed call or unusable output leaves
    the affected tables with the deterministic fallback text.
    """

    def __init__(self, llm_factory: Callable[[], Any] = get_summary_llm, batch_size: int = None):
        self.llm_factory = llm_factory
        self.batch_size = max(1, batch_size or settings.semantic_summary_batch_size)
        self._llm = None

    def _get_llm(self) -> Optional[Any]:
        if self._llm is None:
            try:
                self._llm = self.llm_factory()
            except Exception as e:
                logger.warning("Summary model unavailable, using fallback descriptions", error=str(e))
                return None
        return self._llm

    async def summarize(self, tables: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        summaries = {t["key"]: fallback_summary(t) for t in tables}
        llm = self._get_llm()
        if llm is None or not tables:
            return summaries

        for i in range(0, len(tables), self.batch_size):
            batch = tables[i:i + self.batch_size]
            generated = await self._summarize_batch(llm, batch)
            for key, summary in generated.items():
                fallback = summaries[key]
                summaries[key] = {
                    "description": summary.get("description") or fallback["description"],
                    "businessQuestions": summary.get("businessQuestions") or fallback["businessQuestions"],
                }
        return summaries

    async def _summarize_batch(self, llm: Any, batch: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        allowed = {t["key"] for t in batch}
        messages = [
            SystemMessage(content=SUMMARY_SYSTEM_PROMPT),
            HumanMessage(content=build_summary_prompt([summary_payload(t) for t in batch])),
        ]
        start_time = time.time()
        try:
            response = await llm.ainvoke(messages)
        except Exception as e:
            logger.warning("Table summary call failed, using fallback", tables=len(batch), error=str(e))
            return {}

        parsed = parse_json_content(getattr(response, "content", response))
        if not parsed or not isinstance(parsed.get("tables"), list):
            logger.warning("Table summary output unusable, using fallback", tables=len(batch))
            return {}

        results: Dict[str, Dict[str, Any]] = {}
        for entry in parsed["tables"]:
            if not isinstance(entry, dict):
                continue
            key = entry.get("table_key")
            if key not in allowed:
                continue
            description = entry.get("description")
            questions = entry.get("business_questions")
            results[key] = {
                "description": description.strip() if isinstance(description, str) else None,
                "businessQuestions": [q for q in questions if isinstance(q, str) and q.strip()]
                if isinstance(questions, list) else None,
            }

        logger.info(
            "Tables summarized",
            requested=len(batch),
            summarized=len(results),
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return results
