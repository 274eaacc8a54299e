import time
from typing import Any, Callable, Dict, List
import structlog
from langchain_core.messages import SystemMessage, HumanMessage

from agent.llm import get_llm
from agent.prompts import ANALYST_SYSTEM_PROMPT, RESPONSE_SCHEMA, CHART_TYPES, build_analyst_prompt
from agent.utils import parse_json_content
from services.errors import ModelOutputError

logger = structlog.get_logger()


def normalize_chart(chart: Any) -> Dict[str, Any]:
    if not isinstance(chart, dict) or chart.get("type") not in CHART_TYPES:
        return {"type": "table", "x": None, "y": [], "grouping": None, "options": {}}
    y = chart.get("y")
    if isinstance(y, str):
        y = [y]
    return {
        "type": chart["type"],
        "x": chart.get("x") if isinstance(chart.get("x"), str) else None,
        "y": [v for v in (y or []) if isinstance(v, str)],
        "grouping": chart.get("grouping") if isinstance(chart.get("grouping"), str) else None,
        "options": chart.get("options") if isinstance(chart.get("options"), dict) else {},
    }


class SQLGenerator:
    """
    Grounded SQL generation. Asks for schema-constrained JSON and parses it
    from either the structured result or the raw message content.
    """

    def __init__(self, llm_factory: Callable[[], Any] = get_llm):
        self.llm_factory = llm_factory

    async def generate(self, question: str, tables: List[Any]) -> Dict[str, Any]:
        llm = self.llm_factory()
        messages = [
            SystemMessage(content=ANALYST_SYSTEM_PROMPT),
            HumanMessage(content=build_analyst_prompt(question, [
                {"artifactKey": t.artifactKey, "payload": t.payload} for t in tables
            ])),
        ]

        start_time = time.time()
        structured = llm.with_structured_output(RESPONSE_SCHEMA, method="json_schema", include_raw=True)
        result = await structured.ainvoke(messages)

        parsed = result.get("parsed") if isinstance(result, dict) else None
        if not isinstance(parsed, dict):
            raw = result.get("raw") if isinstance(result, dict) else result
            parsed = parse_json_content(getattr(raw, "content", raw))

        sql = parsed.get("sql") if isinstance(parsed, dict) else None
        if not isinstance(sql, str) or not sql.strip():
            logger.error("Model output could not be parsed", question=question[:80])
            raise ModelOutputError("Could not understand the model output. Please try rephrasing the question.")

        follow_ups = parsed.get("follow_up_questions") or []
        generated = {
            "sql": sql.strip(),
            "rationale": parsed.get("rationale") if isinstance(parsed.get("rationale"), str) else "",
            "chart": normalize_chart(parsed.get("chart")),
            "followUpQuestions": [q for q in follow_ups if isinstance(q, str)] if isinstance(follow_ups, list) else [],
        }
        logger.info(
            "SQL generated",
            tables=[t.artifactKey for t in tables],
            duration_ms=int((time.time() - start_time) * 1000),
            sql_preview=generated["sql"][:100],
        )
        return generated
