"""
Prompt and output schema for question -> SQL Server query generation.
"""
from typing import Any, Dict, List

ANALYST_SYSTEM_PROMPT = (
    "You are an expert data analyst generating Microsoft SQL Server queries. "
    "Only use provided tables and columns. Return JSON only.\n"
    "- Produce a single read-only SELECT statement (a WITH ... SELECT is allowed).\n"
    "- Quote identifiers with square brackets, e.g. [dbo].[Orders].\n"
    "- Use TOP instead of LIMIT.\n"
    "- Never emit INSERT, UPDATE, DELETE, MERGE, DROP, ALTER, TRUNCATE or CREATE."
)

CHART_TYPES = ["table", "line", "bar", "area", "pie", "number"]

RESPONSE_SCHEMA: Dict[str, Any] = {
    "title": "analyst_response",
    "description": "SQL Server query answering the question, with a chart hint.",
    "type": "object",
    "additionalProperties": False,
    "required": ["sql", "rationale", "chart", "follow_up_questions"],
    "properties": {
        "sql": {"type": "string"},
        "rationale": {"type": "string"},
        "chart": {
            "type": "object",
            "additionalProperties": False,
            "required": ["type", "x", "y", "grouping", "options"],
            "properties": {
                "type": {"type": "string", "enum": CHART_TYPES},
                "x": {"type": ["string", "null"]},
                "y": {"type": "array", "items": {"type": "string"}},
                "grouping": {"type": ["string", "null"]},
                "options": {"type": "object", "additionalProperties": False, "properties": {}},
            },
        },
        "follow_up_questions": {"type": "array", "items": {"type": "string"}},
    },
}


def format_table_block(table: Dict[str, Any]) -> str:
    payload = table.get("payload") or {}
    lines = [f"Table {table['artifactKey']}"]
    if payload.get("description"):
        lines.append(f"Description: {payload['description']}")
    row_count = payload.get("rowCount")
    lines.append(f"Approximate rows: {row_count if row_count is not None else 'unknown'}")
    lines.append("Columns:")
    for col in payload.get("columns") or []:
        entry = f"- {col.get('name')} ({col.get('dataType')})"
        samples = [str(v) for v in (col.get("sampleValues") or [])[:3]]
        if samples:
            entry += f" e.g. {', '.join(samples)}"
        lines.append(entry)
    return "\n".join(lines)


def build_analyst_prompt(question: str, tables: List[Dict[str, Any]]) -> str:
    blocks = "\n\n".join(format_table_block(t) for t in tables)
    return (
        f"Question: {question}\n\n"
        f"Available tables:\n{blocks}\n\n"
        "Return JSON with keys sql, rationale, optional chart, and follow_up_questions."
    )
