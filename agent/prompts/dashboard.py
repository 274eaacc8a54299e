"""
Prompt and output schema for generating a multi-tile dashboard.
"""
from typing import Any, Dict, List

from agent.prompts.analyst import CHART_TYPES, format_table_block

DASHBOARD_SYSTEM_PROMPT = (
    "You are an analytics assistant. Produce a dashboard definition with multiple tiles "
    "for Microsoft SQL Server. Each tile has a short title, one read-only SELECT "
    "statement and a chart hint. Only use the provided tables and columns. Return JSON only."
)

DASHBOARD_SCHEMA: Dict[str, Any] = {
    "title": "dashboard",
    "description": "Dashboard with several SQL Server tiles.",
    "type": "object",
    "additionalProperties": False,
    "required": ["title", "tiles"],
    "properties": {
        "title": {"type": "string"},
        "tiles": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["title", "sql", "chart"],
                "properties": {
                    "title": {"type": "string"},
                    "sql": {"type": "string"},
                    "chart": {
                        "type": "object",
                        "additionalProperties": False,
                        "required": ["type"],
                        "properties": {"type": {"type": "string", "enum": CHART_TYPES}},
                    },
                },
            },
        },
    },
}


def build_dashboard_prompt(prompt: str, tables: List[Dict[str, Any]]) -> str:
    blocks = "\n\n".join(format_table_block(t) for t in tables)
    return f"Request: {prompt}\n\nAvailable tables:\n\n{blocks}"
