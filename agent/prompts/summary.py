"""
Prompt for table summaries written during a semantic sync.
"""
import json
from typing import Any, Dict, List

SUMMARY_SYSTEM_PROMPT = (
    "You are an analytics expert describing database tables for business stakeholders. "
    "Respond with JSON only."
)


def build_summary_prompt(tables: List[Dict[str, Any]]) -> str:
    """
    ``tables`` is the compact payload: table_key, row_count and columns with
    name, data_type, nullable and up to three sample values.
    """
    payload = json.dumps({"tables": tables}, default=str)
    return (
        "For each table below write a one or two sentence description of what the table holds "
        "and up to three business questions it can answer.\n"
        "Only return entries for the table_key values provided.\n"
        'Return JSON shaped as {"tables": [{"table_key": "...", "description": "...", '
        '"business_questions": ["..."]}]}.\n\n'
        f"{payload}"
    )
