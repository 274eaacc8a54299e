from agent.prompts.summary import SUMMARY_SYSTEM_PROMPT, build_summary_prompt
from agent.prompts.analyst import (
    ANALYST_SYSTEM_PROMPT,
    RESPONSE_SCHEMA,
    CHART_TYPES,
    build_analyst_prompt
)
from agent.prompts.dashboard import DASHBOARD_SYSTEM_PROMPT, DASHBOARD_SCHEMA, build_dashboard_prompt

__all__ = [
    "SUMMARY_SYSTEM_PROMPT",
    "ANALYST_SYSTEM_PROMPT",
    "DASHBOARD_SYSTEM_PROMPT",
    "RESPONSE_SCHEMA",
    "DASHBOARD_SCHEMA",
    "CHART_TYPES",
    "build_summary_prompt",
    "build_analyst_prompt",
    "build_dashboard_prompt"
]
