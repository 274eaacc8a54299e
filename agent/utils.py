import json
from typing import Any, Dict, Optional
import structlog

logger = structlog.get_logger()


def message_text(content: Any) -> str:
    """
    Flatten LLM message content to text.

    Providers return either a plain string or a list of content blocks
    (``{"type": "text", "text": ...}`` dicts or bare strings).
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                if block.get("type") in (None, "text", "output_text") and isinstance(block.get("text"), str):
                    parts.append(block["text"])
                elif isinstance(block.get("json"), dict):
                    parts.append(json.dumps(block["json"]))
        return "".join(parts)
    return str(content)


def parse_json_content(content: Any) -> Optional[Dict[str, Any]]:
    """Robustly parse a JSON object from LLM response content"""
    if isinstance(content, dict):
        return content

    text = message_text(content).strip()
    if not text:
        return None

    # Try direct parse
    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    # Try extracting from code blocks, then from the outermost braces
    candidate = text
    if "```json" in candidate:
        candidate = candidate.split("```json")[1].split("```")[0].strip()
    elif "```" in candidate:
        candidate = candidate.split("```")[1].split("```")[0].strip()
    elif "{" in candidate and "}" in candidate:
        candidate = candidate[candidate.index("{"):candidate.rindex("}") + 1]

    try:
        parsed = json.loads(candidate)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse JSON content", error=str(e), partial_content=text[:100])
        return None


def make_json_serializable(obj: Any) -> Any:
    """Helper to convert objects like UUIDs, datetimes or Decimals to JSON serializable formats"""
    from uuid import UUID
    from datetime import datetime, date, time
    from decimal import Decimal

    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (datetime, date, time)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (bytes, bytearray)):
        return obj.hex()
    if isinstance(obj, dict):
        return {k: make_json_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [make_json_serializable(i) for i in obj]
    return obj
