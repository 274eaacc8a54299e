import re

from services.errors import SafetyViolation

FORBIDDEN_KEYWORDS = ["INSERT", "UPDATE", "DELETE", "MERGE", "DROP", "ALTER", "TRUNCATE", "CREATE"]

_FORBIDDEN_PATTERN = re.compile(r"\b(" + "|".join(FORBIDDEN_KEYWORDS) + r")\b", re.IGNORECASE)
_CTE_PATTERN = re.compile(r"^WITH\s+[\s\S]*?SELECT", re.IGNORECASE)
_WITH_PREFIX = re.compile(r"^WITH\s+", re.IGNORECASE)
_LEADING_MARKS = "\ufeff\u200b"


def enforce_read_only(sql: str) -> str:
    """
    Accept text that starts with SELECT or WITH ... SELECT and carries no
    mutating keyword anywhere, string literals and comments included. Only
    that keyword list is screened: a trailing batch such as
    ``SELECT 1; EXEC proc`` is not rejected.

    Returns the trimmed statement. Raises SafetyViolation otherwise.
    """
    text = (sql or "").strip()
    if not text:
        raise SafetyViolation("Query is required")

    text = text.lstrip(_LEADING_MARKS).strip()

    if _WITH_PREFIX.match(text):
        if not _CTE_PATTERN.match(text):
            raise SafetyViolation("Only SELECT queries are allowed")
    elif not text.upper().startswith("SELECT"):
        raise SafetyViolation("Only SELECT queries are allowed")

    match = _FORBIDDEN_PATTERN.search(text)
    if match:
        raise SafetyViolation(
            "Only read-only queries are allowed",
            context={"keyword": match.group(1).upper()},
        )

    return text
