"""
Audit Service for query attempts.
Every execution attempt of an ask request lands in query_audits, whether it
succeeded or not. Admission control and stakeholder metrics read from here.
"""
import csv
import io
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import structlog

from db.models import QueryAudit

logger = structlog.get_logger()

# Sensitive terms scrubbed from error text before it is stored
SENSITIVE_TERMS = ("password=", "pwd=", "api_key=", "secret=")


def scrub_error(error: Optional[str]) -> Optional[str]:
    if not error:
        return error
    lowered = error.lower()
    for term in SENSITIVE_TERMS:
        idx = lowered.find(term)
        if idx != -1:
            return error[:idx] + term + "***"
    return error[:2000]


class AuditService:
    """Writes query audit rows through the state store."""

    def __init__(self, store):
        self.store = store

    async def record(
        self,
        tenant_id: str,
        connection_id: str,
        user_id: Optional[str],
        question: str,
        sql: Optional[str],
        status: str,
        row_count: Optional[int] = None,
        duration_ms: Optional[int] = None,
        error: Optional[str] = None,
    ) -> Optional[QueryAudit]:
        """
        Persist one attempt. Returns the row, or None when the write failed;
        a failed audit write is logged and never fails the user request.
        """
        try:
            audit = await self.store.insert_audit(
                tenantId=tenant_id,
                connectionId=connection_id,
                userId=user_id,
                question=question,
                sql=sql,
                status=status,
                rowCount=row_count,
                durationMs=duration_ms,
                error=scrub_error(error),
            )
            logger.info(
                "Query audit recorded",
                tenant_id=tenant_id,
                connection_id=connection_id,
                status=status,
                row_count=row_count,
                duration_ms=duration_ms,
            )
            return audit
        except Exception as e:
            logger.error("Failed to record query audit", tenant_id=tenant_id, error=str(e))
            return None


# Long opaque runs (tokens, keys, connection strings) are shortened on export
_LONG_TOKEN = re.compile(r"[A-Za-z0-9_\-]{24,}")

AUDIT_CSV_COLUMNS = ["createdAt", "userId", "connectionId", "question", "sql", "rowCount", "durationMs", "status", "error"]


def mask_long_tokens(text: Optional[str]) -> str:
    if not text:
        return ""
    return _LONG_TOKEN.sub(lambda m: f"{m.group(0)[:4]}…{m.group(0)[-4:]}", text)


def audit_to_dict(audit: QueryAudit) -> Dict[str, Any]:
    return {
        "id": audit.id,
        "createdAt": audit.createdAt,
        "userId": audit.userId,
        "connectionId": audit.connectionId,
        "question": audit.question,
        "sql": audit.sql,
        "rowCount": audit.rowCount or 0,
        "durationMs": audit.durationMs or 0,
        "status": audit.status,
        "error": audit.error,
    }


def audits_to_csv(audits: List[QueryAudit]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(AUDIT_CSV_COLUMNS)
    for audit in audits:
        created = datetime.fromtimestamp(audit.createdAt / 1000, tz=timezone.utc)
        writer.writerow([
            created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            mask_long_tokens(audit.userId),
            audit.connectionId or "",
            mask_long_tokens(audit.question),
            mask_long_tokens(audit.sql),
            audit.rowCount or 0,
            audit.durationMs or 0,
            audit.status,
            mask_long_tokens(audit.error),
        ])
    return buffer.getvalue()
