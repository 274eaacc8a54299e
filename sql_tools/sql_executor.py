import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional
import structlog

from agent.utils import make_json_serializable
from services.config import settings
from services.errors import QueryExecutionError, RuntimeBaseError
from sql_tools.mssql import (
    SqlConnectionConfig,
    open_session,
    extract_error_code,
    is_transient_error,
    translate_db_error,
)
from sql_tools.sql_guard import enforce_read_only

logger = structlog.get_logger()

# (attempt, status, row_count, duration_ms, error)
AttemptCallback = Callable[[int, str, int, int, Optional[str]], Awaitable[None]]


def clamp_max_rows(requested: Optional[int]) -> int:
    value = settings.query_default_max_rows if requested is None else int(requested)
    return max(1, min(value, settings.query_max_rows_cap))


def wrap_with_rowcount(sql: str, max_rows: int) -> str:
    body = sql.strip().rstrip(";").strip()
    return f"SET ROWCOUNT {int(max_rows)}; {body}; SET ROWCOUNT 0;"


class SQLExecutor:
    """
    Runs read-only statements against a SQL Server target.

    The row cap is applied by the server through SET ROWCOUNT. Transient
    failures (timeouts, resets, deadlocks) are retried with a capped,
    jittered backoff. A statement the server rejects raises
    QueryExecutionError on the first attempt.
    """

    def __init__(
        self,
        session_opener=open_session,
        attempts: int = None,
        base_delay_ms: int = None,
        max_delay_ms: int = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_opener = session_opener
        self.attempts = max(1, attempts if attempts is not None else settings.query_retry_attempts)
        self.base_delay_ms = base_delay_ms if base_delay_ms is not None else settings.query_retry_base_delay_ms
        self.max_delay_ms = max_delay_ms if max_delay_ms is not None else settings.query_retry_max_delay_ms
        self._sleep = sleep

    def _backoff_seconds(self, attempt: int) -> float:
        ceiling = min(self.max_delay_ms, self.base_delay_ms * (2 ** (attempt - 1)))
        return random.uniform(ceiling / 2, ceiling) / 1000.0

    async def execute(
        self,
        config: SqlConnectionConfig,
        sql: str,
        max_rows: Optional[int] = None,
        on_attempt: Optional[AttemptCallback] = None,
    ) -> Dict[str, Any]:
        statement = enforce_read_only(sql)
        limit = clamp_max_rows(max_rows)
        wrapped = wrap_with_rowcount(statement, limit)

        attempt = 0
        while True:
            attempt += 1
            start = time.monotonic()
            try:
                async with self.session_opener(config) as session:
                    rows = await session.query(wrapped)
            except Exception as e:
                duration_ms = int((time.monotonic() - start) * 1000)
                error = translate_db_error(e)
                if on_attempt:
                    await on_attempt(attempt, "error", 0, duration_ms, str(e))
                if is_transient_error(error) and attempt < self.attempts:
                    delay = self._backoff_seconds(attempt)
                    logger.warning(
                        "Transient query failure, retrying",
                        attempt=attempt,
                        max_attempts=self.attempts,
                        delay=round(delay, 3),
                        error=str(e),
                    )
                    await self._sleep(delay)
                    continue
                logger.error("Query execution failed", attempt=attempt, error=str(e), sql_preview=statement[:100])
                if not isinstance(error, RuntimeBaseError):
                    code = extract_error_code(e)
                    raise QueryExecutionError(str(e), context={"code": code} if code is not None else {}) from e
                if error is e:
                    raise
                raise error from e

            duration_ms = int((time.monotonic() - start) * 1000)
            results: List[Dict[str, Any]] = [make_json_serializable(dict(row)) for row in rows]
            columns = list(results[0].keys()) if results else []
            if on_attempt:
                await on_attempt(attempt, "success", len(results), duration_ms, None)

            logger.info(
                "SQL Server query executed",
                row_count=len(results),
                attempts=attempt,
                duration_ms=duration_ms,
                sql_preview=statement[:100],
            )
            return {
                "sql": statement,
                "rows": results,
                "columns": columns,
                "rowCount": len(results),
                "executionMs": duration_ms,
            }

    async def test_connection(self, config: SqlConnectionConfig) -> Dict[str, Any]:
        try:
            async with self.session_opener(config) as session:
                await session.query("SELECT 1 AS ok")
            return {"success": True, "message": "Connection successful"}
        except Exception as e:
            logger.error("Connection test failed", server=config.server, error=str(e))
            return {"success": False, "message": str(e)}
