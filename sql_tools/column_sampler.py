import asyncio
import random
from typing import Any, Dict, List, Optional
import structlog

from sql_tools.mssql import SqlSession, format_table_name, quote_identifier, is_transient_error
from services.config import settings

logger = structlog.get_logger()

SAMPLEABLE_TYPES = {"char", "nchar", "varchar", "nvarchar", "text", "ntext", "uniqueidentifier"}
LARGE_OBJECT_TYPES = {"text", "ntext"}
MAX_VALUE_LENGTH = 200


def should_sample_column(column: Dict[str, Any]) -> bool:
    data_type = (column.get("dataType") or "").lower()
    if data_type not in SAMPLEABLE_TYPES:
        return False
    if data_type in LARGE_OBJECT_TYPES:
        return False
    # varchar(max) / nvarchar(max) report -1
    return column.get("maxLength") != -1


class ColumnSampler:
    """
    Collects a few distinct values for text-like columns.

    Two strategies per column: a TABLESAMPLE bounded scan deduplicated
    client-side, then a grouped TOP query hinted with OPTION (FAST n).
    Each gets one retry on transient errors. A column where both fail is
    left without samples.
    """

    def __init__(
        self,
        session: SqlSession,
        max_columns: int = None,
        max_values: int = None,
        sample_rows: int = None,
        max_table_rows: int = None,
        retry_delay: float = 0.5,
    ):
        self.session = session
        self.max_columns = max_columns if max_columns is not None else settings.semantic_sample_columns
        self.max_values = max_values if max_values is not None else settings.semantic_sample_values
        self.sample_rows = sample_rows if sample_rows is not None else settings.semantic_sample_rows
        self.max_table_rows = max_table_rows if max_table_rows is not None else settings.semantic_sample_max_table_rows
        self.retry_delay = retry_delay

    def candidate_columns(self, table: Dict[str, Any]) -> List[Dict[str, Any]]:
        if self.max_columns <= 0 or self.max_values <= 0:
            return []
        row_count = table.get("rowCount")
        if self.max_table_rows and row_count is not None and row_count > self.max_table_rows:
            logger.info(
                "Skipping sampling for large table",
                table=f"{table['schema']}.{table['name']}",
                row_count=row_count,
                threshold=self.max_table_rows,
            )
            return []
        return [c for c in table.get("columns", []) if should_sample_column(c)][:self.max_columns]

    async def sample_table(self, table: Dict[str, Any]) -> Dict[str, List[str]]:
        """Returns {column name: [values]} for the columns that produced samples."""
        samples: Dict[str, List[str]] = {}
        # Sequential on purpose: the session holds at most two connections
        for column in self.candidate_columns(table):
            values = await self.sample_column(table["schema"], table["name"], column["name"])
            if values:
                samples[column["name"]] = values
        return samples

    async def sample_column(self, schema: str, table: str, column: str) -> Optional[List[str]]:
        strategies = (
            ("tablesample", self._tablesample_sql(schema, table, column)),
            ("fast_top", self._fast_top_sql(schema, table, column)),
        )
        for name, sql in strategies:
            try:
                rows = await self._run_with_retry(sql)
            except Exception as e:
                logger.warning(
                    "Column sampling strategy failed",
                    strategy=name,
                    table=f"{schema}.{table}",
                    column=column,
                    error=str(e),
                )
                continue
            values = self._distinct_values(rows)
            if values:
                return values
        return None

    async def _run_with_retry(self, sql: str) -> List[Dict[str, Any]]:
        try:
            return await self.session.query(sql)
        except Exception as e:
            if not is_transient_error(e):
                raise
            delay = min(self.retry_delay * (1 + random.random()), 2.0)
            logger.info("Transient sampling error, retrying once", delay=round(delay, 2), error=str(e))
            await asyncio.sleep(delay)
            return await self.session.query(sql)

    def _distinct_values(self, rows: List[Dict[str, Any]]) -> List[str]:
        seen = set()
        values: List[str] = []
        for row in rows:
            value = row.get("value")
            if value is None:
                continue
            text = str(value)[:MAX_VALUE_LENGTH]
            if text in seen:
                continue
            seen.add(text)
            values.append(text)
            if len(values) >= self.max_values:
                break
        return values

    def _tablesample_sql(self, schema: str, table: str, column: str) -> str:
        col = quote_identifier(column)
        return (
            f"SELECT TOP ({self.max_values * 20}) {col} AS value "
            f"FROM {format_table_name(schema, table)} TABLESAMPLE SYSTEM ({self.sample_rows} ROWS) "
            f"WHERE {col} IS NOT NULL"
        )

    def _fast_top_sql(self, schema: str, table: str, column: str) -> str:
        col = quote_identifier(column)
        return (
            f"SELECT TOP ({self.max_values}) {col} AS value "
            f"FROM {format_table_name(schema, table)} "
            f"WHERE {col} IS NOT NULL GROUP BY {col} ORDER BY COUNT(*) DESC "
            f"OPTION (FAST {self.max_values})"
        )
