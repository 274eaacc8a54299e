from typing import Dict, Any, List, Optional
import structlog

from sql_tools.mssql import SqlSession, translate_db_error
from services.errors import ConfigurationError

logger = structlog.get_logger()


TABLES_EXTENDED_SQL = """
    SELECT
        t.TABLE_SCHEMA AS table_schema,
        t.TABLE_NAME AS table_name,
        SUM(p.rows) AS approximate_row_count
    FROM INFORMATION_SCHEMA.TABLES t
    LEFT JOIN sys.objects o
        ON o.name = t.TABLE_NAME AND SCHEMA_NAME(o.schema_id) = t.TABLE_SCHEMA
    LEFT JOIN sys.partitions p
        ON p.object_id = o.object_id AND p.index_id IN (0, 1)
    WHERE t.TABLE_TYPE = 'BASE TABLE'
    GROUP BY t.TABLE_SCHEMA, t.TABLE_NAME
    ORDER BY t.TABLE_SCHEMA, t.TABLE_NAME
"""

TABLES_BASIC_SQL = """
    SELECT
        TABLE_SCHEMA AS table_schema,
        TABLE_NAME AS table_name
    FROM INFORMATION_SCHEMA.TABLES
    WHERE TABLE_TYPE = 'BASE TABLE'
    ORDER BY TABLE_SCHEMA, TABLE_NAME
"""

COLUMNS_EXTENDED_SQL = """
    SELECT
        c.TABLE_SCHEMA AS table_schema,
        c.TABLE_NAME AS table_name,
        c.COLUMN_NAME AS column_name,
        c.DATA_TYPE AS data_type,
        c.IS_NULLABLE AS is_nullable,
        c.CHARACTER_MAXIMUM_LENGTH AS max_length,
        c.NUMERIC_PRECISION AS numeric_precision,
        c.NUMERIC_SCALE AS numeric_scale,
        COLUMNPROPERTY(OBJECT_ID(QUOTENAME(c.TABLE_SCHEMA) + '.' + QUOTENAME(c.TABLE_NAME)), c.COLUMN_NAME, 'IsIdentity') AS is_identity
    FROM INFORMATION_SCHEMA.COLUMNS c
    ORDER BY c.TABLE_SCHEMA, c.TABLE_NAME, c.ORDINAL_POSITION
"""

COLUMNS_BASIC_SQL = """
    SELECT
        TABLE_SCHEMA AS table_schema,
        TABLE_NAME AS table_name,
        COLUMN_NAME AS column_name,
        DATA_TYPE AS data_type,
        IS_NULLABLE AS is_nullable,
        CHARACTER_MAXIMUM_LENGTH AS max_length,
        NUMERIC_PRECISION AS numeric_precision,
        NUMERIC_SCALE AS numeric_scale
    FROM INFORMATION_SCHEMA.COLUMNS
    ORDER BY TABLE_SCHEMA, TABLE_NAME, ORDINAL_POSITION
"""

FOREIGN_KEYS_EXTENDED_SQL = """
    SELECT
        fk.name AS constraint_name,
        sch_src.name AS source_schema,
        tab_src.name AS source_table,
        col_src.name AS source_column,
        sch_tgt.name AS target_schema,
        tab_tgt.name AS target_table,
        col_tgt.name AS target_column
    FROM sys.foreign_key_columns fkc
    INNER JOIN sys.foreign_keys fk ON fk.object_id = fkc.constraint_object_id
    INNER JOIN sys.tables tab_src ON tab_src.object_id = fkc.parent_object_id
    INNER JOIN sys.schemas sch_src ON sch_src.schema_id = tab_src.schema_id
    INNER JOIN sys.columns col_src
        ON col_src.object_id = fkc.parent_object_id AND col_src.column_id = fkc.parent_column_id
    INNER JOIN sys.tables tab_tgt ON tab_tgt.object_id = fkc.referenced_object_id
    INNER JOIN sys.schemas sch_tgt ON sch_tgt.schema_id = tab_tgt.schema_id
    INNER JOIN sys.columns col_tgt
        ON col_tgt.object_id = fkc.referenced_object_id AND col_tgt.column_id = fkc.referenced_column_id
    ORDER BY sch_src.name, tab_src.name, fk.name, fkc.constraint_column_id
"""

FOREIGN_KEYS_BASIC_SQL = """
    SELECT
        rc.CONSTRAINT_NAME AS constraint_name,
        kcu_src.TABLE_SCHEMA AS source_schema,
        kcu_src.TABLE_NAME AS source_table,
        kcu_src.COLUMN_NAME AS source_column,
        kcu_tgt.TABLE_SCHEMA AS target_schema,
        kcu_tgt.TABLE_NAME AS target_table,
        kcu_tgt.COLUMN_NAME AS target_column
    FROM INFORMATION_SCHEMA.REFERENTIAL_CONSTRAINTS rc
    INNER JOIN INFORMATION_SCHEMA.KEY_COLUMN_USAGE kcu_src
        ON kcu_src.CONSTRAINT_SCHEMA = rc.CONSTRAINT_SCHEMA
        AND kcu_src.CONSTRAINT_NAME = rc.CONSTRAINT_NAME
    INNER JOIN INFORMATION_SCHEMA.KEY_COLUMN_USAGE kcu_tgt
        ON kcu_tgt.CONSTRAINT_SCHEMA = rc.UNIQUE_CONSTRAINT_SCHEMA
        AND kcu_tgt.CONSTRAINT_NAME = rc.UNIQUE_CONSTRAINT_NAME
        AND kcu_tgt.ORDINAL_POSITION = kcu_src.ORDINAL_POSITION
    ORDER BY kcu_src.TABLE_SCHEMA, kcu_src.TABLE_NAME, rc.CONSTRAINT_NAME, kcu_src.ORDINAL_POSITION
"""


def table_key(schema: str, name: str) -> str:
    return f"{schema}.{name}"


def _raise_if_fatal(exc: Exception):
    # Bad credentials are not a catalog permission problem; no fallback helps
    if isinstance(exc, ConfigurationError):
        raise exc
    error = translate_db_error(exc)
    if isinstance(error, ConfigurationError):
        raise error from exc


def _to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class SchemaIntrospector:
    """
    Lists tables, columns and foreign keys of a SQL Server database.

    Each of the three catalog reads first tries the sys.* views (row counts,
    identity flags, FK details) and falls back on its own to
    INFORMATION_SCHEMA when the login cannot read them.
    """

    def __init__(self, session: SqlSession):
        self.session = session

    async def introspect(self, selection: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        tables = await self._load_tables()
        tables = filter_tables(tables, selection)
        wanted = {table_key(t["schema"], t["name"]).lower() for t in tables}

        columns = await self._load_columns()
        by_table: Dict[str, List[Dict[str, Any]]] = {}
        for col in columns:
            key = table_key(col.pop("schema"), col.pop("table")).lower()
            if key in wanted:
                by_table.setdefault(key, []).append(col)

        foreign_keys = await self._load_foreign_keys()
        fks_by_table: Dict[str, List[Dict[str, Any]]] = {}
        for fk in foreign_keys:
            key = table_key(fk["sourceSchema"], fk["sourceTable"]).lower()
            if key in wanted:
                fks_by_table.setdefault(key, []).append(fk)

        for t in tables:
            key = table_key(t["schema"], t["name"]).lower()
            t["columns"] = by_table.get(key, [])
            t["foreignKeys"] = fks_by_table.get(key, [])

        logger.info(
            "Schema introspected",
            tables=len(tables),
            columns=sum(len(t["columns"]) for t in tables),
            foreign_keys=sum(len(t["foreignKeys"]) for t in tables),
        )
        return {"tables": tables}

    async def _query_with_fallback(self, label: str, primary: str, fallback: str):
        """Run ``primary``; on failure run ``fallback``. Returns (rows, extended)."""
        try:
            return await self.session.query(primary), True
        except Exception as e:
            _raise_if_fatal(e)
            logger.warning("Extended catalog query failed, using INFORMATION_SCHEMA", query=label, error=str(e))
        return await self.session.query(fallback), False

    async def _load_tables(self) -> List[Dict[str, Any]]:
        rows, extended = await self._query_with_fallback("tables", TABLES_EXTENDED_SQL, TABLES_BASIC_SQL)
        return [
            {
                "schema": row["table_schema"],
                "name": row["table_name"],
                "rowCount": _to_int(row.get("approximate_row_count")) if extended else None,
            }
            for row in rows
        ]

    async def _load_columns(self) -> List[Dict[str, Any]]:
        rows, extended = await self._query_with_fallback("columns", COLUMNS_EXTENDED_SQL, COLUMNS_BASIC_SQL)
        columns = []
        for row in rows:
            identity = _to_int(row.get("is_identity")) if extended else None
            columns.append({
                "schema": row["table_schema"],
                "table": row["table_name"],
                "name": row["column_name"],
                "dataType": str(row["data_type"]).lower(),
                "nullable": str(row.get("is_nullable", "YES")).upper() == "YES",
                "maxLength": _to_int(row.get("max_length")),
                "precision": _to_int(row.get("numeric_precision")),
                "scale": _to_int(row.get("numeric_scale")),
                "isIdentity": None if identity is None else identity == 1,
            })
        return columns

    async def _load_foreign_keys(self) -> List[Dict[str, Any]]:
        try:
            rows = await self.session.query(FOREIGN_KEYS_EXTENDED_SQL)
        except Exception as e:
            _raise_if_fatal(e)
            logger.warning("Extended foreign key listing failed, using INFORMATION_SCHEMA", error=str(e))
            try:
                rows = await self.session.query(FOREIGN_KEYS_BASIC_SQL)
            except Exception as fallback_error:
                logger.warning("Foreign key fallback failed, continuing without relationships", error=str(fallback_error))
                return []

        return [
            {
                "constraint": row.get("constraint_name"),
                "sourceSchema": row["source_schema"],
                "sourceTable": row["source_table"],
                "sourceColumn": row["source_column"],
                "targetSchema": row["target_schema"],
                "targetTable": row["target_table"],
                "targetColumn": row["target_column"],
            }
            for row in rows
        ]


def filter_tables(tables: List[Dict[str, Any]], selection: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Apply an include/exclude table selection. Names match ``schema.table`` or bare ``table``."""
    if not selection:
        return tables
    mode = selection.get("mode", "all")
    names = selection.get("tables") or []
    if mode == "all" or not names:
        return tables

    wanted = {n.lower() for n in names}

    def matches(t: Dict[str, Any]) -> bool:
        return table_key(t["schema"], t["name"]).lower() in wanted or t["name"].lower() in wanted

    if mode == "include":
        return [t for t in tables if matches(t)]
    return [t for t in tables if not matches(t)]
