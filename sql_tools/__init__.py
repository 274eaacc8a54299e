from sql_tools.mssql import SqlConnectionConfig, open_session, quote_identifier, format_table_name
from sql_tools.sql_guard import enforce_read_only
from sql_tools.schema_introspector import SchemaIntrospector
from sql_tools.column_sampler import ColumnSampler
from sql_tools.sql_executor import SQLExecutor

__all__ = [
    "SqlConnectionConfig",
    "open_session",
    "quote_identifier",
    "format_table_name",
    "enforce_read_only",
    "SchemaIntrospector",
    "ColumnSampler",
    "SQLExecutor",
]
