import pytest

from services.errors import SafetyViolation
from sql_tools.mssql import quote_identifier, format_table_name
from sql_tools.sql_executor import clamp_max_rows, wrap_with_rowcount
from sql_tools.sql_guard import enforce_read_only


@pytest.mark.parametrize("sql", [
    "SELECT 1",
    "  select * from [dbo].[Orders]  ",
    "WITH t AS (SELECT 1 AS x) SELECT x FROM t",
    "\ufeffSELECT name FROM sys.tables",
    "SELECT created_at, updated_by FROM audit",
])
def test_accepts_read_only_statements(sql):
    assert enforce_read_only(sql) == sql.strip().lstrip("\ufeff\u200b")


@pytest.mark.parametrize("sql", [
    "DELETE FROM Orders",
    "SELECT 1; DROP TABLE Orders",
    "WITH t AS (SELECT 1 AS x) INSERT INTO Orders SELECT x FROM t",
    "select * from Orders; update Orders set total = 0",
    "SELECT 1; merge into t using s on 1=1 when matched then delete;",
    "SELECT * INTO #tmp FROM Orders; TRUNCATE TABLE Orders",
    "SELECT 1 create",
    "SELECT 'drop' AS word",
    "SELECT 1 -- delete later",
])
def test_rejects_mutating_keywords(sql):
    with pytest.raises(SafetyViolation):
        enforce_read_only(sql)


@pytest.mark.parametrize("sql", ["", "   ", "EXEC sp_who", "WITH t AS (VALUES (1))", "UPDATE x SET y = 1"])
def test_rejects_non_select(sql):
    with pytest.raises(SafetyViolation):
        enforce_read_only(sql)


def test_quote_identifier_escapes_closing_bracket():
    assert quote_identifier("A]B") == "[A]]B]"
    assert format_table_name("dbo", "Orders") == "[dbo].[Orders]"


def test_row_cap_wraps_statement():
    assert wrap_with_rowcount("SELECT * FROM t;", 50) == "SET ROWCOUNT 50; SELECT * FROM t; SET ROWCOUNT 0;"


@pytest.mark.parametrize("requested,expected", [(None, 5000), (0, 1), (-5, 1), (100, 100), (50000, 20000)])
def test_clamp_max_rows(requested, expected):
    assert clamp_max_rows(requested) == expected
