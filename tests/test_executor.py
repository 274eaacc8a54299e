from decimal import Decimal

import pytest

from services.errors import ConfigurationError, QueryExecutionError, SafetyViolation, TransientIOError
from sql_tools.mssql import SqlConnectionConfig, is_transient_error
from sql_tools.sql_executor import SQLExecutor
from tests.fakes import FakeSqlSession, SQL_CONFIG, make_session_opener

CONFIG = SqlConnectionConfig(**SQL_CONFIG)


class Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.mark.asyncio
async def test_execute_wraps_statement_with_row_cap():
    session = FakeSqlSession([("SELECT", [{"region": "EU", "total": Decimal("10.50")}])])
    executor = SQLExecutor(session_opener=make_session_opener(session))

    result = await executor.execute(CONFIG, "SELECT region, SUM(total) AS total FROM dbo.Orders GROUP BY region;", max_rows=25)

    assert session.queries == [
        "SET ROWCOUNT 25; SELECT region, SUM(total) AS total FROM dbo.Orders GROUP BY region; SET ROWCOUNT 0;"
    ]
    assert result["rowCount"] == 1
    assert result["columns"] == ["region", "total"]
    assert result["rows"][0]["region"] == "EU"


@pytest.mark.asyncio
async def test_execute_refuses_mutations_before_connecting():
    session = FakeSqlSession()
    executor = SQLExecutor(session_opener=make_session_opener(session))

    with pytest.raises(SafetyViolation):
        await executor.execute(CONFIG, "UPDATE dbo.Orders SET total = 0")
    assert session.queries == []


@pytest.mark.asyncio
async def test_transient_failure_is_retried_with_backoff():
    outcomes = [TransientIOError("Connection reset by peer"), [{"n": 1}]]
    session = FakeSqlSession([("SELECT", lambda sql: outcomes.pop(0))])
    sleeps = Sleeps()
    attempts = []

    async def on_attempt(attempt, status, row_count, duration_ms, error):
        attempts.append((attempt, status, row_count))

    executor = SQLExecutor(session_opener=make_session_opener(session), attempts=3, sleep=sleeps)
    result = await executor.execute(CONFIG, "SELECT COUNT(*) AS n FROM dbo.Orders", on_attempt=on_attempt)

    assert result["rows"] == [{"n": 1}]
    assert attempts == [(1, "error", 0), (2, "success", 1)]
    assert len(sleeps.delays) == 1
    assert 0.125 <= sleeps.delays[0] <= 0.25


@pytest.mark.asyncio
async def test_retries_stop_after_max_attempts():
    session = FakeSqlSession([("SELECT", Exception(1205, b"Transaction was deadlocked"))])
    sleeps = Sleeps()
    executor = SQLExecutor(session_opener=make_session_opener(session), attempts=2, sleep=sleeps)

    with pytest.raises(TransientIOError):
        await executor.execute(CONFIG, "SELECT 1")
    assert len(session.queries) == 2
    assert len(sleeps.delays) == 1


@pytest.mark.asyncio
async def test_non_transient_failure_fails_immediately():
    session = FakeSqlSession([("SELECT", ValueError("Invalid object name 'dbo.Nope'"))])
    sleeps = Sleeps()
    executor = SQLExecutor(session_opener=make_session_opener(session), attempts=3, sleep=sleeps)

    with pytest.raises(QueryExecutionError) as excinfo:
        await executor.execute(CONFIG, "SELECT * FROM dbo.Nope")
    assert "Invalid object name" in excinfo.value.message
    assert isinstance(excinfo.value.__cause__, ValueError)
    assert len(session.queries) == 1
    assert sleeps.delays == []


@pytest.mark.asyncio
async def test_connection_test_reports_failure_without_raising():
    session = FakeSqlSession([("SELECT 1", Exception("Login failed for user 'reader'."))])
    executor = SQLExecutor(session_opener=make_session_opener(session))

    assert await executor.test_connection(CONFIG) == {"success": False, "message": "Login failed for user 'reader'."}


@pytest.mark.parametrize(
    "error, expected",
    [
        (TransientIOError("Connection reset by peer"), True),
        (ConfigurationError("Login timeout expired"), False),
        (QueryExecutionError("Invalid object name 'dbo.Missing'"), False),
        (Exception(1205, b"Transaction was deadlocked"), True),
        (ValueError("Incorrect syntax near 'FROM'"), False),
    ],
)
def test_typed_errors_are_retried_only_when_flagged_retryable(error, expected):
    assert is_transient_error(error) is expected
