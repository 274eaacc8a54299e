"""
SQL Server session layer.

Every operation opens a short-lived session holding at most ``pool_max``
pymssql connections; the session is closed when the ``async with`` block
exits. pymssql is blocking, so statements run through ``asyncio.to_thread``.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import pymssql
import structlog
from pydantic import BaseModel, Field

from services.config import settings
from services.errors import CatalogPermissionError, ConfigurationError, RuntimeBaseError, TransientIOError

logger = structlog.get_logger()

# SQL Server / FreeTDS error numbers
TRANSIENT_ERROR_CODES = {-2, 233, 1205, 10053, 10054, 10060, 20003, 20004, 20006, 20009, 20047, 40197, 40501, 40613}
PERMISSION_ERROR_CODES = {229, 230, 262, 297, 300, 916}
LOGIN_ERROR_CODES = {4060, 18452, 18456}

TRANSIENT_SIGNATURES = (
    "timeout",
    "timed out",
    "connection reset",
    "connection was reset",
    "deadlock",
    "transport-level error",
    "connection is closed",
    "write to the server failed",
    "read from the server failed",
)


class SqlConnectionOptions(BaseModel):
    encrypt: bool = True
    trust_server_certificate: bool = Field(False, alias="trustServerCertificate")

    model_config = {"populate_by_name": True}


class SqlConnectionConfig(BaseModel):
    """Decrypted connection settings for a SQL Server target."""
    server: str
    database: str
    user: str
    password: str
    port: int = 1433
    options: SqlConnectionOptions = Field(default_factory=SqlConnectionOptions)


def quote_identifier(name: str) -> str:
    return "[" + str(name).replace("]", "]]") + "]"


def format_table_name(schema: str, table: str) -> str:
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


def extract_error_code(exc: BaseException) -> Optional[int]:
    # pymssql errors carry (number, message) in args
    for arg in getattr(exc, "args", ()):
        if isinstance(arg, int):
            return arg
        if isinstance(arg, tuple) and arg and isinstance(arg[0], int):
            return arg[0]
    return None


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, RuntimeBaseError):
        return exc.retryable
    code = extract_error_code(exc)
    if code in TRANSIENT_ERROR_CODES:
        return True
    message = str(exc).lower()
    return any(signature in message for signature in TRANSIENT_SIGNATURES)


def translate_db_error(exc: BaseException) -> Exception:
    """Map a driver exception onto the runtime error taxonomy."""
    if isinstance(exc, RuntimeBaseError):
        return exc
    code = extract_error_code(exc)
    message = str(exc)
    context = {"code": code} if code is not None else {}
    if is_transient_error(exc):
        return TransientIOError(message, context=context)
    if code in PERMISSION_ERROR_CODES or "permission was denied" in message.lower():
        return CatalogPermissionError(message, context=context)
    if code in LOGIN_ERROR_CODES or "login failed" in message.lower():
        return ConfigurationError(message, context=context)
    return exc


class SqlSession(Protocol):
    async def query(self, sql: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        ...


class MssqlSession:
    """A bounded set of pymssql connections bound to one target database."""

    def __init__(self, config: SqlConnectionConfig, timeout: int, pool_max: int = None):
        self.config = config
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(pool_max or settings.sql_pool_max)
        self._idle: List[Any] = []
        self._all: List[Any] = []
        self._closed = False

    def _connect(self):
        options = self.config.options
        if options.trust_server_certificate:
            # FreeTDS does not validate the server certificate unless a CA file is configured
            logger.debug("Trusting server certificate", server=self.config.server)
        return pymssql.connect(
            server=self.config.server,
            port=str(self.config.port),
            user=self.config.user,
            password=self.config.password,
            database=self.config.database,
            login_timeout=settings.sql_login_timeout_seconds,
            timeout=self.timeout,
            encryption="require" if options.encrypt else "off",
        )

    async def _acquire(self):
        if self._idle:
            return self._idle.pop()
        try:
            conn = await asyncio.to_thread(self._connect)
        except pymssql.Error as e:
            logger.error("SQL Server connection failed", server=self.config.server, error=str(e))
            translated = translate_db_error(e)
            if translated is e:
                raise ConfigurationError(f"DATABASE_CONNECTION_ERROR: {e}") from e
            raise translated from e
        self._all.append(conn)
        return conn

    def _release(self, conn, broken: bool):
        if broken or self._closed:
            self._discard(conn)
        else:
            self._idle.append(conn)

    def _discard(self, conn):
        if conn in self._all:
            self._all.remove(conn)
        try:
            conn.close()
        except pymssql.Error as e:
            logger.debug("Ignoring close failure", error=str(e))

    @staticmethod
    def _run(conn, sql: str, params: Optional[tuple]) -> List[Dict[str, Any]]:
        cursor = conn.cursor(as_dict=True)
        try:
            cursor.execute(sql, params)
            rows: List[Dict[str, Any]] = []
            # SET ROWCOUNT wrappers produce several result sets; keep those with columns
            while True:
                if cursor.description:
                    rows.extend(cursor.fetchall())
                if not cursor.nextset():
                    break
            return rows
        finally:
            cursor.close()

    async def query(self, sql: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        async with self._semaphore:
            conn = await self._acquire()
            broken = False
            try:
                return await asyncio.to_thread(self._run, conn, sql, params)
            except pymssql.Error as e:
                translated = translate_db_error(e)
                broken = isinstance(translated, TransientIOError)
                if translated is e:
                    raise
                raise translated from e
            finally:
                self._release(conn, broken)

    async def close(self):
        self._closed = True
        conns, self._all, self._idle = self._all, [], []
        for conn in conns:
            try:
                await asyncio.to_thread(conn.close)
            except pymssql.Error as e:
                logger.debug("Ignoring close failure", error=str(e))


@asynccontextmanager
async def open_session(config: SqlConnectionConfig, timeout: int = None) -> AsyncIterator[MssqlSession]:
    session = MssqlSession(config, timeout or settings.sql_request_timeout_seconds)
    try:
        yield session
    finally:
        await session.close()
