from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from langchain_core.messages import AIMessage

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"

SQL_CONFIG = {
    "server": "sql.example.com",
    "database": "Sales",
    "user": "reader",
    "password": "s3cret!",
    "options": {"encrypt": True, "trustServerCertificate": False},
}


class FakeSqlSession:
    """
    Answers queries from ``(marker, result)`` pairs: the first marker found
    in the SQL text wins. A result may be rows, an exception or a callable.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.queries: List[str] = []

    async def query(self, sql: str, params=None) -> List[Dict[str, Any]]:
        self.queries.append(sql)
        for marker, result in self.responses:
            if marker in sql:
                if isinstance(result, BaseException):
                    raise result
                if callable(result):
                    result = result(sql)
                    if isinstance(result, BaseException):
                        raise result
                return [dict(row) for row in result]
        return []


def make_session_opener(session):
    @asynccontextmanager
    async def opener(config, timeout=None):
        yield session
    return opener


class FakeLLM:
    def __init__(self, content: str = "", parsed: Optional[Dict[str, Any]] = None, error: Exception = None):
        self.content = content
        self.parsed = parsed
        self.error = error
        self.calls = []

    async def ainvoke(self, messages):
        self.calls.append(messages)
        if self.error:
            raise self.error
        return AIMessage(content=self.content)

    def with_structured_output(self, schema, **kwargs):
        return _FakeStructured(self)


class _FakeStructured:
    def __init__(self, llm: FakeLLM):
        self.llm = llm

    async def ainvoke(self, messages):
        self.llm.calls.append(messages)
        if self.llm.error:
            raise self.llm.error
        return {"raw": AIMessage(content=self.llm.content), "parsed": self.llm.parsed, "parsing_error": None}


class FakeEmbeddingService:
    def __init__(self, fail_on: Optional[str] = None, error: Exception = None):
        self.fail_on = fail_on
        self.error = error
        self.calls: List[List[str]] = []

    @property
    def available(self) -> bool:
        return True

    async def generate_embeddings(self, texts: List[str], model: str = None) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.error:
            raise self.error
        if self.fail_on and any(self.fail_on in t for t in texts):
            raise ValueError("input rejected")
        return [[float(len(t)), 1.0] for t in texts]

    async def generate_single_embedding(self, text: str, model: str = None) -> List[float]:
        return (await self.generate_embeddings([text]))[0]


class FakeVectorStore:
    def __init__(self, hits: Optional[List[Dict[str, Any]]] = None):
        self.hits = hits or []
        self.items: Dict[str, Dict[str, Any]] = {}

    async def upsert(self, collection: str, items: List[Dict[str, Any]]) -> List[str]:
        for item in items:
            self.items[f"{collection}/{item['key']}"] = item
        return [item["key"] for item in items]

    async def search(self, collection: str, vector, top_k: int = None):
        return list(self.hits)


class FakeDispatcher:
    def __init__(self, error: Optional[str] = None):
        self.error = error
        self.dispatched = []

    async def dispatch(self, tenant_id, connection_id, run_id):
        self.dispatched.append((tenant_id, connection_id, run_id))
        return self.error


class FakeJobManager:
    def __init__(self):
        self.jobs = []

    def submit_job(self, run_id, connection_id, coro):
        # Close the coroutine so it is not reported as never awaited
        coro.close()
        self.jobs.append((run_id, connection_id))


def orders_session_responses(samples=None):
    """Catalog of one table dbo.Orders(id, total, customer)."""
    return [
        ("sys.partitions", [{"table_schema": "dbo", "table_name": "Orders", "approximate_row_count": 120}]),
        ("COLUMNPROPERTY", [
            {"table_schema": "dbo", "table_name": "Orders", "column_name": "id", "data_type": "int",
             "is_nullable": "NO", "max_length": None, "numeric_precision": 10, "numeric_scale": 0, "is_identity": 1},
            {"table_schema": "dbo", "table_name": "Orders", "column_name": "total", "data_type": "decimal",
             "is_nullable": "YES", "max_length": None, "numeric_precision": 18, "numeric_scale": 2, "is_identity": 0},
            {"table_schema": "dbo", "table_name": "Orders", "column_name": "customer", "data_type": "nvarchar",
             "is_nullable": "YES", "max_length": 100, "numeric_precision": None, "numeric_scale": None, "is_identity": 0},
        ]),
        ("sys.foreign_key_columns", []),
        ("TABLESAMPLE", samples if samples is not None else [{"value": "Acme"}, {"value": "Globex"}, {"value": "Acme"}]),
    ]



def customers_orders_session_responses():
    """dbo.Customers(id, name) and dbo.Orders(id, customer_id); FK listing only via INFORMATION_SCHEMA."""
    denied = Exception(229, b"The SELECT permission was denied on the object 'foreign_key_columns'")
    return [
        ("sys.partitions", [
            {"table_schema": "dbo", "table_name": "Customers", "approximate_row_count": 10},
            {"table_schema": "dbo", "table_name": "Orders", "approximate_row_count": 50},
        ]),
        ("COLUMNPROPERTY", [
            {"table_schema": "dbo", "table_name": "Customers", "column_name": "id", "data_type": "int",
             "is_nullable": "NO", "max_length": None, "numeric_precision": 10, "numeric_scale": 0, "is_identity": 1},
            {"table_schema": "dbo", "table_name": "Customers", "column_name": "name", "data_type": "nvarchar",
             "is_nullable": "YES", "max_length": 200, "numeric_precision": None, "numeric_scale": None, "is_identity": 0},
            {"table_schema": "dbo", "table_name": "Orders", "column_name": "id", "data_type": "int",
             "is_nullable": "NO", "max_length": None, "numeric_precision": 10, "numeric_scale": 0, "is_identity": 1},
            {"table_schema": "dbo", "table_name": "Orders", "column_name": "customer_id", "data_type": "int",
             "is_nullable": "NO", "max_length": None, "numeric_precision": 10, "numeric_scale": 0, "is_identity": 0},
        ]),
        ("sys.foreign_key_columns", denied),
        ("REFERENTIAL_CONSTRAINTS", [{
            "constraint_name": "FK_Orders_Customers",
            "source_schema": "dbo", "source_table": "Orders", "source_column": "customer_id",
            "target_schema": "dbo", "target_table": "Customers", "target_column": "id",
        }]),
        ("TABLESAMPLE", [{"value": "Acme"}]),
    ]
