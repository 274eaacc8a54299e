from typing import Any, Dict, List, Optional
import structlog
from pydantic import ValidationError

from db.models import Connection
from services.encryption import encryption_service
from services.errors import ConfigurationError
from sql_tools.mssql import SqlConnectionConfig

logger = structlog.get_logger()

SELECTION_MODES = ("all", "include", "exclude")


def clean_table_list(values: Optional[List[Any]]) -> Optional[List[str]]:
    """Trim, drop blanks, de-duplicate case-insensitively keeping first-seen casing."""
    if not values:
        return None
    seen = set()
    cleaned: List[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        name = value.strip()
        if not name:
            continue
        folded = name.lower()
        if folded in seen:
            continue
        seen.add(folded)
        cleaned.append(name)
    return cleaned or None


def normalize_table_selection(
    mode: Optional[str],
    selected: Optional[List[Any]] = None,
    excluded: Optional[List[Any]] = None,
) -> Dict[str, Any]:
    selected_tables = clean_table_list(selected)
    excluded_tables = clean_table_list(excluded)

    if mode == "include" and selected_tables:
        return {"mode": "include", "selectedTables": selected_tables, "excludedTables": None}
    if mode == "exclude" and excluded_tables:
        return {"mode": "exclude", "selectedTables": None, "excludedTables": excluded_tables}
    if selected_tables:
        return {"mode": "include", "selectedTables": selected_tables, "excludedTables": None}
    if excluded_tables:
        return {"mode": "exclude", "selectedTables": None, "excludedTables": excluded_tables}
    return {"mode": "all", "selectedTables": None, "excludedTables": None}


def selection_for(connection: Connection) -> Dict[str, Any]:
    """Selection in the shape the introspector filters on."""
    mode = connection.tableSelectionMode or "all"
    if mode == "include":
        return {"mode": "include", "tables": connection.selectedTables or []}
    if mode == "exclude":
        return {"mode": "exclude", "tables": connection.excludedTables or []}
    return {"mode": "all", "tables": []}


def parse_connection_config(raw: Dict[str, Any]) -> SqlConnectionConfig:
    try:
        return SqlConnectionConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError("Invalid connection configuration", context={"errors": e.errors(include_url=False, include_context=False, include_input=False)}) from e


def decrypt_connection_config(connection: Connection) -> SqlConnectionConfig:
    if not connection.encryptedConfig:
        raise ConfigurationError("Connection has no stored credentials")
    return parse_connection_config(encryption_service.decrypt_json(connection.encryptedConfig))


async def create_data_source(
    store,
    tenant_id: str,
    name: str,
    config: Dict[str, Any],
    table_selection_mode: Optional[str] = None,
    selected_tables: Optional[List[Any]] = None,
    excluded_tables: Optional[List[Any]] = None,
    created_by: Optional[str] = None,
) -> Connection:
    parsed = parse_connection_config(config)
    selection = normalize_table_selection(table_selection_mode, selected_tables, excluded_tables)
    encrypted = encryption_service.encrypt_json(parsed.model_dump(by_alias=True))
    connection = await store.create_connection(tenant_id, name, encrypted, selection, created_by=created_by)
    logger.info("Data source registered", tenant_id=tenant_id, connection_id=connection.id, mode=selection["mode"])
    return connection
