import re
from typing import Any, Dict, List, Optional
import structlog

from agent.text_utils import singularize, pluralize, title_case

logger = structlog.get_logger()

_ID_COLUMN = re.compile(r"(^|_)(id|pk)$", re.IGNORECASE)
_STRIPPED_PREFIXES = ("can_",)


def entity_name(table_name: str) -> str:
    base = table_name
    for prefix in _STRIPPED_PREFIXES:
        if base.lower().startswith(prefix) and len(base) > len(prefix):
            base = base[len(prefix):]
    return title_case(singularize(base))


def guess_id_column(columns: List[Dict[str, Any]]) -> Optional[str]:
    for col in columns:
        if col.get("isIdentity"):
            return col["name"]
    for col in columns:
        if _ID_COLUMN.search(col["name"]):
            return col["name"]
    return None


class CatalogV2Builder:
    """
    Heuristic entity / attribute / relationship layer over a snapshot.

    One entity per table, one attribute per column, one ``fk`` edge per
    foreign key column pair.
    """

    def derive(self, tables: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        entities: Dict[str, Dict[str, Any]] = {}
        attributes: List[Dict[str, Any]] = []
        edges: Dict[tuple, Dict[str, Any]] = {}

        for table in tables:
            name = entity_name(table["name"])
            key = f"Entity:{name}"
            if key in entities:
                # Same singular name in two schemas; qualify the second one
                name = title_case(f"{table['schema']}_{name}")
                key = f"Entity:{name}"
            lower = name.lower()
            entities[key] = {
                "entityKey": key,
                "name": name,
                "defaultTable": table["key"],
                "idColumn": guess_id_column(table.get("columns", [])),
                "synonyms": sorted({lower, pluralize(lower)}),
            }
            for col in table.get("columns", []):
                attributes.append({
                    "entityKey": key,
                    "name": col["name"],
                    "sourceTable": table["key"],
                    "sourceColumn": col["name"],
                    "dataType": col.get("dataType"),
                    "synonyms": sorted({col["name"].replace("_", " ").lower()}),
                })
            for fk in table.get("foreignKeys", []):
                edge = {
                    "sourceTable": f"{fk['sourceSchema']}.{fk['sourceTable']}",
                    "sourceColumn": fk["sourceColumn"],
                    "targetTable": f"{fk['targetSchema']}.{fk['targetTable']}",
                    "targetColumn": fk["targetColumn"],
                    "kind": "fk",
                    "weight": 1.0,
                }
                edges[(edge["sourceTable"], edge["targetTable"], edge["sourceColumn"])] = edge

        return {"entities": list(entities.values()), "attributes": attributes, "edges": list(edges.values())}


class CatalogV2Writer:
    """Optional post-processing step; callers treat its failure as non-fatal."""

    def __init__(self, store, builder: CatalogV2Builder = None):
        self.store = store
        self.builder = builder or CatalogV2Builder()

    async def write(self, tenant_id: str, connection_id: str, tables: List[Dict[str, Any]]) -> Dict[str, int]:
        derived = self.builder.derive(tables)
        counts = await self.store.replace_catalog_v2(
            tenant_id,
            connection_id,
            derived["entities"],
            derived["attributes"],
            derived["edges"],
        )
        logger.info("Catalog v2 written", tenant_id=tenant_id, connection_id=connection_id, **counts)
        return counts
