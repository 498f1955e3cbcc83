import logging
import sqlite3
from typing import Any, Dict, List, Optional

from . import catalog
from .catalog import quote_ident
from .errors import NotFound

logger = logging.getLogger(__name__)

# Which related-table domains each caller domain may resolve into
ALLOWED_RELATIONS = {
    "provider_": ("provider_",),
    "inscription_": ("inscription_",),
    "pi_": ("pi_", "inscription_", "provider_"),
}

LABEL_FIELDS = ("nombre", "name", "title", "descripcion", "Estado")


def domain_of(table: str) -> Optional[str]:
    for prefix in ALLOWED_RELATIONS:
        if table.startswith(prefix):
            return prefix
    return None


def relation_allowed(table: str, related_table: str) -> bool:
    domain = domain_of(table)
    if domain is None:
        return False
    return related_table.startswith(ALLOWED_RELATIONS[domain])


def display_options(con: sqlite3.Connection, related_table: str) -> List[Dict[str, Any]]:
    schema = catalog.describe_table(con, related_table)
    display = schema.display_column()
    rows = con.execute(
        f"SELECT {quote_ident('id')} AS id, {quote_ident(display)} AS display_value "
        f"FROM {quote_ident(schema.name)} ORDER BY id"
    ).fetchall()
    return [{"id": r["id"], "displayValue": r["display_value"]} for r in rows]


def related_data(con: sqlite3.Connection, table: str) -> Dict[str, List[Dict[str, Any]]]:
    """Candidate ``{id, displayValue}`` lists for every foreign key of ``table``.

    Relations leaving the caller's domain are skipped. Related tables are
    expected to be small lookup sets, so every row is returned.
    """
    out: Dict[str, List[Dict[str, Any]]] = {}
    for fk in catalog.describe_foreign_keys(con, table):
        if not relation_allowed(table, fk.related_table):
            logger.warning(
                "Tabla relacionada %s fuera del dominio de %s, ignorada", fk.related_table, table
            )
            continue
        out[fk.column] = display_options(con, fk.related_table)
    return out


def _label(row: Dict[str, Any]) -> Any:
    for key in LABEL_FIELDS:
        if row.get(key):
            return row[key]
    return str(row["id"])


def field_options(con: sqlite3.Connection, table: str, field: str) -> List[Dict[str, Any]]:
    schema = catalog.describe_table(con, table)
    col = schema.column(field)
    if col is None or col.foreign_key is None:
        raise NotFound("No se encontraron opciones para este campo")
    related = col.foreign_key.related_table
    rows = con.execute(f"SELECT * FROM {quote_ident(related)} ORDER BY id").fetchall()
    return [{"value": r["id"], "label": _label(dict(r))} for r in rows]
