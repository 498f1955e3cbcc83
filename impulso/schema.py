import logging
import os
import re
import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from . import catalog
from .catalog import quote_ident
from .errors import (
    ColumnHasData,
    ColumnHasForeignKey,
    InternalError,
    InvalidName,
    InvalidValue,
    MissingField,
    NotEmpty,
    NotFound,
    UnsupportedOperation,
)
from .types import to_native

logger = logging.getLogger(__name__)

ALLOWED_PREFIXES = ("inscription_", "provider_", "pi_")

TABLE_TYPES = {"inscription": "inscription_", "provider": "provider_", "pi": "pi_"}

CASCADE_CLEANUP = os.getenv("CASCADE_CLEANUP", "false").lower() in ("1", "true", "yes")

_TABLE_NAME_RE = re.compile(r"^\w+$")


def check_table_name(name: str, prefixes: Iterable[str] = ALLOWED_PREFIXES) -> str:
    prefixes = tuple(prefixes)
    if not name or not isinstance(name, str):
        raise MissingField("El nombre de la tabla es requerido")
    if not name.startswith(prefixes):
        raise InvalidName("El nombre de la tabla debe empezar con " + ", ".join(prefixes))
    if not _TABLE_NAME_RE.match(name):
        raise InvalidName(f"Nombre de tabla inválido: {name}")
    return name


def _column_ddl(con: sqlite3.Connection, field: Dict[str, Any]) -> str:
    name = (field.get("name") or "") if isinstance(field, dict) else ""
    if not isinstance(name, str) or not name.strip():
        raise MissingField("Todos los campos deben tener un nombre")
    ftype = field.get("type")
    allow_null = field.get("allow_null") is not False
    null_sql = "" if allow_null else " NOT NULL"

    if ftype == "FOREIGN_KEY":
        related_table = field.get("relatedTable")
        if not related_table:
            raise MissingField(
                f"El campo {name} es una clave foránea, pero no se proporcionó la tabla relacionada"
            )
        related_column = field.get("relatedColumn") or "id"
        if related_column != "id":
            raise InvalidValue(f"La clave foránea {name} debe referenciar {related_table}.id")
        if not catalog.table_exists(con, related_table):
            raise NotFound(f"La tabla relacionada {related_table} no existe")
        return (
            f"{quote_ident(name)} {to_native(ftype)}{null_sql} "
            f"REFERENCES {quote_ident(related_table)}({quote_ident(related_column)}) "
            "ON UPDATE CASCADE ON DELETE SET NULL"
        )
    return f"{quote_ident(name)} {to_native(ftype)}{null_sql}"


def _execute_ddl(con: sqlite3.Connection, sql: str) -> None:
    try:
        con.execute(sql)
        con.commit()
    except sqlite3.Error as e:
        con.rollback()
        raise InternalError(f"Error ejecutando DDL: {e}") from e


def create_table(con: sqlite3.Connection, name: str, fields: List[Dict[str, Any]]) -> None:
    if not name or not fields:
        raise MissingField("El nombre de la tabla y los campos son requeridos")
    check_table_name(name)
    if catalog.table_exists(con, name):
        raise InvalidName(f"La tabla {name} ya existe")

    # validate every field before touching the schema
    columns = ['"id" INTEGER PRIMARY KEY AUTOINCREMENT']
    seen = {"id"}
    for f in fields:
        ddl = _column_ddl(con, f)
        key = f["name"].lower()
        if key in seen:
            raise InvalidName(f"Campo duplicado: {f['name']}")
        seen.add(key)
        columns.append(ddl)

    sql = f"CREATE TABLE {quote_ident(name)} (\n    " + ",\n    ".join(columns) + "\n)"
    _execute_ddl(con, sql)
    con.execute("INSERT OR IGNORE INTO tables_metadata(table_name) VALUES (?)", (name,))
    con.commit()
    logger.info("Tabla %s creada con %d campos", name, len(fields))


def _row_count(con: sqlite3.Connection, name: str) -> int:
    return con.execute(f"SELECT COUNT(*) AS n FROM {quote_ident(name)}").fetchone()["n"]


def delete_table(con: sqlite3.Connection, name: str, cascade: Optional[bool] = None) -> None:
    check_table_name(name)
    if not catalog.table_exists(con, name):
        raise NotFound(f"La tabla {name} no existe")
    if _row_count(con, name) > 0:
        raise NotEmpty(f"No se puede eliminar la tabla {name} porque no está vacía.")
    dependents = catalog.referencing_foreign_keys(con, name)
    if dependents:
        tables = ", ".join(sorted({d["table"] for d in dependents}))
        raise ColumnHasForeignKey(
            f"No se puede eliminar la tabla {name} porque es referenciada por: {tables}"
        )

    _execute_ddl(con, f"DROP TABLE {quote_ident(name)}")
    logger.info("Tabla %s eliminada", name)

    if (CASCADE_CLEANUP if cascade is None else cascade):
        from .files import purge_attachments

        con.execute("DELETE FROM tables_metadata WHERE table_name=?", (name,))
        con.execute("DELETE FROM field_preferences WHERE table_name=?", (name,))
        purge_attachments(con, name)
        con.commit()


def _column_name(entry: Any) -> str:
    if isinstance(entry, dict):
        return entry.get("column_name") or entry.get("name") or ""
    return entry or ""


def edit_table(
    con: sqlite3.Connection,
    name: str,
    fields_to_add: Optional[List[Dict[str, Any]]] = None,
    fields_to_delete: Optional[List[Any]] = None,
    fields_to_edit: Optional[List[Any]] = None,
) -> None:
    if fields_to_edit:
        raise UnsupportedOperation("No se permite editar campos existentes")
    check_table_name(name)
    schema = catalog.describe_table(con, name)

    # every add and delete is checked before the first ALTER runs
    adds = []
    seen = set()
    for f in fields_to_add or []:
        ddl = _column_ddl(con, f)
        key = f["name"].lower()
        if schema.column(f["name"]) is not None or key in seen:
            raise InvalidName(f"El campo {f['name']} ya existe en la tabla {name}")
        seen.add(key)
        adds.append((f["name"], ddl))

    drops = []
    for entry in fields_to_delete or []:
        column_name = _column_name(entry)
        if not column_name:
            raise MissingField("El nombre del campo es requerido")
        col = schema.column(column_name)
        if col is None:
            raise NotFound(f'La columna "{column_name}" no existe en la tabla {name}')
        if col.name.lower() in seen:
            raise InvalidName(f'La columna "{col.name}" no puede agregarse y eliminarse a la vez')
        qcol = quote_ident(col.name)
        count = con.execute(
            f"SELECT COUNT(*) AS n FROM {quote_ident(name)} WHERE {qcol} IS NOT NULL"
        ).fetchone()["n"]
        if count > 0:
            raise ColumnHasData(f'No se puede eliminar la columna "{col.name}" porque contiene datos.')
        if col.primary_key or col.foreign_key or _is_referenced(con, name, col.name):
            raise ColumnHasForeignKey(
                f'No se puede eliminar la columna "{col.name}" porque tiene restricciones de clave foránea.'
            )
        drops.append(col.name)

    # A DDL failure partway through leaves the earlier statements in place.
    for column_name, ddl in adds:
        _execute_ddl(con, f"ALTER TABLE {quote_ident(name)} ADD COLUMN {ddl}")
        logger.info("Columna %s agregada a %s", column_name, name)
    for column_name in drops:
        _execute_ddl(con, f"ALTER TABLE {quote_ident(name)} DROP COLUMN {quote_ident(column_name)}")
        logger.info("Columna %s eliminada de %s", column_name, name)


def _is_referenced(con: sqlite3.Connection, table: str, column: str) -> bool:
    return any(
        ref["related_column"].lower() == column.lower()
        for ref in catalog.referencing_foreign_keys(con, table)
    )


def list_tables(con: sqlite3.Connection, table_type: Optional[str] = None, is_primary_only: bool = False) -> List[Dict[str, Any]]:
    prefix = TABLE_TYPES.get(table_type or "inscription", "inscription_")
    registry = {
        r["table_name"]: bool(r["is_primary"])
        for r in con.execute("SELECT table_name, is_primary FROM tables_metadata").fetchall()
    }
    tables = [
        {"table_name": t, "is_primary": registry.get(t, False)}
        for t in catalog.list_table_names(con)
        if t.startswith(prefix)
    ]
    if is_primary_only:
        tables = [t for t in tables if t["is_primary"]]
    if not tables:
        raise NotFound(f"No se encontraron tablas para el tipo {table_type or 'inscription'}")
    return tables


def update_principal_status(con: sqlite3.Connection, name: str, is_primary: Any) -> None:
    if not name:
        raise MissingField("El nombre de la tabla es requerido")
    if not isinstance(is_primary, bool):
        raise InvalidValue("El valor de is_primary debe ser booleano (true o false)")
    cur = con.execute(
        "UPDATE tables_metadata SET is_primary=? WHERE table_name=?", (int(is_primary), name)
    )
    if cur.rowcount == 0:
        raise NotFound("Tabla no encontrada en tables_metadata")
    con.commit()
