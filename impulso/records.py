import logging
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from . import catalog
from .catalog import TableSchema, quote_ident
from .db import immediate
from .errors import (
    DuplicateRecord,
    InvalidName,
    MissingField,
    NoValidFields,
    NotFound,
    RelatedRecordNotFound,
)
from .relations import related_data
from .schema import check_table_name

logger = logging.getLogger(__name__)

CARACTERIZACION_TABLE = "inscription_caracterizacion"

# Characterization states under which plan items are listed
PI_VISIBLE_ESTADOS = (1, 2)
# Characterization states considered active for plan formulation
ACTIVE_ESTADOS = (4,)

# Natural key per pi_ table; anything not listed uses DEFAULT_NATURAL_KEY
NATURAL_KEYS = {"pi_formulacion": ("caracterizacion_id", "rel_id_prov")}
DEFAULT_NATURAL_KEY = ("caracterizacion_id",)

DUPLICATE_KEYS = ("Numero de identificacion", "Correo electronico")


def _decode(row: sqlite3.Row, schema: TableSchema) -> Dict[str, Any]:
    out = dict(row)
    for key, value in out.items():
        col = schema.column(key)
        if col is not None and col.logical_type == "BOOLEAN" and value is not None:
            out[key] = bool(value)
    return out


def _fetch(con: sqlite3.Connection, schema: TableSchema, record_id: Any) -> Optional[Dict[str, Any]]:
    row = con.execute(
        f"SELECT * FROM {quote_ident(schema.name)} WHERE id=?", (record_id,)
    ).fetchone()
    return _decode(row, schema) if row else None


def _status_column(con: sqlite3.Connection) -> Optional[str]:
    if not catalog.table_exists(con, CARACTERIZACION_TABLE):
        return None
    col = catalog.describe_table(con, CARACTERIZACION_TABLE).column("estado")
    return col.name if col else None


def list_records(con: sqlite3.Connection, table: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    check_table_name(table)
    schema = catalog.describe_table(con, table)
    qt = quote_ident(table)
    query = f"SELECT {qt}.* FROM {qt}"
    where: List[str] = []
    params: List[Any] = []
    is_pi = table.startswith("pi_")
    estado = None

    if is_pi:
        fk_col = schema.column("caracterizacion_id")
        if fk_col is None:
            raise MissingField(f"La tabla {table} no tiene la columna caracterizacion_id")
        qc = quote_ident(CARACTERIZACION_TABLE)
        query += f" INNER JOIN {qc} ON {qt}.{quote_ident(fk_col.name)} = {qc}.id"
        estado = _status_column(con)
        if estado:
            marks = ", ".join("?" for _ in PI_VISIBLE_ESTADOS)
            where.append(f"{qc}.{quote_ident(estado)} IN ({marks})")
            params.extend(PI_VISIBLE_ESTADOS)

    for key, value in (filters or {}).items():
        if is_pi and key == "Estado":
            if estado:
                where.append(f"{quote_ident(CARACTERIZACION_TABLE)}.{quote_ident(estado)} = ?")
                params.append(value)
            continue
        col = schema.column(key)
        if col is not None:
            where.append(f"{qt}.{quote_ident(col.name)} = ?")
            params.append(value)

    if where:
        query += " WHERE " + " AND ".join(where)
    query += f" ORDER BY {qt}.id"
    rows = con.execute(query, params).fetchall()
    return [_decode(r, schema) for r in rows]


def get_record_by_id(con: sqlite3.Connection, table: str, record_id: Any) -> Dict[str, Any]:
    check_table_name(table)
    schema = catalog.describe_table(con, table)
    record = _fetch(con, schema, record_id)
    if record is None:
        raise NotFound("Registro no encontrado")
    return {"record": record, "relatedData": related_data(con, table)}


def _check_references(con: sqlite3.Connection, schema: TableSchema, data: Dict[str, Any]) -> None:
    for fk in schema.foreign_keys:
        value = data.get(fk.column)
        if value is None:
            continue
        found = con.execute(
            f"SELECT 1 FROM {quote_ident(fk.related_table)} WHERE {quote_ident(fk.related_column)}=?",
            (value,),
        ).fetchone()
        if not found:
            raise RelatedRecordNotFound(f"Registro relacionado no encontrado en {fk.related_table}")


def _insert(con: sqlite3.Connection, schema: TableSchema, data: Dict[str, Any]) -> Dict[str, Any]:
    qt = quote_ident(schema.name)
    if data:
        cols = ", ".join(quote_ident(k) for k in data)
        marks = ", ".join("?" for _ in data)
        cur = con.execute(f"INSERT INTO {qt} ({cols}) VALUES ({marks})", list(data.values()))
    else:
        cur = con.execute(f"INSERT INTO {qt} DEFAULT VALUES")
    return _fetch(con, schema, cur.lastrowid)


def _update(con: sqlite3.Connection, schema: TableSchema, record_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    sets = ", ".join(f"{quote_ident(k)}=?" for k in data)
    con.execute(
        f"UPDATE {quote_ident(schema.name)} SET {sets} WHERE id=?",
        list(data.values()) + [record_id],
    )
    return _fetch(con, schema, record_id)


def create_record(con: sqlite3.Connection, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
    check_table_name(table)
    schema = catalog.describe_table(con, table)
    values = schema.filter_data(data, skip_id=True)
    _check_references(con, schema, values)
    record = _insert(con, schema, values)
    con.commit()
    logger.info("Registro %s creado en %s", record["id"], table)
    return record


def _apply_update(con: sqlite3.Connection, table: str, record_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    schema = catalog.describe_table(con, table)
    if _fetch(con, schema, record_id) is None:
        raise NotFound("Registro no encontrado")
    # absent or null fields are left untouched
    values = schema.filter_data(data, skip_none=True, skip_id=True)
    if not values:
        raise NoValidFields("No se proporcionaron campos válidos para actualizar.")
    _check_references(con, schema, values)
    record = _update(con, schema, record_id, values)
    con.commit()
    return record


def update_table_record(con: sqlite3.Connection, table: str, record_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        check_table_name(table, ("provider_", "inscription_"))
    except InvalidName:
        raise InvalidName("Nombre de tabla inválido para este controlador.")
    return _apply_update(con, table, record_id, data)


def update_pi_record(con: sqlite3.Connection, table: str, record_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        check_table_name(table, ("pi_",))
    except InvalidName:
        raise InvalidName("Nombre de tabla inválido para este controlador.")
    return _apply_update(con, table, record_id, data)


def natural_key(table: str) -> Tuple[str, ...]:
    return NATURAL_KEYS.get(table, DEFAULT_NATURAL_KEY)


def create_or_update_by_natural_key(con: sqlite3.Connection, table: str, data: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Idempotent save for plan items. Returns ``(record, created)``."""
    check_table_name(table, ("pi_",))
    schema = catalog.describe_table(con, table)
    values = schema.filter_data(data, skip_none=True, skip_id=True)
    key_cols = [schema.column(k) for k in natural_key(table)]

    # the lookup and the write share one write-locked transaction
    with immediate(con):
        existing = None
        if all(c is not None and values.get(c.name) is not None for c in key_cols):
            where = " AND ".join(f"{quote_ident(c.name)}=?" for c in key_cols)
            existing = con.execute(
                f"SELECT id FROM {quote_ident(table)} WHERE {where} ORDER BY id LIMIT 1",
                [values[c.name] for c in key_cols],
            ).fetchone()
        if existing is not None and values:
            return _update(con, schema, existing["id"], values), False
        if existing is not None:
            return _fetch(con, schema, existing["id"]), False
        return _insert(con, schema, values), True


def bulk_update(con: sqlite3.Connection, table: str, record_ids: List[Any], updates: Dict[str, Any]) -> int:
    check_table_name(table)
    if not isinstance(record_ids, list) or not record_ids:
        raise MissingField("Se requiere al menos un ID de registro")
    schema = catalog.describe_table(con, table)
    values = schema.filter_data(updates, skip_id=True)
    if not values:
        raise NoValidFields("No se proporcionaron campos válidos para actualizar.")
    _check_references(con, schema, values)
    sets = ", ".join(f"{quote_ident(k)}=?" for k in values)
    marks = ", ".join("?" for _ in record_ids)
    cur = con.execute(
        f"UPDATE {quote_ident(table)} SET {sets} WHERE id IN ({marks})",
        list(values.values()) + list(record_ids),
    )
    con.commit()
    logger.info("%d registros actualizados en %s", cur.rowcount, table)
    return cur.rowcount


def delete_record(con: sqlite3.Connection, table: str, record_id: Any) -> None:
    # pi_ attachments are filed under the characterization id, so they stay
    check_table_name(table, ("pi_",))
    cur = con.execute(f"DELETE FROM {quote_ident(table)} WHERE id=?", (record_id,))
    if cur.rowcount == 0:
        raise NotFound("Registro no encontrado")
    con.commit()
    logger.info("Registro %s eliminado de %s", record_id, table)


def create_caracterizacion(con: sqlite3.Connection, data: Dict[str, Any]) -> Dict[str, Any]:
    schema = catalog.describe_table(con, CARACTERIZACION_TABLE)
    values = schema.filter_data(data, skip_id=True)
    clauses, params = [], []
    for key in DUPLICATE_KEYS:
        col = schema.column(key)
        if col is not None and values.get(col.name) not in (None, ""):
            clauses.append(f"{quote_ident(col.name)}=?")
            params.append(values[col.name])
    if clauses:
        dup = con.execute(
            f"SELECT id FROM {quote_ident(CARACTERIZACION_TABLE)} WHERE " + " OR ".join(clauses),
            params,
        ).fetchone()
        if dup:
            raise DuplicateRecord(
                "Ya existe un registro con el mismo Número de identificación o Correo electrónico."
            )
    _check_references(con, schema, values)
    record = _insert(con, schema, values)
    con.commit()
    return record


def active_caracterizacion_records(con: sqlite3.Connection) -> List[Dict[str, Any]]:
    estado = _status_column(con)
    if not estado:
        raise MissingField(f"La columna estado o Estado no existe en la tabla {CARACTERIZACION_TABLE}")
    schema = catalog.describe_table(con, CARACTERIZACION_TABLE)
    marks = ", ".join("?" for _ in ACTIVE_ESTADOS)
    rows = con.execute(
        f"SELECT * FROM {quote_ident(CARACTERIZACION_TABLE)} "
        f"WHERE {quote_ident(estado)} IN ({marks}) ORDER BY id",
        ACTIVE_ESTADOS,
    ).fetchall()
    return [_decode(r, schema) for r in rows]


def value_exists(con: sqlite3.Connection, table: str, field: str, value: Any) -> bool:
    check_table_name(table)
    if not catalog.table_exists(con, table):
        raise NotFound(f"La tabla '{table}' no existe.")
    col = catalog.describe_table(con, table).column(field)
    if col is None:
        raise NotFound(f"El campo '{field}' no existe en la tabla '{table}'.")
    row = con.execute(
        f"SELECT COUNT(*) AS n FROM {quote_ident(table)} WHERE {quote_ident(col.name)}=?", (value,)
    ).fetchone()
    return row["n"] > 0
