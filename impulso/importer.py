import io
import logging
import os
import sqlite3
from typing import Any, Callable, Dict, List

import pandas as pd

from . import catalog
from .catalog import ColumnInfo, quote_ident
from .errors import InvalidRows, MissingField, NotFound
from .schema import check_table_name
from .types import is_text
from .utils import to_bool_or_none, to_date_iso, to_float_or_none, to_int_or_none

logger = logging.getLogger(__name__)


class CellError(ValueError):
    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


COERCERS: Dict[str, Callable[[Any], Any]] = {
    "INTEGER": to_int_or_none,
    "DECIMAL": to_float_or_none,
    "BOOLEAN": to_bool_or_none,
    "DATE": to_date_iso,
}


def _to_csv(columns: List[str], rows: List[Dict[str, Any]]) -> str:
    df = pd.DataFrame(rows, columns=columns, dtype=object)
    buf = io.StringIO()
    df.to_csv(buf, index=False)
    return buf.getvalue()


def csv_template(con: sqlite3.Connection, table: str) -> str:
    check_table_name(table)
    columns = [c.name for c in catalog.describe_columns(con, table)]
    example = {c: f"ejemplo_{c}" for c in columns}
    return _to_csv(columns, [example])


def csv_export(con: sqlite3.Connection, table: str) -> str:
    check_table_name(table)
    if not catalog.table_exists(con, table):
        raise NotFound(f"La tabla {table} no existe")
    columns = [c.name for c in catalog.describe_columns(con, table)]
    rows = con.execute(f"SELECT * FROM {quote_ident(table)} ORDER BY id").fetchall()
    return _to_csv(columns, [dict(r) for r in rows])


def sanitize_row(raw: Dict[str, Any], columns: Dict[str, ColumnInfo]) -> Dict[str, Any]:
    """Keep known columns and coerce each cell; raises CellError on bad input."""
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        col = columns.get(key)
        if col is None:
            continue
        if col.auto_increment:
            continue
        logical = col.logical_type
        if is_text(logical):
            out[col.name] = str(value).strip() if value is not None else ""
            continue
        coerce = COERCERS.get(logical)
        cell = value.strip() if isinstance(value, str) else value
        if coerce is None:
            out[col.name] = cell if cell != "" else None
            continue
        try:
            out[col.name] = coerce(cell)
        except (TypeError, ValueError) as e:
            raise CellError(col.name, str(e))
    return out


def validate_rows(rows: List[Dict[str, Any]], columns: List[ColumnInfo], first_row: int = 0) -> List[Dict[str, Any]]:
    errors: List[Dict[str, Any]] = []
    required = [c for c in columns if not c.nullable and not c.auto_increment and c.default is None]
    for i, row in enumerate(rows, start=first_row):
        for c in required:
            if row.get(c.name) is None:
                errors.append({"row_index": i, "field": c.name, "message": f"{c.name} es requerido."})
    return errors


def read_rows(path: str, columns: List[ColumnInfo], chunksize: int = 500):
    """Stream the CSV in chunks; yields ``(row_index, sanitized_row | None, error | None)``."""
    by_name = {c.name: c for c in columns}
    # lower-case fallback so headers match the catalog regardless of case
    by_name.update({c.name.lower(): c for c in columns if c.name.lower() not in by_name})
    index = 0
    try:
        reader = pd.read_csv(path, dtype=str, keep_default_na=False, chunksize=chunksize)
    except pd.errors.EmptyDataError:
        raise MissingField("El archivo CSV está vacío")
    for chunk in reader:
        for raw in chunk.to_dict(orient="records"):
            normalized = {}
            for key, value in raw.items():
                name = str(key).strip()
                if name in by_name:
                    normalized[name] = value
                elif name.lower() in by_name:
                    normalized[name.lower()] = value
            try:
                yield index, sanitize_row(normalized, by_name), None
            except CellError as e:
                yield index, None, {"row_index": index, "field": e.field, "message": e.message}
            index += 1


def import_csv(con: sqlite3.Connection, table: str, path: str, chunksize: int = 500) -> Dict[str, Any]:
    try:
        check_table_name(table)
        if not catalog.table_exists(con, table):
            raise NotFound(f"La tabla {table} no existe")
        columns = catalog.describe_columns(con, table)

        rows: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for index, row, error in read_rows(path, columns, chunksize=chunksize):
            if error:
                errors.append(error)
                continue
            errors.extend(validate_rows([row], columns, first_row=index))
            rows.append(row)
        if errors:
            raise InvalidRows("Error insertando datos en la tabla: filas inválidas", errors)

        inserted = _bulk_insert(con, table, rows)
        logger.info("CSV importado en %s: %d filas", table, inserted)
        return {"table": table, "inserted_rows": inserted, "total_rows": len(rows)}
    finally:
        if path and os.path.exists(path):
            os.remove(path)


def _bulk_insert(con: sqlite3.Connection, table: str, rows: List[Dict[str, Any]]) -> int:
    if not rows:
        return 0
    # rows may carry different key sets; group by shape so each batch is one statement
    groups: Dict[tuple, List[List[Any]]] = {}
    for row in rows:
        groups.setdefault(tuple(row), []).append(list(row.values()))
    try:
        for cols, values in groups.items():
            if cols:
                sql = (
                    f"INSERT INTO {quote_ident(table)} ({', '.join(quote_ident(c) for c in cols)}) "
                    f"VALUES ({', '.join('?' for _ in cols)})"
                )
            else:
                sql = f"INSERT INTO {quote_ident(table)} DEFAULT VALUES"
                values = [[] for _ in values]
            con.executemany(sql, values)
        con.commit()
    except sqlite3.Error:
        con.rollback()
        raise
    return len(rows)
