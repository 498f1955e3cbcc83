"""Live introspection of dynamic tables.

Every call reads SQLite's own catalog (``sqlite_master`` and the
``pragma_table_info`` / ``pragma_foreign_key_list`` table-valued functions),
so a descriptor always reflects the schema as it is right now. Descriptors are
built per call and never cached between requests.
"""
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import InvalidName, NotFound
from .types import to_logical

_IDENT_RE = re.compile(r"^[\w ]+$")


def quote_ident(name: str) -> str:
    if not isinstance(name, str) or not name.strip() or not _IDENT_RE.match(name):
        raise InvalidName(f"Identificador inválido: {name!r}")
    return '"' + name + '"'


@dataclass
class ForeignKeyInfo:
    column: str
    related_table: str
    related_column: str


@dataclass
class ColumnInfo:
    name: str
    native_type: str
    nullable: bool
    default: Optional[str] = None
    primary_key: bool = False
    foreign_key: Optional[ForeignKeyInfo] = None

    @property
    def logical_type(self) -> str:
        return to_logical(self.native_type)

    @property
    def auto_increment(self) -> bool:
        # INTEGER PRIMARY KEY is SQLite's rowid alias
        return self.primary_key and self.native_type.upper() == "INTEGER"


@dataclass
class TableSchema:
    name: str
    columns: List[ColumnInfo] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def foreign_keys(self) -> List[ForeignKeyInfo]:
        return [c.foreign_key for c in self.columns if c.foreign_key]

    def column(self, name: str) -> Optional[ColumnInfo]:
        if not isinstance(name, str):
            return None
        wanted = name.lower()
        for c in self.columns:
            if c.name.lower() == wanted:
                return c
        return None

    def display_column(self) -> str:
        for c in self.columns:
            if c.name != "id":
                return c.name
        return "id"

    def filter_data(self, data: Dict[str, Any], skip_none: bool = False, skip_id: bool = False) -> Dict[str, Any]:
        """Keep only keys naming a live column, renamed to the catalog spelling."""
        out: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            col = self.column(key)
            if col is None:
                continue
            if skip_id and col.name == "id":
                continue
            if skip_none and value is None:
                continue
            out[col.name] = value
        return out


def table_exists(con: sqlite3.Connection, table: str) -> bool:
    row = con.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND lower(name)=lower(?)",
        (table,),
    ).fetchone()
    return row is not None


def list_table_names(con: sqlite3.Connection) -> List[str]:
    rows = con.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    return [r["name"] for r in rows]


def describe_foreign_keys(con: sqlite3.Connection, table: str) -> List[ForeignKeyInfo]:
    rows = con.execute(
        'SELECT "from", "table", "to" FROM pragma_foreign_key_list(?) ORDER BY id, seq',
        (table,),
    ).fetchall()
    # "to" is NULL when the constraint targets the implicit primary key
    return [ForeignKeyInfo(r["from"], r["table"], r["to"] or "id") for r in rows]


def describe_columns(con: sqlite3.Connection, table: str) -> List[ColumnInfo]:
    rows = con.execute(
        "SELECT name, type, \"notnull\", dflt_value, pk FROM pragma_table_info(?) ORDER BY cid",
        (table,),
    ).fetchall()
    if not rows:
        raise NotFound(f"No se encontraron campos para la tabla {table}")
    fks = {fk.column.lower(): fk for fk in describe_foreign_keys(con, table)}
    return [
        ColumnInfo(
            name=r["name"],
            native_type=r["type"] or "",
            nullable=not r["notnull"] and not r["pk"],
            default=r["dflt_value"],
            primary_key=bool(r["pk"]),
            foreign_key=fks.get(r["name"].lower()),
        )
        for r in rows
    ]


def describe_table(con: sqlite3.Connection, table: str) -> TableSchema:
    return TableSchema(name=table, columns=describe_columns(con, table))


def referencing_foreign_keys(con: sqlite3.Connection, table: str) -> List[Dict[str, str]]:
    """Foreign keys declared in *other* tables that point at ``table``."""
    out = []
    for name in list_table_names(con):
        if name.lower() == table.lower():
            continue
        for fk in describe_foreign_keys(con, name):
            if fk.related_table.lower() == table.lower():
                out.append({"table": name, "column": fk.column, "related_column": fk.related_column})
    return out


def table_fields(con: sqlite3.Connection, table: str) -> List[Dict[str, Any]]:
    fields = []
    for c in describe_columns(con, table):
        fk = c.foreign_key
        fields.append({
            "column_name": c.name,
            "data_type": c.logical_type,
            "is_nullable": "YES" if c.nullable else "NO",
            "constraint_type": "FOREIGN KEY" if fk else None,
            "foreign_table_name": fk.related_table if fk else None,
            "foreign_column_name": fk.related_column if fk else None,
        })
    return fields
