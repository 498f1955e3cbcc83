import json
import sqlite3
from typing import Any, List

from .errors import InvalidValue
from .utils import json_dumps


def save_field_preferences(con: sqlite3.Connection, table: str, visible_columns: Any) -> None:
    if not isinstance(visible_columns, list):
        raise InvalidValue("Las columnas visibles deben ser un array")
    con.execute(
        """
        INSERT INTO field_preferences(table_name, visible_columns) VALUES (?, ?)
        ON CONFLICT(table_name) DO UPDATE SET
            visible_columns=excluded.visible_columns,
            updated_at=datetime('now')
        """,
        (table, json_dumps(visible_columns)),
    )
    con.commit()


def get_field_preferences(con: sqlite3.Connection, table: str) -> List[str]:
    row = con.execute(
        "SELECT visible_columns FROM field_preferences WHERE table_name=?", (table,)
    ).fetchone()
    return json.loads(row["visible_columns"]) if row else []
