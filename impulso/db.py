import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path

DB_DIR = Path(os.getenv("DB_DIR", "./data"))
DB_DIR.mkdir(parents=True, exist_ok=True)
DB_PATH = DB_DIR / os.getenv("DB_FILE", "impulso.sqlite")

def get_connection(path=None):
    con = sqlite3.connect(path or DB_PATH, check_same_thread=False)
    con.row_factory = sqlite3.Row
    # FK actions (ON UPDATE CASCADE / ON DELETE SET NULL) only run with this on
    con.execute("PRAGMA foreign_keys = ON")
    return con

@contextmanager
def connect():
    con = get_connection()
    try:
        yield con
    finally:
        con.close()

@contextmanager
def immediate(con: sqlite3.Connection):
    """Run a read-then-write sequence holding the database write lock.

    If the connection already has an open transaction the block joins it and
    the caller stays responsible for committing.
    """
    if con.in_transaction:
        yield con
        return
    con.execute("BEGIN IMMEDIATE")
    try:
        yield con
    except Exception:
        con.rollback()
        raise
    con.commit()
