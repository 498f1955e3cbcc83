import pytest
from fastapi.testclient import TestClient

from impulso import db, files
from impulso.schema import create_table
from impulso.schema_sql import SCHEMA_SQL


@pytest.fixture
def uploads(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    path.mkdir()
    monkeypatch.setattr(files, "UPLOADS_DIR", path)
    return path


@pytest.fixture
def con(tmp_path, uploads):
    connection = db.get_connection(tmp_path / "test.sqlite")
    connection.executescript(SCHEMA_SQL)
    connection.commit()
    yield connection
    connection.close()


@pytest.fixture
def caracterizacion(con):
    """The lead characterization table with two cases, one visible to pi_ listings."""
    create_table(con, "inscription_caracterizacion", [
        {"name": "Nombre", "type": "VARCHAR(255)"},
        {"name": "Numero de identificacion", "type": "VARCHAR(255)"},
        {"name": "Correo electronico", "type": "VARCHAR(255)"},
        {"name": "Estado", "type": "INTEGER"},
    ])
    con.executemany(
        'INSERT INTO inscription_caracterizacion("Nombre", "Numero de identificacion", "Estado") VALUES (?,?,?)',
        [("Ana", "100", 1), ("Luis", "200", 4)],
    )
    con.commit()
    return "inscription_caracterizacion"


@pytest.fixture
def client(tmp_path, uploads, monkeypatch):
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "api.sqlite")
    from impulso.main import app

    with TestClient(app) as c:
        yield c
