"""Tests for generic record access over dynamic tables."""

import threading

import pytest

from impulso import db, records
from impulso.errors import (
    DuplicateRecord,
    InvalidName,
    MissingField,
    NoValidFields,
    NotFound,
    RelatedRecordNotFound,
)
from impulso.schema import create_table


@pytest.fixture
def personas(con):
    create_table(con, "inscription_municipios", [{"name": "nombre", "type": "TEXT"}])
    con.executemany("INSERT INTO inscription_municipios(nombre) VALUES (?)", [("Cali",), ("Pasto",)])
    create_table(con, "inscription_personas", [
        {"name": "nombre", "type": "TEXT"},
        {"name": "activo", "type": "BOOLEAN"},
        {"name": "municipio_id", "type": "FOREIGN_KEY", "relatedTable": "inscription_municipios"},
    ])
    con.commit()
    return "inscription_personas"


@pytest.fixture
def plan(con, caracterizacion):
    create_table(con, "pi_plan", [
        {"name": "caracterizacion_id", "type": "FOREIGN_KEY", "relatedTable": caracterizacion},
        {"name": "concepto", "type": "TEXT"},
        {"name": "monto", "type": "DECIMAL"},
    ])
    return "pi_plan"


class TestCreateAndRead:
    """Tests for create_record, list_records and get_record_by_id."""

    def test_create_ignores_unknown_keys_and_id(self, con, personas):
        record = records.create_record(con, personas, {"id": 99, "NOMBRE": "Ana", "otro": 1, "activo": 1})
        assert record["id"] == 1
        assert record["nombre"] == "Ana"
        assert record["activo"] is True
        assert "otro" not in record

    def test_create_checks_references(self, con, personas):
        with pytest.raises(RelatedRecordNotFound):
            records.create_record(con, personas, {"nombre": "Ana", "municipio_id": 42})

    def test_list_filters(self, con, personas):
        records.create_record(con, personas, {"nombre": "Ana", "municipio_id": 1})
        records.create_record(con, personas, {"nombre": "Luis", "municipio_id": 2})
        rows = records.list_records(con, personas, {"municipio_id": "2", "desconocido": "x"})
        assert [r["nombre"] for r in rows] == ["Luis"]

    def test_related_data_lists_every_candidate(self, con, personas):
        records.create_record(con, personas, {"nombre": "Ana", "municipio_id": 1})
        result = records.get_record_by_id(con, personas, 1)
        assert result["record"]["nombre"] == "Ana"
        assert result["relatedData"] == {
            "municipio_id": [
                {"id": 1, "displayValue": "Cali"},
                {"id": 2, "displayValue": "Pasto"},
            ]
        }

    def test_missing_record(self, con, personas):
        with pytest.raises(NotFound):
            records.get_record_by_id(con, personas, 7)

    def test_unknown_table(self, con):
        with pytest.raises(NotFound):
            records.list_records(con, "inscription_nada")


class TestUpdate:
    """Tests for the update controllers."""

    def test_update_skips_nulls(self, con, personas):
        records.create_record(con, personas, {"nombre": "Ana", "municipio_id": 1})
        record = records.update_table_record(con, personas, 1, {"nombre": "Ana María", "municipio_id": None})
        assert record["nombre"] == "Ana María"
        assert record["municipio_id"] == 1

    def test_update_checks_references(self, con, personas):
        records.create_record(con, personas, {"nombre": "Ana", "municipio_id": 1})
        with pytest.raises(RelatedRecordNotFound):
            records.update_table_record(con, personas, 1, {"municipio_id": 42})
        with pytest.raises(RelatedRecordNotFound):
            records.bulk_update(con, personas, [1], {"municipio_id": 42})
        assert records.get_record_by_id(con, personas, 1)["record"]["municipio_id"] == 1

    def test_update_requires_valid_fields(self, con, personas):
        records.create_record(con, personas, {"nombre": "Ana"})
        with pytest.raises(NoValidFields):
            records.update_table_record(con, personas, 1, {"id": 5, "nada": 1})

    def test_controller_prefixes(self, con, personas, plan):
        with pytest.raises(InvalidName):
            records.update_table_record(con, plan, 1, {"concepto": "x"})
        with pytest.raises(InvalidName):
            records.update_pi_record(con, personas, 1, {"nombre": "x"})

    def test_update_missing_record(self, con, plan):
        with pytest.raises(NotFound):
            records.update_pi_record(con, plan, 1, {"concepto": "x"})

    def test_bulk_update(self, con, personas):
        for name in ("a", "b", "c"):
            records.create_record(con, personas, {"nombre": name})
        assert records.bulk_update(con, personas, [1, 3], {"activo": True, "id": 9}) == 2
        flags = [r["activo"] for r in records.list_records(con, personas)]
        assert flags == [True, None, True]

    def test_bulk_update_validation(self, con, personas):
        with pytest.raises(MissingField):
            records.bulk_update(con, personas, [], {"nombre": "x"})
        with pytest.raises(NoValidFields):
            records.bulk_update(con, personas, [1], {"nada": "x"})


class TestPlanItems:
    """Tests for pi_ tables scoped to characterization records."""

    def test_listing_joins_visible_characterizations(self, con, plan):
        records.create_record(con, plan, {"caracterizacion_id": 1, "concepto": "visible"})
        records.create_record(con, plan, {"caracterizacion_id": 2, "concepto": "oculto"})
        assert [r["concepto"] for r in records.list_records(con, plan)] == ["visible"]
        assert records.list_records(con, plan, {"Estado": "2"}) == []

    def test_listing_requires_characterization_column(self, con, caracterizacion):
        create_table(con, "pi_suelto", [{"name": "a", "type": "TEXT"}])
        with pytest.raises(MissingField):
            records.list_records(con, "pi_suelto")

    def test_upsert_by_natural_key(self, con, plan):
        first, created = records.create_or_update_by_natural_key(
            con, plan, {"caracterizacion_id": 1, "concepto": "semillas", "monto": 10}
        )
        assert created
        second, created = records.create_or_update_by_natural_key(
            con, plan, {"caracterizacion_id": 1, "concepto": "abono", "monto": 20}
        )
        assert not created
        assert second["id"] == first["id"]
        assert second["concepto"] == "abono"
        assert con.execute("SELECT COUNT(*) FROM pi_plan").fetchone()[0] == 1

    def test_formulacion_key_includes_provider(self, con, caracterizacion):
        create_table(con, "pi_formulacion", [
            {"name": "caracterizacion_id", "type": "INTEGER"},
            {"name": "rel_id_prov", "type": "INTEGER"},
            {"name": "cantidad", "type": "INTEGER"},
        ])
        records.create_or_update_by_natural_key(con, "pi_formulacion", {"caracterizacion_id": 1, "rel_id_prov": 1, "cantidad": 1})
        records.create_or_update_by_natural_key(con, "pi_formulacion", {"caracterizacion_id": 1, "rel_id_prov": 2, "cantidad": 1})
        _, created = records.create_or_update_by_natural_key(
            con, "pi_formulacion", {"caracterizacion_id": 1, "rel_id_prov": 2, "cantidad": 5}
        )
        assert not created
        rows = con.execute("SELECT rel_id_prov, cantidad FROM pi_formulacion ORDER BY id").fetchall()
        assert [tuple(r) for r in rows] == [(1, 1), (2, 5)]

    def test_concurrent_upserts_keep_one_row(self, tmp_path, con, plan):
        path = tmp_path / "test.sqlite"
        errors = []

        def save(n):
            c = db.get_connection(path)
            c.execute("PRAGMA busy_timeout = 5000")
            try:
                records.create_or_update_by_natural_key(c, plan, {"caracterizacion_id": 1, "monto": n})
            except Exception as e:
                errors.append(e)
            finally:
                c.close()

        threads = [threading.Thread(target=save, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert con.execute("SELECT COUNT(*) FROM pi_plan").fetchone()[0] == 1

    def test_delete_only_for_pi(self, con, personas, plan):
        records.create_record(con, plan, {"caracterizacion_id": 1})
        records.delete_record(con, plan, 1)
        assert records.list_records(con, plan) == []
        with pytest.raises(NotFound):
            records.delete_record(con, plan, 1)
        with pytest.raises(InvalidName):
            records.delete_record(con, personas, 1)


class TestCaracterizacion:
    """Tests for characterization intake."""

    def test_duplicate_identification(self, con, caracterizacion):
        with pytest.raises(DuplicateRecord):
            records.create_caracterizacion(con, {"Nombre": "Otra", "Numero de identificacion": "100"})

    def test_create(self, con, caracterizacion):
        record = records.create_caracterizacion(con, {"Nombre": "Eva", "Correo electronico": "eva@x.co"})
        assert record["id"] == 3

    def test_active(self, con, caracterizacion):
        active = records.active_caracterizacion_records(con)
        assert [r["Nombre"] for r in active] == ["Luis"]

    def test_value_exists(self, con, caracterizacion):
        assert records.value_exists(con, caracterizacion, "numero de identificacion", "200")
        assert not records.value_exists(con, caracterizacion, "Numero de identificacion", "999")
        with pytest.raises(NotFound):
            records.value_exists(con, caracterizacion, "nada", "1")
