"""Tests for logical/native type mapping and value coercion."""

import pytest

from impulso.errors import InvalidFieldType
from impulso.types import LOGICAL_TYPES, is_text, to_logical, to_native
from impulso.utils import to_bool_or_none, to_date_iso, to_float_or_none, to_int_or_none


class TestTypeMapper:
    """Tests for the type mapper."""

    def test_every_logical_type_round_trips(self):
        for logical in LOGICAL_TYPES:
            if logical == "FOREIGN_KEY":
                continue
            assert to_logical(to_native(logical)) == logical

    def test_foreign_key_is_stored_as_integer(self):
        assert to_native("FOREIGN_KEY") == "INTEGER"
        assert to_logical("INTEGER") == "INTEGER"

    def test_unknown_logical_type_is_rejected(self):
        with pytest.raises(InvalidFieldType):
            to_native("BLOB")

    def test_logical_types_are_case_sensitive(self):
        with pytest.raises(InvalidFieldType):
            to_native("integer")

    def test_catalog_spellings_normalize(self):
        assert to_logical("varchar(100)") == "VARCHAR(255)"
        assert to_logical("character varying") == "VARCHAR(255)"
        assert to_logical("numeric") == "DECIMAL"
        assert to_logical("timestamp without time zone") == "DATE"

    def test_unknown_native_passes_through_uppercased(self):
        assert to_logical("blob") == "BLOB"
        assert to_logical("") == ""

    def test_is_text(self):
        assert is_text("TEXT")
        assert is_text("VARCHAR(255)")
        assert not is_text("INTEGER")


class TestCoercion:
    """Tests for cell coercion helpers."""

    def test_int(self):
        assert to_int_or_none("1,200") == 1200
        assert to_int_or_none("7.0") == 7
        assert to_int_or_none("") is None
        with pytest.raises(ValueError):
            to_int_or_none("7.5")
        with pytest.raises(ValueError):
            to_int_or_none("abc")

    def test_float(self):
        assert to_float_or_none("3.5") == 3.5
        assert to_float_or_none(None) is None

    def test_bool(self):
        assert to_bool_or_none("Sí") is True
        assert to_bool_or_none("no") is False
        assert to_bool_or_none(1) is True
        assert to_bool_or_none("") is None
        with pytest.raises(ValueError):
            to_bool_or_none("quizas")

    def test_date(self):
        assert to_date_iso("2024-03-05") == "2024-03-05"
        assert to_date_iso(" ") is None
        with pytest.raises(ValueError):
            to_date_iso("not a date")
