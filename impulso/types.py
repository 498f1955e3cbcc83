import re

from .errors import InvalidFieldType

# Logical type -> declared column type used in DDL
NATIVE_TYPES = {
    "VARCHAR(255)": "VARCHAR(255)",
    "TEXT": "TEXT",
    "INTEGER": "INTEGER",
    "DECIMAL": "DECIMAL",
    "BOOLEAN": "BOOLEAN",
    "DATE": "DATE",
    "FOREIGN_KEY": "INTEGER",
}

LOGICAL_TYPES = tuple(NATIVE_TYPES)

# Declared/catalog type (lowercase, without size) -> logical type
_LOGICAL_BY_NATIVE = {
    "varchar": "VARCHAR(255)",
    "character varying": "VARCHAR(255)",
    "text": "TEXT",
    "integer": "INTEGER",
    "int": "INTEGER",
    "numeric": "DECIMAL",
    "decimal": "DECIMAL",
    "boolean": "BOOLEAN",
    "date": "DATE",
    "datetime": "DATE",
    "timestamp": "DATE",
    "timestamp without time zone": "DATE",
}

TEXT_TYPES = {"VARCHAR(255)", "TEXT"}

_SIZE_RE = re.compile(r"\s*\(.*\)\s*$")


def to_native(logical: str) -> str:
    try:
        return NATIVE_TYPES[logical]
    except (KeyError, TypeError):
        raise InvalidFieldType(f"Tipo de dato no válido: {logical}")


def to_logical(native: str) -> str:
    """Normalize a catalog-reported type. Display only, so it never fails."""
    raw = (native or "").strip()
    key = _SIZE_RE.sub("", raw).lower()
    return _LOGICAL_BY_NATIVE.get(key, raw.upper())


def is_text(logical: str) -> bool:
    return logical in TEXT_TYPES
