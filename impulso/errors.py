from typing import Any, Dict, List, Optional


class ImpulsoError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidName(ImpulsoError):
    status_code = 400


class InvalidFieldType(ImpulsoError):
    status_code = 400


class MissingField(ImpulsoError):
    status_code = 400


class InvalidValue(ImpulsoError):
    status_code = 400


class InvalidRows(ImpulsoError):
    """CSV rows rejected before insertion; ``errors`` holds one entry per problem."""

    status_code = 400

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class NotFound(ImpulsoError):
    status_code = 404


class NotEmpty(ImpulsoError):
    status_code = 400


class ColumnHasData(ImpulsoError):
    status_code = 400


class ColumnHasForeignKey(ImpulsoError):
    status_code = 400


class RelatedRecordNotFound(ImpulsoError):
    status_code = 400


class NoValidFields(ImpulsoError):
    status_code = 400


class UnsupportedOperation(ImpulsoError):
    status_code = 400


class DuplicateRecord(ImpulsoError):
    status_code = 409


class InternalError(ImpulsoError):
    status_code = 500
