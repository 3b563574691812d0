from __future__ import annotations

from typing import Any


class AquaSchemaError(Exception):
    """Base error for aquaschema."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(AquaSchemaError):
    """Tenant schema, migration version, backup, or restore record is absent."""


class InvalidStateError(AquaSchemaError):
    """A precondition on the current lifecycle state was violated."""


class InvalidSchemaNameError(InvalidStateError):
    """Schema name does not match the allowed identifier pattern."""


class QueryValidationError(InvalidStateError):
    """Diagnostic query rejected by the EXPLAIN safety checks."""


class ExecutionFailureError(AquaSchemaError):
    """SQL, tool, or driver failure while executing a migration, rollback, or backup step."""
