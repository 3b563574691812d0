from __future__ import annotations

import re

from aquaschema.core.errors import InvalidSchemaNameError


# Letters, digits, underscores and hyphens; Postgres caps identifiers at 63 bytes.
SCHEMA_NAME_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_-]{0,62}$")


def is_valid_schema_name(schema_name: str | None) -> bool:
    return bool(schema_name) and SCHEMA_NAME_PATTERN.fullmatch(schema_name) is not None


def require_schema_name(schema_name: str | None) -> str:
    # Reject names outside the allow-list before they reach any SQL text.
    if not is_valid_schema_name(schema_name):
        raise InvalidSchemaNameError(f"Invalid schema name: {schema_name!r}")
    return schema_name


def quote_schema_name(schema_name: str | None) -> str:
    # Validated names cannot contain quotes, so double-quoting is a complete escape.
    return f'"{require_schema_name(schema_name)}"'
