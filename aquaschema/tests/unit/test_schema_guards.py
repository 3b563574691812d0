from __future__ import annotations

import pytest

from aquaschema.core.errors import InvalidSchemaNameError, InvalidStateError
from aquaschema.persistence.guards import is_valid_schema_name, quote_schema_name, require_schema_name


@pytest.mark.parametrize("name", ["tenant_acme", "_shared", "Tenant-42", "a" * 63])
def test_valid_schema_names(name: str) -> None:
    assert is_valid_schema_name(name)
    assert quote_schema_name(name) == f'"{name}"'


@pytest.mark.parametrize(
    "name",
    ["", None, "1tenant", "tenant;drop", 'tenant"x', "tenant name", "a" * 64, "tenant.public"],
)
def test_invalid_schema_names(name: str | None) -> None:
    assert not is_valid_schema_name(name)
    with pytest.raises(InvalidSchemaNameError):
        require_schema_name(name)


def test_invalid_schema_name_is_a_state_error() -> None:
    # API callers see bad names as a conflict, not a server fault.
    with pytest.raises(InvalidStateError):
        quote_schema_name("bad;name")
