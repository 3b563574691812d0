from __future__ import annotations

from aquaschema.core.config import Settings
from aquaschema.persistence.db import engine_options


def test_postgres_pool_is_bounded_with_statement_timeout() -> None:
    settings = Settings(
        database_url="postgresql+asyncpg://u:p@db:5432/app",
        db_pool_size=0,
        db_max_overflow=-3,
        db_statement_timeout_ms=15000,
    )
    options = engine_options(settings)
    assert options["pool_size"] == 1
    assert options["max_overflow"] == 0
    assert options["connect_args"] == {"server_settings": {"statement_timeout": "15000"}}


def test_sqlite_skips_pool_sizing() -> None:
    options = engine_options(Settings(database_url="sqlite+aiosqlite:///:memory:"))
    assert options == {"pool_pre_ping": True}
