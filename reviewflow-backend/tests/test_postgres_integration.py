"""Schema checks against a real Postgres; skipped unless TEST_POSTGRES_DATABASE_URL is set."""

import os
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect, text

from reviewflow.core.config import settings

PG_URL = os.getenv("TEST_POSTGRES_DATABASE_URL")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not PG_URL, reason="TEST_POSTGRES_DATABASE_URL is not set"),
]

ALEMBIC_INI = Path(__file__).resolve().parents[1] / "alembic.ini"


@pytest.fixture()
def pg_engine():
    engine = create_engine(PG_URL, pool_pre_ping=True)
    yield engine
    engine.dispose()


@pytest.fixture()
def alembic_config(monkeypatch):
    # alembic/env.py reads the URL from settings, not the environment.
    monkeypatch.setattr(settings, "database_url", PG_URL)
    return Config(str(ALEMBIC_INI))


def _unique_column_sets(inspector, table: str) -> set[tuple[str, ...]]:
    found = {tuple(item["column_names"]) for item in inspector.get_unique_constraints(table)}
    found |= {tuple(item["column_names"]) for item in inspector.get_indexes(table) if item.get("unique")}
    return found


def test_review_tables_exist_after_upgrade(pg_engine, alembic_config):
    command.upgrade(alembic_config, "head")

    with pg_engine.connect() as conn:
        assert conn.execute(text("SELECT 1")).scalar_one() == 1

    inspector = inspect(pg_engine)
    assert {
        "users",
        "businesses",
        "customers",
        "review_requests",
        "campaign_sequences",
        "campaign_executions",
    } <= set(inspector.get_table_names())
    # One active execution per review request.
    assert ("active_key",) in _unique_column_sets(inspector, "campaign_executions")
    assert "next_fire_at" in {column["name"] for column in inspector.get_columns("campaign_executions")}


@pytest.mark.skipif(
    os.getenv("ALLOW_DESTRUCTIVE_MIGRATION_TESTS") != "1",
    reason="drops every table; set ALLOW_DESTRUCTIVE_MIGRATION_TESTS=1",
)
def test_migration_downgrades_to_empty_and_back(pg_engine, alembic_config):
    command.upgrade(alembic_config, "head")
    command.downgrade(alembic_config, "base")
    assert "review_requests" not in inspect(pg_engine).get_table_names()
    command.upgrade(alembic_config, "head")
