"""Fixtures for tests that run against a real SQL database."""

from collections.abc import Generator

import pytest
from sqlalchemy import Engine

from record_graph.core.autosave import AutosaveEngine
from record_graph.db import SqlRecordStore, get_engine
from tests.conftest import PirateSchema


@pytest.fixture
def sql_engine() -> Generator[Engine, None, None]:
    """A private in-memory SQLite database per test."""
    engine = get_engine("sqlite+pysqlite:///:memory:")
    yield engine
    engine.dispose()


@pytest.fixture
def sql_store(sql_engine: Engine, schema: PirateSchema) -> Generator[SqlRecordStore, None, None]:
    store = SqlRecordStore(sql_engine, schema.types)
    store.ensure_ready()
    yield store
    store.dispose()


@pytest.fixture
def sql_autosave(sql_store: SqlRecordStore, schema: PirateSchema) -> AutosaveEngine:
    return AutosaveEngine(sql_store, schema.rules)
