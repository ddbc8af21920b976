"""
Pytest configuration for dbobject.

Provides fixtures for:
- An in-memory query backend (unit tests)
- Settings and a live connection for integration tests
"""

from __future__ import annotations

import os
from typing import Generator

import psycopg2
import pytest

from db_object import DBObject
from db_query import Database
from db_settings import DBSettings
from tests.fakes import FakeStore, bind_store


@pytest.fixture
def store(monkeypatch: pytest.MonkeyPatch) -> FakeStore:
    """
    Route every DBObject query to a fresh in-memory store.
    """
    fake = FakeStore()
    monkeypatch.setattr(DBObject, "query_class", bind_store(fake))
    return fake


@pytest.fixture(scope="session")
def test_settings() -> DBSettings:
    """
    Settings for integration tests, overridable via environment variables.
    """
    return DBSettings(
        host=os.getenv("DB_HOST", "localhost"),
        port=int(os.getenv("DB_PORT", "5432")),
        user=os.getenv("DB_USER", "postgres"),
        password=os.getenv("DB_PASSWORD", "postgres"),
        dbname=os.getenv("DB_NAME", "dbobject"),
    )


@pytest.fixture(scope="session")
def db_connection_available(test_settings: DBSettings) -> bool:
    """
    Check if database is reachable.
    """
    try:
        conn = psycopg2.connect(connect_timeout=5, **test_settings.connect_params())
    except psycopg2.Error:
        return False
    conn.close()
    return True


@pytest.fixture
def database(
    test_settings: DBSettings, db_connection_available: bool
) -> Generator[type, None, None]:
    """
    Connect Database for one test; skips when Postgres is not reachable.
    """
    if not db_connection_available:
        pytest.skip("Database not available for integration tests")
    Database.connect_from_settings(test_settings)
    try:
        yield Database
    finally:
        Database.set_logger(None)
        Database.close()
