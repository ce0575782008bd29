"""
Shared fixtures for Theia tests.
"""

import builtins
import contextlib
import datetime
import os
import sqlite3
import tempfile

import pytest


@pytest.fixture
def temp_db(monkeypatch):
    """Create temporary test database with the full, migrated schema."""
    import theia.config as config
    import theia.database as database

    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    monkeypatch.setattr(config, "DATABASE_FILE", path)
    monkeypatch.setattr(database, "DATABASE_FILE", path)

    try:
        database.init_db(path)
        yield path
    finally:
        for suffix in ("", "-wal", "-shm"):
            with contextlib.suppress(builtins.BaseException):
                os.unlink(path + suffix)


@pytest.fixture
def store(temp_db):
    from theia.aggregation_store import AggregationStore

    return AggregationStore(temp_db, timeout=5.0)


@pytest.fixture
def db_rows(temp_db):
    """Returns a helper that fetches all rows of a table as dicts."""

    def fetch(table, order_by="rowid"):
        conn = sqlite3.connect(temp_db)
        conn.row_factory = sqlite3.Row
        try:
            return [dict(row) for row in conn.execute(f"SELECT * FROM {table} ORDER BY {order_by}")]
        finally:
            conn.close()

    return fetch


@pytest.fixture
def sample_log_lines():
    """Three requests within one hour: a browser page, a curl API call and a stylesheet."""
    return [
        '192.168.1.1 - - [24/Dec/2025:10:30:45 +0000] "GET /index.html HTTP/1.1" 200 1234 "https://google.com" "Mozilla/5.0"',
        '10.0.0.5 - - [24/Dec/2025:10:31:00 +0000] "GET /api/data HTTP/1.1" 200 5678 "-" "curl/7.68.0"',
        '192.168.1.100 - - [24/Dec/2025:10:31:15 +0000] "GET /style.css HTTP/1.1" 200 900 "https://example.com" "Mozilla/5.0"',
    ]


@pytest.fixture
def make_event():
    """Factory for VisitEvents with sensible defaults."""
    from theia.log_processor import VisitEvent

    def factory(**overrides):
        values = {
            "timestamp": datetime.datetime(2025, 12, 24, 10, 30, 45, tzinfo=datetime.timezone.utc),
            "path": "/index.html",
            "referrer": "https://google.com",
            "user_agent": "Mozilla/5.0",
            "host": "example.com",
            "status_code": 200,
            "bytes_sent": 1234,
            "fingerprint": "a" * 64,
            "is_bot": False,
            "is_static": False,
        }
        values.update(overrides)
        return VisitEvent(**values)

    return factory
