"""
Pytest configuration for the lazy sequence tests.

Puts the project root on the Python path so tests can import lazy, retry,
models, utils and app, and provides shared fixtures.
"""

import sqlite3
import sys
from pathlib import Path

# Add the parent directory to the Python path
parent_dir = Path(__file__).parent.parent
if str(parent_dir) not in sys.path:
    sys.path.insert(0, str(parent_dir))

import pytest


class FakeClock:
    """Millisecond clock for retry tests; sleeping advances time instantly."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms

    def sleep(self, ms: float) -> None:
        self.sleeps.append(ms)
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sqlite_db():
    """In-memory database with 25 numbered rows."""
    conn = sqlite3.connect(":memory:")
    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE items (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL
        )
    """)
    cursor.executemany(
        "INSERT INTO items (id, name) VALUES (?, ?)",
        [(i, f"item-{i}") for i in range(1, 26)]
    )
    conn.commit()
    yield conn
    conn.close()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from app import app
    with TestClient(app) as test_client:
        yield test_client
