import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    previous = db._pool
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    yield str(db_path)
    db._pool.close_all()
    db._pool = previous


@pytest.fixture
def raw_con(tmp_path):
    """A bare SQLite connection for exercising the schema guardian directly."""
    import sqlite3

    con = sqlite3.connect(str(tmp_path / "guard.db"))
    con.row_factory = sqlite3.Row
    yield con
    con.close()


@pytest.fixture
def stats():
    from engines.caching import MemoryTTLCache
    from engines.progress_stats import StatsAggregator

    return StatsAggregator(cache=MemoryTTLCache())


@pytest.fixture
def writer(stats):
    from entry_writer import EntryWriter

    return EntryWriter(stats)
