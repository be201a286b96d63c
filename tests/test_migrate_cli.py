import json
import sqlite3

import pytest

import db
from scripts import migrate


@pytest.fixture
def restore_pool():
    previous_pool, previous_path = db._pool, db.DB_PATH
    yield
    db._pool.close_all()
    db._pool, db.DB_PATH = previous_pool, previous_path


def test_migrate_creates_tables(tmp_path, capsys, restore_pool):
    path = tmp_path / "cli.db"

    assert migrate.main(["--db", str(path)]) == 0

    report = json.loads(capsys.readouterr().out)
    assert set(report) == {"reading", "homework"}
    assert report["reading"]["created"] is True
    assert report["reading"]["still_missing"] == []


def test_migrate_single_kind_rebuilds_legacy_table(tmp_path, capsys, restore_pool):
    path = tmp_path / "legacy.db"
    con = sqlite3.connect(str(path))
    con.execute("CREATE TABLE reading_entry (child_id TEXT, date TEXT, pages INTEGER)")
    con.execute("INSERT INTO reading_entry VALUES ('child-1', '2025-10-01', 7)")
    con.commit()
    con.close()

    assert migrate.main(["--db", str(path), "--kind", "reading"]) == 0

    report = json.loads(capsys.readouterr().out)
    assert list(report) == ["reading"]
    assert report["reading"]["rebuilt"] is True
    con = sqlite3.connect(str(path))
    assert con.execute("SELECT child_id, pages FROM reading_entry").fetchall() == [("child-1", 7)]
    con.close()


def test_migrate_reports_tables_not_ready(tmp_path, capsys, restore_pool):
    path = tmp_path / "locked.db"
    con = sqlite3.connect(str(path))
    con.execute("CREATE TABLE homework_entry (title TEXT)")
    con.execute("INSERT INTO homework_entry VALUES ('Maths')")
    con.execute("CREATE TABLE _schema_lock (name TEXT PRIMARY KEY, owner TEXT NOT NULL, acquired_at INTEGER NOT NULL)")
    con.execute("INSERT INTO _schema_lock VALUES ('homework_entry', 'elsewhere', 99999999999999)")
    con.commit()
    con.close()

    assert migrate.main(["--db", str(path), "--kind", "homework"]) == 1

    captured = capsys.readouterr()
    assert json.loads(captured.out)["homework"]["still_missing"] == ["id"]
    assert "homework" in captured.err
