import logging
import os
import re
import sqlite3
import time
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from db_pool import SQLiteConnectionPool
from errors import NotFound, SchemaNotReady, StoreUnavailable, ValidationFailed
from schema_guard import ColumnSpec, SchemaDescriptor, SchemaStatus, ensure_schema, table_columns

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()) -> sqlite3.Cursor:
    with _pool.get_connection() as con:
        try:
            cur = con.execute(sql, tuple(params))
            con.commit()
        except sqlite3.Error as exc:
            raise StoreUnavailable("statement failed", exc) from exc
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        try:
            return con.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailable("query failed", exc) from exc


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid4())


# -------------- managed tables --------------
READING_TABLE = "reading_entry"
HOMEWORK_TABLE = "homework_entry"

READING_SCHEMA = SchemaDescriptor(
    READING_TABLE,
    (
        ColumnSpec("id", "TEXT", primary_key=True),
        ColumnSpec("child_id", "TEXT"),
        ColumnSpec("date", "TEXT"),
        ColumnSpec("pages", "INTEGER", nullable=False, default="0"),
        ColumnSpec("minutes", "INTEGER", nullable=False, default="0"),
        ColumnSpec("book_title", "TEXT"),
        ColumnSpec("book_author", "TEXT"),
        ColumnSpec("notes", "TEXT"),
        ColumnSpec("photo_key", "TEXT"),
        ColumnSpec("status", "TEXT"),
        ColumnSpec("created_by", "TEXT"),
        ColumnSpec("created_at", "INTEGER"),
        ColumnSpec("updated_at", "INTEGER"),
        ColumnSpec("deleted_at", "INTEGER"),
    ),
)

HOMEWORK_SCHEMA = SchemaDescriptor(
    HOMEWORK_TABLE,
    (
        ColumnSpec("id", "TEXT", primary_key=True),
        ColumnSpec("child_id", "TEXT"),
        ColumnSpec("date", "TEXT"),
        ColumnSpec("title", "TEXT"),
        ColumnSpec("notes", "TEXT"),
        ColumnSpec("photo_key", "TEXT"),
        ColumnSpec("created_at", "INTEGER"),
        ColumnSpec("updated_at", "INTEGER"),
        ColumnSpec("deleted_at", "INTEGER"),
    ),
)

ENTRY_SCHEMAS: Dict[str, SchemaDescriptor] = {
    "reading": READING_SCHEMA,
    "homework": HOMEWORK_SCHEMA,
}


def _entry_schema(kind: str) -> SchemaDescriptor:
    try:
        return ENTRY_SCHEMAS[kind]
    except KeyError:
        raise ValueError(f"unknown entry kind: {kind}") from None


def _create_entry_index(con: sqlite3.Connection, table: str) -> None:
    try:
        con.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_child_date ON {table}(child_id, date)"
        )
        con.commit()
    except sqlite3.OperationalError as exc:
        con.rollback()
        logger.warning("Index on %s not created: %s", table, exc)


def ensure_entry_schema(kind: str, index: bool = False) -> SchemaStatus:
    """Run the schema guardian for an entry table and return its status.

    The (child_id, date) index is created when the table changed, or always
    when ``index`` is set (startup).
    """
    descriptor = _entry_schema(kind)
    with _conn() as con:
        status = ensure_schema(con, descriptor)
        changed = status.created or status.rebuilt or any(
            outcome.status == "added" for outcome in status.columns
        )
        if status.conformant and (index or changed):
            _create_entry_index(con, descriptor.table)
    return status


def require_entry_schema(kind: str) -> SchemaStatus:
    status = ensure_entry_schema(kind)
    if status.still_missing:
        raise SchemaNotReady(status.table, status.still_missing)
    return status


# -------------- schema --------------
def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS child (
              id           TEXT PRIMARY KEY,
              household_id TEXT,
              name         TEXT NOT NULL,
              primary_unit TEXT,
              created_at   INTEGER NOT NULL,
              updated_at   INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS goal (
              id           TEXT PRIMARY KEY,
              child_id     TEXT NOT NULL,
              unit         TEXT NOT NULL,
              target_value INTEGER NOT NULL,
              starts_on    TEXT NOT NULL,
              ends_on      TEXT,
              created_by   TEXT,
              created_at   INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_goal_child ON goal(child_id, starts_on);
            """
        )
    for kind in ENTRY_SCHEMAS:
        status = ensure_entry_schema(kind, index=True)
        if status.still_missing:
            logger.warning(
                "Table %s not ready after init: missing %s",
                status.table,
                ", ".join(status.still_missing),
            )


def describe_schema() -> Dict[str, List[str]]:
    with _conn() as con:
        return {
            table: table_columns(con, table)
            for table in ("child", "goal", READING_TABLE, HOMEWORK_TABLE)
        }


# -------------- validation helpers --------------
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MONTH_RE = re.compile(r"^\d{4}-\d{2}$")


def parse_day(value: Any) -> Optional[str]:
    """Return ``value`` when it is a real ``YYYY-MM-DD`` calendar date."""
    if not isinstance(value, str) or not _DATE_RE.match(value):
        return None
    try:
        date.fromisoformat(value)
    except ValueError:
        return None
    return value


def month_bounds(month: Optional[str] = None) -> Tuple[str, str]:
    """Return ``[YYYY-MM-01, next-month-01)`` for ``month`` (default: current UTC month)."""
    if month is None:
        month = datetime.now(timezone.utc).strftime("%Y-%m")
    if not isinstance(month, str) or not _MONTH_RE.match(month):
        raise ValidationFailed("month must be YYYY-MM")
    year, mon = (int(part) for part in month.split("-"))
    if not 1 <= mon <= 12:
        raise ValidationFailed("month must be YYYY-MM")
    start = f"{year:04d}-{mon:02d}-01"
    if mon == 12:
        end = f"{year + 1:04d}-01-01"
    else:
        end = f"{year:04d}-{mon + 1:02d}-01"
    return start, end


# -------------- children & goals --------------
def list_children() -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT id, household_id, name, primary_unit FROM child ORDER BY name ASC, id ASC"
    )
    return [dict(row) for row in rows]


def upsert_child(
    child_id: str,
    name: str,
    household_id: Optional[str] = None,
    primary_unit: Optional[str] = None,
) -> None:
    now = now_ms()
    _exec(
        """
        INSERT OR IGNORE INTO child (id, household_id, name, primary_unit, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (child_id, household_id, name, primary_unit, now, now),
    )


def insert_goal(
    child_id: str,
    unit: str,
    target_value: int,
    starts_on: str,
    ends_on: Optional[str] = None,
    created_by: Optional[str] = "parent",
    goal_id: Optional[str] = None,
) -> str:
    goal_id = goal_id or new_id()
    _exec(
        """
        INSERT OR REPLACE INTO goal (id, child_id, unit, target_value, starts_on, ends_on, created_by, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (goal_id, child_id, unit, int(target_value), starts_on, ends_on, created_by, now_ms()),
    )
    return goal_id


def list_goals(child_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, child_id, unit, target_value, starts_on, ends_on, created_at
          FROM goal
         WHERE child_id = ?
         ORDER BY starts_on ASC, id ASC
        """,
        (child_id,),
    )
    return [dict(row) for row in rows]


# -------------- entries --------------
def insert_reading_entry(
    child_id: str,
    day: str,
    pages: int,
    minutes: int,
    book_title: Optional[str] = None,
    book_author: Optional[str] = None,
    notes: Optional[str] = None,
    photo_key: Optional[str] = None,
) -> str:
    require_entry_schema("reading")
    entry_id = new_id()
    now = now_ms()
    _exec(
        """
        INSERT INTO reading_entry
          (id, child_id, date, pages, minutes, book_title, book_author, notes, photo_key,
           status, created_by, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'ok', 'child', ?, ?)
        """,
        (entry_id, child_id, day, pages, minutes, book_title, book_author, notes, photo_key, now, now),
    )
    return entry_id


def insert_homework_entry(
    child_id: str,
    day: str,
    title: Optional[str] = None,
    notes: Optional[str] = None,
    photo_key: Optional[str] = None,
) -> str:
    require_entry_schema("homework")
    entry_id = new_id()
    now = now_ms()
    _exec(
        """
        INSERT INTO homework_entry
          (id, child_id, date, title, notes, photo_key, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (entry_id, child_id, day, title, notes, photo_key, now, now),
    )
    return entry_id


def soft_delete_entry(kind: str, entry_id: str) -> Optional[str]:
    """Mark an entry deleted.

    Returns the owning child id when this call deleted the row, ``None`` when
    the row is unknown or was already deleted.
    """
    descriptor = _entry_schema(kind)
    require_entry_schema(kind)
    with _conn() as con:
        try:
            row = con.execute(
                f"SELECT child_id FROM {descriptor.table} WHERE id = ? AND deleted_at IS NULL",
                (entry_id,),
            ).fetchone()
            if row is None:
                return None
            now = now_ms()
            cur = con.execute(
                f"""
                UPDATE {descriptor.table}
                   SET deleted_at = ?, updated_at = ?
                 WHERE id = ? AND deleted_at IS NULL
                """,
                (now, now, entry_id),
            )
            con.commit()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"cannot delete {descriptor.table} {entry_id}", exc) from exc
    if cur.rowcount == 0:
        return None
    return row["child_id"]


def get_entry(kind: str, entry_id: str) -> Dict[str, Any]:
    descriptor = _entry_schema(kind)
    require_entry_schema(kind)
    rows = _query(f"SELECT * FROM {descriptor.table} WHERE id = ?", (entry_id,))
    if not rows:
        raise NotFound(f"{kind} entry {entry_id} not found")
    return dict(rows[0])


def list_reading_entries(child_id: str, limit: int = 100) -> list[Dict[str, Any]]:
    require_entry_schema("reading")
    rows = _query(
        """
        SELECT re.id, re.child_id, re.date, re.pages, re.minutes, re.book_title, re.book_author,
               re.photo_key, re.notes, re.created_at, c.name AS child_name
          FROM reading_entry re
          LEFT JOIN child c ON c.id = re.child_id
         WHERE re.child_id = ? AND re.deleted_at IS NULL
         ORDER BY re.created_at DESC
         LIMIT ?
        """,
        (child_id, limit),
    )
    return [dict(row) for row in rows]


def list_homework_entries(limit: int = 100, child_id: Optional[str] = None) -> list[Dict[str, Any]]:
    require_entry_schema("homework")
    params: list = []
    where = "he.deleted_at IS NULL"
    if child_id is not None:
        where += " AND he.child_id = ?"
        params.append(child_id)
    params.append(limit)
    rows = _query(
        f"""
        SELECT he.id, he.child_id, he.date, he.title, he.notes, he.photo_key, he.created_at,
               c.name AS child_name
          FROM homework_entry he
          LEFT JOIN child c ON c.id = he.child_id
         WHERE {where}
         ORDER BY he.created_at DESC
         LIMIT ?
        """,
        params,
    )
    return [dict(row) for row in rows]


def daily_totals(child_id: str, window_days: int = 30) -> list[Dict[str, Any]]:
    """Per-day page and minute sums for the child's most recent active days.

    Only days with at least one live entry appear; the result is ordered
    oldest first.
    """
    require_entry_schema("reading")
    rows = _query(
        """
        WITH days AS (
          SELECT date FROM reading_entry
           WHERE child_id = ? AND deleted_at IS NULL
           GROUP BY date
           ORDER BY date DESC
           LIMIT ?
        )
        SELECT d.date,
               COALESCE(SUM(re.pages), 0)   AS pages,
               COALESCE(SUM(re.minutes), 0) AS minutes
          FROM days d
          LEFT JOIN reading_entry re
            ON re.child_id = ? AND re.date = d.date AND re.deleted_at IS NULL
         GROUP BY d.date
         ORDER BY d.date ASC
        """,
        (child_id, int(window_days), child_id),
    )
    return [dict(row) for row in rows]


def leaderboard(month: Optional[str] = None) -> list[Dict[str, Any]]:
    start, end = month_bounds(month)
    require_entry_schema("reading")
    rows = _query(
        """
        SELECT c.id AS child_id, c.name AS name, COALESCE(SUM(re.pages), 0) AS total_pages
          FROM child c
          LEFT JOIN reading_entry re
            ON re.child_id = c.id
           AND re.date >= ? AND re.date < ?
           AND re.deleted_at IS NULL
         GROUP BY c.id, c.name
         ORDER BY total_pages DESC, c.name ASC
        """,
        (start, end),
    )
    return [dict(row) for row in rows]


# -------------- seed --------------
DEMO_CHILDREN = (
    ("child-1", "Linda"),
    ("child-2", "Lara"),
)
DEMO_GOALS = (
    ("goal-1", "child-1", "pages", 20, "2025-10-25"),
    ("goal-2", "child-2", "pages", 15, "2025-10-25"),
)


def seed_demo_data() -> list[str]:
    init()
    for child_id, name in DEMO_CHILDREN:
        upsert_child(child_id, name, household_id="home-1", primary_unit="pages")
    for goal_id, child_id, unit, target, starts_on in DEMO_GOALS:
        insert_goal(child_id, unit, target, starts_on, goal_id=goal_id)
    return [child_id for child_id, _ in DEMO_CHILDREN] + [goal[0] for goal in DEMO_GOALS]
