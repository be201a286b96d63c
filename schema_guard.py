"""Self-healing schema reconciliation for SQLite tables.

``ensure_schema`` brings a live table into conformance with a
``SchemaDescriptor`` without losing rows:

1. bootstrap the table with only its primary key when it does not exist;
2. add every missing column with ``ALTER TABLE ... ADD COLUMN``, each attempt
   isolated so one failure never blocks the others;
3. re-introspect, and when columns are still missing rebuild the table through
   a shadow copy and swap it in place of the original.

The steady-state path is a single ``sqlite_master`` lookup plus one
``PRAGMA table_info`` and issues no DDL.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from errors import StoreUnavailable

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SHADOW_PREFIX = "_new_"
LOCK_TABLE = "_schema_lock"
LOCK_STALE_MS = 60_000


def _now_ms() -> int:
    return int(time.time() * 1000)


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return name


@dataclass(frozen=True)
class ColumnSpec:
    """One required column: name, intended type, nullability and default.

    ``default`` is a SQL literal (``"0"``, ``"'ok'"``) and must be constant,
    otherwise SQLite refuses it in ``ADD COLUMN``.
    """

    name: str
    type: str = "TEXT"
    nullable: bool = True
    primary_key: bool = False
    default: Optional[str] = None

    def __post_init__(self) -> None:
        _check_identifier(self.name)
        _check_identifier(self.type)

    def add_definition(self) -> str:
        parts = [self.name, self.type]
        if self.primary_key:
            parts.append("PRIMARY KEY")
        if not self.nullable:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        return " ".join(parts)

    def shadow_definition(self) -> str:
        # Rebuilt tables relax NOT NULL so legacy rows without a value survive.
        parts = [self.name, self.type]
        if self.primary_key:
            parts.append("PRIMARY KEY")
        elif self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        return " ".join(parts)


@dataclass(frozen=True)
class SchemaDescriptor:
    table: str
    columns: Tuple[ColumnSpec, ...]

    def __post_init__(self) -> None:
        _check_identifier(self.table)
        keys = [column for column in self.columns if column.primary_key]
        if len(keys) != 1:
            raise ValueError(f"{self.table}: exactly one primary key column required")

    @property
    def primary_key(self) -> ColumnSpec:
        return next(column for column in self.columns if column.primary_key)

    @property
    def names(self) -> List[str]:
        return [column.name for column in self.columns]

    @property
    def shadow_table(self) -> str:
        return f"{SHADOW_PREFIX}{self.table}"

    def missing_from(self, live: Sequence[str]) -> List[str]:
        present = set(live)
        return [name for name in self.names if name not in present]

    def bootstrap_sql(self) -> str:
        key = self.primary_key
        return f"CREATE TABLE IF NOT EXISTS {self.table} ({key.name} {key.type} PRIMARY KEY)"

    def shadow_sql(self) -> str:
        body = ",\n  ".join(column.shadow_definition() for column in self.columns)
        return f"CREATE TABLE IF NOT EXISTS {self.shadow_table} (\n  {body}\n)"


@dataclass
class ColumnOutcome:
    name: str
    status: str  # "present", "added" or "failed"
    error: Optional[str] = None


@dataclass
class SchemaStatus:
    table: str
    conformant: bool
    rebuilt: bool = False
    created: bool = False
    still_missing: List[str] = field(default_factory=list)
    columns: List[ColumnOutcome] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -------------- introspection --------------
def table_exists(con: sqlite3.Connection, table: str) -> bool:
    row = con.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def table_columns(con: sqlite3.Connection, table: str) -> List[str]:
    """Return live column names; an introspection failure means "none known"."""
    try:
        info = con.execute(f"PRAGMA table_info({_check_identifier(table)})").fetchall()
    except sqlite3.Error as exc:
        logger.warning("Introspection of %s failed, assuming no columns: %s", table, exc)
        return []
    return [row[1] for row in info]


# -------------- additive path --------------
def _bootstrap(con: sqlite3.Connection, descriptor: SchemaDescriptor) -> bool:
    try:
        if table_exists(con, descriptor.table):
            return False
        con.execute(descriptor.bootstrap_sql())
        con.commit()
    except sqlite3.Error as exc:
        con.rollback()
        raise StoreUnavailable(f"cannot create table {descriptor.table}", exc) from exc
    logger.info("Bootstrapped table %s with primary key only", descriptor.table)
    return True


def add_missing_columns(
    con: sqlite3.Connection, descriptor: SchemaDescriptor, live: Sequence[str]
) -> List[ColumnOutcome]:
    """Try ``ADD COLUMN`` for every absent column, each attempt isolated.

    Outcomes are informational; whether a rebuild is needed is decided by
    re-introspecting afterwards.
    """
    present = set(live)
    outcomes: List[ColumnOutcome] = []
    for column in descriptor.columns:
        if column.name in present:
            outcomes.append(ColumnOutcome(column.name, "present"))
            continue
        try:
            con.execute(
                f"ALTER TABLE {descriptor.table} ADD COLUMN {column.add_definition()}"
            )
            con.commit()
        except sqlite3.Error as exc:
            con.rollback()
            logger.warning(
                "Could not add column %s.%s: %s", descriptor.table, column.name, exc
            )
            outcomes.append(ColumnOutcome(column.name, "failed", str(exc)))
            continue
        logger.info("Added column %s.%s", descriptor.table, column.name)
        outcomes.append(ColumnOutcome(column.name, "added"))
    return outcomes


# -------------- rebuild path --------------
def _acquire_rebuild_gate(con: sqlite3.Connection, table: str, owner: str) -> bool:
    now = _now_ms()
    con.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {LOCK_TABLE} (
          name        TEXT PRIMARY KEY,
          owner       TEXT NOT NULL,
          acquired_at INTEGER NOT NULL
        )
        """
    )
    con.execute(
        f"DELETE FROM {LOCK_TABLE} WHERE name = ? AND acquired_at < ?",
        (table, now - LOCK_STALE_MS),
    )
    cur = con.execute(
        f"INSERT OR IGNORE INTO {LOCK_TABLE} (name, owner, acquired_at) VALUES (?, ?, ?)",
        (table, owner, now),
    )
    con.commit()
    return cur.rowcount == 1


def _release_rebuild_gate(con: sqlite3.Connection, table: str, owner: str) -> None:
    con.rollback()
    con.execute(f"DELETE FROM {LOCK_TABLE} WHERE name = ? AND owner = ?", (table, owner))
    con.commit()


def _copy_rows_individually(con: sqlite3.Connection, descriptor: SchemaDescriptor) -> int:
    rows = con.execute(f"SELECT * FROM {descriptor.table}").fetchall()
    key = descriptor.primary_key.name
    batch = []
    for row in rows:
        source = {name: row[name] for name in row.keys()}
        values = []
        for name in descriptor.names:
            value = source[name] if name in source else None
            if name == key and value is None:
                value = str(uuid4())
            values.append(value)
        batch.append(values)
    columns = ", ".join(descriptor.names)
    placeholders = ", ".join("?" for _ in descriptor.names)
    con.executemany(
        f"INSERT OR IGNORE INTO {descriptor.shadow_table} ({columns}) VALUES ({placeholders})",
        batch,
    )
    con.commit()
    return len(batch)


def _source_columns(con: sqlite3.Connection, table: str) -> List[str]:
    # Read from the table itself; PRAGMA introspection may come back empty.
    cur = con.execute(f"SELECT * FROM {table} LIMIT 0")
    return [column[0] for column in cur.description]


def rebuild_table(con: sqlite3.Connection, descriptor: SchemaDescriptor) -> int:
    """Copy ``descriptor.table`` into a full-shape shadow table and swap it in.

    Returns the number of source rows. Primary key values are carried over
    unchanged, so references to rebuilt rows stay valid.
    """
    table, shadow = descriptor.table, descriptor.shadow_table
    key = descriptor.primary_key.name

    try:
        present = set(_source_columns(con, table))
        con.execute(descriptor.shadow_sql())
        if descriptor.missing_from(table_columns(con, shadow)):
            # Leftover shadow from an older descriptor; it cannot take the copy.
            con.execute(f"DROP TABLE {shadow}")
            con.execute(descriptor.shadow_sql())
        con.commit()
        source_rows = con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    except sqlite3.Error as exc:
        con.rollback()
        raise StoreUnavailable(f"cannot prepare rebuild of {table}", exc) from exc

    shared = [key] + [name for name in descriptor.names if name in present and name != key]
    column_list = ", ".join(shared)

    try:
        con.execute(f"INSERT INTO {shadow} ({column_list}) SELECT {column_list} FROM {table}")
        con.commit()
    except sqlite3.Error as exc:
        con.rollback()
        logger.warning("Set-based copy into %s failed, copying row by row: %s", shadow, exc)
        try:
            _copy_rows_individually(con, descriptor)
        except sqlite3.Error as copy_exc:
            con.rollback()
            raise StoreUnavailable(f"cannot copy rows of {table}", copy_exc) from copy_exc

    try:
        con.execute("BEGIN IMMEDIATE")
        con.execute(f"DROP TABLE {table}")
        con.execute(f"ALTER TABLE {shadow} RENAME TO {table}")
        con.commit()
    except sqlite3.Error as exc:
        con.rollback()
        raise StoreUnavailable(f"cannot swap rebuilt table {table}", exc) from exc

    logger.info("Rebuilt table %s (%d source rows)", table, source_rows)
    return source_rows


def _rebuild_under_gate(con: sqlite3.Connection, descriptor: SchemaDescriptor) -> bool:
    owner = str(uuid4())
    try:
        acquired = _acquire_rebuild_gate(con, descriptor.table, owner)
    except sqlite3.Error as exc:
        con.rollback()
        raise StoreUnavailable(f"cannot take rebuild gate for {descriptor.table}", exc) from exc
    if not acquired:
        logger.warning("Rebuild of %s already in progress elsewhere", descriptor.table)
        return False
    try:
        # Another writer may have finished a rebuild while we waited.
        live = table_columns(con, descriptor.table)
        if not descriptor.missing_from(live):
            return False
        rebuild_table(con, descriptor)
        return True
    finally:
        _release_rebuild_gate(con, descriptor.table, owner)


def ensure_schema(con: sqlite3.Connection, descriptor: SchemaDescriptor) -> SchemaStatus:
    """Reconcile ``descriptor.table`` with its required columns.

    Safe to call on every request: idempotent, and free of DDL once the table
    is conformant. Callers must treat a non-empty ``still_missing`` as
    "table not ready" and not read or write it.
    """
    created = _bootstrap(con, descriptor)
    live = table_columns(con, descriptor.table)
    missing = descriptor.missing_from(live)
    if not missing:
        return SchemaStatus(
            table=descriptor.table,
            conformant=True,
            created=created,
            columns=[ColumnOutcome(name, "present") for name in descriptor.names],
        )

    outcomes = add_missing_columns(con, descriptor, live)
    missing = descriptor.missing_from(table_columns(con, descriptor.table))

    rebuilt = False
    if missing:
        rebuilt = _rebuild_under_gate(con, descriptor)
        missing = descriptor.missing_from(table_columns(con, descriptor.table))

    return SchemaStatus(
        table=descriptor.table,
        conformant=not missing,
        rebuilt=rebuilt,
        created=created,
        still_missing=missing,
        columns=outcomes,
    )
