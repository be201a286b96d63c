"""Validated writes against the entry and goal tables.

Every successful write that can change a child's progress (new entry,
soft delete, new goal) drops that child's cached stats before returning, so
the next read recomputes.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import db
from engines.progress_stats import GOAL_UNITS, StatsAggregator
from errors import ValidationFailed

logger = logging.getLogger(__name__)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _whole_number(value: Any) -> int:
    # Integral floats such as 12.0 are whole numbers; any other non-integer
    # (fractions, strings, booleans) counts as zero.
    if isinstance(value, bool):
        return 0
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if not isinstance(value, int):
        return 0
    return value


class EntryWriter:
    def __init__(self, stats: StatsAggregator) -> None:
        self.stats = stats

    def record_reading(self, child_id: str, fields: Mapping[str, Any]) -> str:
        child_id = _text(child_id)
        if not child_id:
            raise ValidationFailed("child_id required")
        day = db.parse_day(fields.get("date"))
        if not day:
            raise ValidationFailed("date (YYYY-MM-DD) required")
        pages = _whole_number(fields.get("pages"))
        minutes = _whole_number(fields.get("minutes"))
        if pages < 0 or minutes < 0:
            raise ValidationFailed("pages and minutes must not be negative")
        if pages == 0 and minutes == 0:
            raise ValidationFailed("pages or minutes required")

        entry_id = db.insert_reading_entry(
            child_id,
            day,
            pages,
            minutes,
            book_title=_text(fields.get("book_title")),
            book_author=_text(fields.get("book_author")),
            notes=_text(fields.get("notes")),
            photo_key=_text(fields.get("photo_key")),
        )
        self.stats.invalidate(child_id)
        logger.info("Reading entry %s recorded for %s on %s", entry_id, child_id, day)
        return entry_id

    def record_homework(self, fields: Mapping[str, Any]) -> str:
        child_id = _text(fields.get("child_id"))
        if not child_id:
            raise ValidationFailed("child_id required")
        day = db.parse_day(fields.get("date"))
        if not day:
            raise ValidationFailed("date (YYYY-MM-DD) required")
        title = _text(fields.get("title"))
        notes = _text(fields.get("notes"))
        photo_key = _text(fields.get("photo_key"))
        if not (title or notes or photo_key):
            raise ValidationFailed("provide at least one of: title, notes, photo_key")

        entry_id = db.insert_homework_entry(child_id, day, title=title, notes=notes, photo_key=photo_key)
        self.stats.invalidate(child_id)
        logger.info("Homework entry %s recorded for %s on %s", entry_id, child_id, day)
        return entry_id

    def soft_delete(self, kind: str, entry_id: str) -> Dict[str, Any]:
        """Soft-delete an entry; repeating the call is a successful no-op."""
        child_id = db.soft_delete_entry(kind, entry_id)
        if child_id is None:
            return {"ok": True, "already_deleted": True}
        self.stats.invalidate(child_id)
        logger.info("%s entry %s soft-deleted", kind.capitalize(), entry_id)
        return {"ok": True, "already_deleted": False}

    def create_goal(self, child_id: str, fields: Mapping[str, Any]) -> str:
        child_id = _text(child_id)
        if not child_id:
            raise ValidationFailed("child_id required")
        unit = fields.get("unit")
        if unit not in GOAL_UNITS:
            raise ValidationFailed("unit must be pages or minutes")
        target = fields.get("target_value")
        if isinstance(target, bool) or not isinstance(target, int) or target <= 0:
            raise ValidationFailed("target_value must be a positive integer")
        starts_on = db.parse_day(fields.get("starts_on"))
        if not starts_on:
            raise ValidationFailed("starts_on (YYYY-MM-DD) required")
        ends_on = None
        if fields.get("ends_on") is not None:
            ends_on = db.parse_day(fields.get("ends_on"))
            if not ends_on or ends_on <= starts_on:
                raise ValidationFailed("ends_on must be a YYYY-MM-DD date after starts_on")

        goal_id = db.insert_goal(child_id, unit, target, starts_on, ends_on)
        self.stats.invalidate(child_id)
        logger.info("Goal %s created for %s (%s %s from %s)", goal_id, child_id, target, unit, starts_on)
        return goal_id
