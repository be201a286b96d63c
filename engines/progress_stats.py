"""Day-bucketed reading progress joined against time-bounded goals.

``StatsAggregator.daily_stats`` returns, oldest first, one record per day on
which the child logged reading:

    {"date", "pages", "minutes", "unit", "goal", "met"}

``unit``/``goal`` come from the goal in force on that day (see
``resolve_goal``). Results for the default window are cached and the cache
entry is dropped by ``invalidate`` whenever the child's entries or goals
change. The cache is disposable: any cache failure degrades to a recompute.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import db
from engines.caching import NullCache

_LOGGER = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 30
DEFAULT_TTL_SECONDS = 300
GOAL_UNITS = ("pages", "minutes")


def cache_key(child_id: str, window_days: int = DEFAULT_WINDOW_DAYS) -> str:
    return f"stats:{child_id}:{int(window_days)}d"


def resolve_goal(goals: Sequence[Mapping[str, Any]], day: str) -> Optional[Mapping[str, Any]]:
    """Pick the goal in force on ``day``.

    A goal applies when ``starts_on <= day`` and ``ends_on`` is empty or later
    than ``day``. Among overlapping goals the latest ``starts_on`` wins; equal
    starts fall back to the latest ``created_at`` and then the greatest id.
    """
    candidates = [
        goal
        for goal in goals
        if goal["starts_on"] <= day and (not goal.get("ends_on") or day < goal["ends_on"])
    ]
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda goal: (goal["starts_on"], goal.get("created_at") or 0, str(goal["id"])),
    )


def goal_met(pages: int, minutes: int, goal: Optional[Mapping[str, Any]]) -> bool:
    if goal is None:
        return False
    target = goal.get("target_value")
    if target is None:
        return False
    if goal.get("unit") == "pages":
        return pages >= target
    if goal.get("unit") == "minutes":
        return minutes >= target
    return False


class StatsAggregator:
    """Computes and caches per-day progress for one child at a time."""

    def __init__(
        self,
        cache: Any = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        default_window: int = DEFAULT_WINDOW_DAYS,
        totals_loader: Optional[Callable[[str, int], List[Dict[str, Any]]]] = None,
        goals_loader: Optional[Callable[[str], List[Dict[str, Any]]]] = None,
    ) -> None:
        self.cache = cache if cache is not None else NullCache()
        self.ttl_seconds = int(ttl_seconds)
        self.default_window = int(default_window)
        self._load_totals = totals_loader or db.daily_totals
        self._load_goals = goals_loader or db.list_goals
        # Bumped by invalidate(); a result computed across a bump is not cached.
        self._generations: Dict[str, int] = {}
        self._generations_lock = threading.Lock()

    def daily_stats(self, child_id: str, window_days: Optional[int] = None) -> List[Dict[str, Any]]:
        window = int(window_days or self.default_window)
        # Only the default window is cached; invalidation only knows that key.
        cacheable = window == self.default_window
        key = cache_key(child_id, window)
        generation = self._generation(child_id)

        if cacheable:
            cached = self._cache_get(key)
            if cached is not None:
                return cached

        result = self.compute(child_id, window)

        # Writes in other processes sharing a Redis cache are only bounded by the TTL.
        if cacheable and generation == self._generation(child_id):
            self._cache_put(key, result)
        return result

    def compute(self, child_id: str, window_days: int) -> List[Dict[str, Any]]:
        totals = self._load_totals(child_id, window_days)
        goals = self._load_goals(child_id) if totals else []
        out: List[Dict[str, Any]] = []
        for row in totals:
            pages = int(row["pages"] or 0)
            minutes = int(row["minutes"] or 0)
            goal = resolve_goal(goals, row["date"])
            out.append(
                {
                    "date": row["date"],
                    "pages": pages,
                    "minutes": minutes,
                    "unit": goal["unit"] if goal else None,
                    "goal": goal["target_value"] if goal else None,
                    "met": goal_met(pages, minutes, goal),
                }
            )
        return out

    def invalidate(self, child_id: str) -> None:
        key = cache_key(child_id, self.default_window)
        with self._generations_lock:
            self._generations[child_id] = self._generations.get(child_id, 0) + 1
        try:
            self.cache.delete(key)
        except Exception as exc:
            _LOGGER.warning("Cache delete failed for %s: %s", key, exc)
            return
        _LOGGER.info("Invalidated cached stats for %s", child_id)

    def _generation(self, child_id: str) -> int:
        with self._generations_lock:
            return self._generations.get(child_id, 0)

    def _cache_get(self, key: str) -> Optional[List[Dict[str, Any]]]:
        try:
            return self.cache.get(key)
        except Exception as exc:
            _LOGGER.warning("Cache read failed for %s: %s", key, exc)
            return None

    def _cache_put(self, key: str, value: List[Dict[str, Any]]) -> None:
        try:
            self.cache.put(key, value, self.ttl_seconds)
        except Exception as exc:
            _LOGGER.warning("Cache write failed for %s: %s", key, exc)
