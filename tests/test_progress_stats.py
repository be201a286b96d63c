import db
from engines.caching import MemoryTTLCache, NullCache
from engines.progress_stats import StatsAggregator, cache_key, goal_met, resolve_goal
from entry_writer import EntryWriter


class ExplodingCache:
    def get(self, key):
        raise ConnectionError("cache down")

    def put(self, key, value, ttl_seconds):
        raise ConnectionError("cache down")

    def delete(self, key):
        raise ConnectionError("cache down")


def _child_with_goal(child_id="child-1", target=20, unit="pages", starts_on="2025-10-01"):
    db.upsert_child(child_id, "Linda")
    db.insert_goal(child_id, unit, target, starts_on)


def test_new_entry_is_visible_after_cached_read(temp_db, writer, stats):
    _child_with_goal()
    writer.record_reading("child-1", {"date": "2025-10-25", "pages": 10})

    first = stats.daily_stats("child-1")
    assert first == [
        {"date": "2025-10-25", "pages": 10, "minutes": 0, "unit": "pages", "goal": 20, "met": False}
    ]
    assert stats.cache.get(cache_key("child-1")) == first

    writer.record_reading("child-1", {"date": "2025-10-25", "pages": 15})

    second = stats.daily_stats("child-1")
    assert second[0]["pages"] == 25
    assert second[0]["met"] is True


def test_cache_hit_is_served_without_querying(temp_db, stats):
    stats.cache.put(cache_key("child-9"), [{"date": "2025-01-01", "pages": 1}], 300)
    assert stats.daily_stats("child-9") == [{"date": "2025-01-01", "pages": 1}]


def test_goal_resolution_follows_start_dates(temp_db, writer, stats):
    db.upsert_child("child-1", "Linda")
    db.insert_goal("child-1", "pages", 20, "2025-10-01")
    db.insert_goal("child-1", "pages", 30, "2025-10-15")
    writer.record_reading("child-1", {"date": "2025-10-10", "pages": 25})
    writer.record_reading("child-1", {"date": "2025-10-20", "pages": 25})

    result = stats.daily_stats("child-1")

    assert [row["date"] for row in result] == ["2025-10-10", "2025-10-20"]
    assert result[0]["goal"] == 20 and result[0]["met"] is True
    assert result[1]["goal"] == 30 and result[1]["met"] is False


def test_days_without_goal_are_never_met(temp_db, writer, stats):
    db.upsert_child("child-1", "Linda")
    db.insert_goal("child-1", "minutes", 10, "2025-11-01")
    writer.record_reading("child-1", {"date": "2025-10-31", "minutes": 60})
    writer.record_reading("child-1", {"date": "2025-11-01", "minutes": 12})

    result = stats.daily_stats("child-1")

    assert result[0] == {
        "date": "2025-10-31", "pages": 0, "minutes": 60, "unit": None, "goal": None, "met": False
    }
    assert result[1]["unit"] == "minutes"
    assert result[1]["met"] is True


def test_window_keeps_most_recent_active_days(temp_db, writer, stats):
    db.upsert_child("child-1", "Linda")
    for day in ("2025-10-01", "2025-10-05", "2025-10-09"):
        writer.record_reading("child-1", {"date": day, "pages": 3})

    result = stats.daily_stats("child-1", window_days=2)

    assert [row["date"] for row in result] == ["2025-10-05", "2025-10-09"]
    assert stats.cache.get(cache_key("child-1", 2)) is None


def test_soft_deleted_entry_no_longer_counts(temp_db, writer, stats):
    _child_with_goal()
    keep = writer.record_reading("child-1", {"date": "2025-10-25", "pages": 10})
    drop = writer.record_reading("child-1", {"date": "2025-10-25", "pages": 15})
    assert stats.daily_stats("child-1")[0]["pages"] == 25

    assert writer.soft_delete("reading", drop) == {"ok": True, "already_deleted": False}
    assert stats.daily_stats("child-1")[0]["pages"] == 10

    writer.soft_delete("reading", keep)
    assert stats.daily_stats("child-1") == []


def test_goal_creation_invalidates_cache(temp_db, writer, stats):
    db.upsert_child("child-1", "Linda")
    writer.record_reading("child-1", {"date": "2025-10-25", "pages": 10})
    assert stats.daily_stats("child-1")[0]["goal"] is None

    writer.create_goal("child-1", {"unit": "pages", "target_value": 5, "starts_on": "2025-10-01"})

    assert stats.daily_stats("child-1")[0]["met"] is True


def test_works_without_a_cache(temp_db):
    aggregator = StatsAggregator(cache=NullCache())
    EntryWriter(aggregator).record_reading("child-1", {"date": "2025-10-25", "pages": 4})
    assert aggregator.daily_stats("child-1")[0]["pages"] == 4


def test_cache_failures_are_swallowed(temp_db):
    aggregator = StatsAggregator(cache=ExplodingCache())
    writer = EntryWriter(aggregator)
    writer.record_reading("child-1", {"date": "2025-10-25", "pages": 4})
    assert aggregator.daily_stats("child-1")[0]["pages"] == 4


def test_cached_value_expires_with_ttl(temp_db):
    now = [100.0]
    aggregator = StatsAggregator(cache=MemoryTTLCache(clock=lambda: now[0]), ttl_seconds=300)
    writer = EntryWriter(aggregator)
    writer.record_reading("child-1", {"date": "2025-10-25", "pages": 4})
    aggregator.daily_stats("child-1")
    # Write behind the aggregator's back: only expiry can reveal it.
    db.insert_reading_entry("child-1", "2025-10-25", 6, 0)

    assert aggregator.daily_stats("child-1")[0]["pages"] == 4
    now[0] += 301
    assert aggregator.daily_stats("child-1")[0]["pages"] == 10


def test_resolve_goal_tie_breaks_are_deterministic():
    goals = [
        {"id": "b", "unit": "pages", "target_value": 10, "starts_on": "2025-10-01", "ends_on": None, "created_at": 5},
        {"id": "a", "unit": "pages", "target_value": 40, "starts_on": "2025-10-01", "ends_on": None, "created_at": 9},
        {"id": "c", "unit": "pages", "target_value": 99, "starts_on": "2025-09-01", "ends_on": "2025-10-02", "created_at": 1},
    ]
    assert resolve_goal(goals, "2025-10-01")["id"] == "a"
    assert resolve_goal(list(reversed(goals)), "2025-10-01")["id"] == "a"
    assert resolve_goal(goals, "2025-09-15")["id"] == "c"
    assert resolve_goal(goals, "2025-08-31") is None

    same_instant = [dict(goal, created_at=1) for goal in goals[:2]]
    assert resolve_goal(same_instant, "2025-10-03")["id"] == "b"


def test_goal_end_date_is_exclusive():
    goals = [{"id": "g", "unit": "pages", "target_value": 1, "starts_on": "2025-10-01", "ends_on": "2025-10-05"}]
    assert resolve_goal(goals, "2025-10-04") is not None
    assert resolve_goal(goals, "2025-10-05") is None


def test_goal_met_uses_goal_unit():
    assert goal_met(20, 0, {"unit": "pages", "target_value": 20}) is True
    assert goal_met(20, 0, {"unit": "minutes", "target_value": 20}) is False
    assert goal_met(0, 30, {"unit": "minutes", "target_value": 20}) is True
    assert goal_met(99, 99, None) is False


def test_result_computed_across_a_write_is_not_cached():
    cache = MemoryTTLCache()
    aggregator = None

    def totals_with_concurrent_write(child_id, window_days):
        # A write lands after the totals were read but before the put.
        aggregator.invalidate(child_id)
        return [{"date": "2025-10-25", "pages": 10, "minutes": 0}]

    aggregator = StatsAggregator(
        cache=cache,
        totals_loader=totals_with_concurrent_write,
        goals_loader=lambda child_id: [],
    )

    assert aggregator.daily_stats("child-1")[0]["pages"] == 10
    assert cache.get(cache_key("child-1")) is None

    aggregator._load_totals = lambda child_id, window_days: [
        {"date": "2025-10-25", "pages": 25, "minutes": 0}
    ]
    assert aggregator.daily_stats("child-1")[0]["pages"] == 25
    assert cache.get(cache_key("child-1"))[0]["pages"] == 25
