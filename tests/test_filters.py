from datetime import date, datetime, timezone

from conftest import NOW, make_item
from filters import DATE_RANGE, apply_filters, date_threshold, is_older_than, summarize_counts
from models import FilterConfig


def test_status_exclusion_only_hits_configured_statuses():
    """A is viewed and excluded, B is browsed and kept when only 'viewed' is excluded."""
    items = [make_item("A-001"), make_item("B-002")]
    status_of = {"A-001": "viewed", "B-002": "browsed"}
    cfg = FilterConfig(date_range_months=3, exclude_statuses=frozenset({"viewed"}))

    outcome = apply_filters(items, status_of, cfg, NOW)

    assert [i.id for i in outcome.accepted] == ["B-002"]
    assert outcome.counts["viewed"] == 1
    assert outcome.excluded == 1


def test_first_matching_rule_counts_the_item_once():
    old_and_viewed = make_item("OLD-001", released=date(2023, 1, 1))
    items = [old_and_viewed, make_item("NEW-002")]
    cfg = FilterConfig(date_range_months=3, exclude_statuses=frozenset({"viewed"}))

    outcome = apply_filters(items, {"OLD-001": "viewed"}, cfg, NOW)

    assert summarize_counts(outcome.counts) == {DATE_RANGE: 1}
    assert [i.id for i in outcome.accepted] == ["NEW-002"]


def test_unlimited_date_range_and_missing_dates_are_kept():
    items = [make_item("OLD-001", released=date(2001, 1, 1)), make_item("NODATE-1", released=None)]

    unlimited = apply_filters(items, {}, FilterConfig(date_range_months=0), NOW)
    assert len(unlimited.accepted) == 2

    limited = apply_filters(items, {}, FilterConfig(date_range_months=3), NOW)
    assert [i.id for i in limited.accepted] == ["NODATE-1"]


def test_accepted_items_keep_page_order():
    items = [make_item(f"ABC-00{n}") for n in range(5)]
    outcome = apply_filters(items, {"ABC-002": "want"}, FilterConfig(exclude_statuses=frozenset({"want"})), NOW)
    assert [i.id for i in outcome.accepted] == ["ABC-000", "ABC-001", "ABC-003", "ABC-004"]
    assert outcome.counts == {"want": 1}


def test_date_threshold_uses_calendar_months():
    assert date_threshold(3, NOW) == datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)
    assert date_threshold(1, datetime(2024, 3, 31, tzinfo=timezone.utc)) == datetime(2024, 2, 29, tzinfo=timezone.utc)
    assert date_threshold(0, NOW) is None
    assert date_threshold(-1, NOW) is None


def test_release_on_the_threshold_day_is_out_of_range():
    """Released at midnight on 2024-03-15, which is before 12:00 that day."""
    threshold = date_threshold(3, NOW)
    assert is_older_than(make_item("X-1", released=date(2024, 3, 14)), threshold)
    assert is_older_than(make_item("X-2", released=date(2024, 3, 15)), threshold)
    assert not is_older_than(make_item("X-3", released=date(2024, 3, 16)), threshold)
    assert not is_older_than(make_item("X-4", released=None), threshold)
    assert not is_older_than(make_item("X-5", released=date(1999, 1, 1)), None)


def test_threshold_at_midnight_keeps_that_day():
    threshold = date_threshold(3, datetime(2024, 6, 15, tzinfo=timezone.utc))
    assert not is_older_than(make_item("X-1", released=date(2024, 3, 15)), threshold)
    assert is_older_than(make_item("X-2", released=date(2024, 3, 14)), threshold)
