"""Tests for the display-side 5-field cron evaluator."""

from datetime import datetime, timezone

import pytest

from scheduler.cron import next_run, parse


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize("pattern, now, expected", [
    ("0 */6 * * *", _utc(2026, 10, 18, 7, 30), _utc(2026, 10, 18, 12, 0)),
    ("0 */6 * * *", _utc(2026, 10, 18, 12, 0), _utc(2026, 10, 18, 18, 0)),
    ("0 2 * * *", _utc(2026, 10, 18, 3, 0), _utc(2026, 10, 19, 2, 0)),
    ("0 * * * *", _utc(2026, 10, 18, 7, 59, 30), _utc(2026, 10, 18, 8, 0)),
    ("0 5 * * 0", _utc(2026, 10, 14, 0, 0), _utc(2026, 10, 18, 5, 0)),     # next Sunday
    ("0 9 * * 1", _utc(2026, 10, 18, 10, 0), _utc(2026, 10, 19, 9, 0)),    # Monday
    ("30 8 1 * *", _utc(2026, 10, 18, 0, 0), _utc(2026, 11, 1, 8, 30)),
    ("0 0 29 2 *", _utc(2026, 3, 1, 0, 0), _utc(2028, 2, 29, 0, 0)),
])
def test_next_run(pattern, now, expected):
    assert next_run(pattern, now) == expected


def test_next_run_is_strictly_after_now():
    now = _utc(2026, 10, 18, 6, 0)
    assert next_run("0 6 * * *", now) == _utc(2026, 10, 19, 6, 0)


def test_day_of_week_seven_is_sunday():
    assert parse("0 0 * * 7").days_of_week == frozenset({0})


def test_dom_and_dow_restricted_match_either():
    # The 1st of the month OR any Monday, whichever comes first
    now = _utc(2026, 10, 18, 12, 0)                      # a Sunday
    assert next_run("0 0 1 * 1", now) == _utc(2026, 10, 19, 0, 0)


def test_comma_lists():
    fields = parse("0,30 9,17 * * *")
    assert fields.minutes == (0, 30)
    assert fields.hours == (9, 17)


@pytest.mark.parametrize("pattern", [
    "* * * *",          # too few fields
    "60 * * * *",       # minute out of range
    "* 24 * * *",
    "*/0 * * * *",
    "a * * * *",
    "0 0 31 2 *",       # never fires
])
def test_invalid_patterns(pattern):
    with pytest.raises(ValueError):
        next_run(pattern, _utc(2026, 10, 18))
