import logging
from datetime import date
from itertools import product

import pytest

from campus_alerts.timeinterval import (
    Bucket,
    MalformedDateError,
    MalformedTimeError,
    normalize_date,
    overlaps,
    temporal_bucket,
    to_minutes,
)


@pytest.mark.parametrize(
    "value, expected",
    [("00:00", 0), ("09:30", 570), ("9:05", 545), ("23:59", 1439), (" 12:00 ", 720)],
)
def test_to_minutes(value, expected):
    assert to_minutes(value) == expected


@pytest.mark.parametrize("value", ["", "0930", "9:5", "aa:bb", "24:00", "12:60", "12:00:00", "-1:00"])
def test_to_minutes_rejects_malformed(value):
    with pytest.raises(MalformedTimeError):
        to_minutes(value)


def test_malformed_time_is_value_error():
    assert issubclass(MalformedTimeError, ValueError)


def test_overlaps_is_symmetric():
    points = [0, 30, 60, 90, 120]
    intervals = [(s, e) for s, e in product(points, points) if s < e]
    for (a_start, a_end), (b_start, b_end) in product(intervals, intervals):
        assert overlaps(a_start, a_end, b_start, b_end) == overlaps(b_start, b_end, a_start, a_end)


def test_touching_intervals_do_not_overlap():
    assert not overlaps(540, 600, 600, 660)
    assert not overlaps(600, 660, 540, 600)


def test_containing_interval_overlaps():
    assert overlaps(480, 720, 540, 600)
    assert overlaps(540, 600, 540, 600)
    assert overlaps(540, 600, 480, 720)


def test_partial_overlaps():
    assert overlaps(570, 630, 540, 600)  # starts inside
    assert overlaps(510, 570, 540, 600)  # ends inside


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2026-10-16", "2026-10-16"),
        ("2026-1-5", "2026-01-05"),
        ("2026-10-16T08:00:00.000Z", "2026-10-16"),
    ],
)
def test_normalize_date(value, expected):
    assert normalize_date(value) == expected


@pytest.mark.parametrize("value", ["", "16/10/2026", "2026-13-01", "2026-02-30", "tomorrow"])
def test_normalize_date_rejects_malformed(value):
    with pytest.raises(MalformedDateError):
        normalize_date(value)


def test_temporal_bucket(today):
    assert temporal_bucket("2026-10-16", today) is Bucket.TODAY
    assert temporal_bucket("2026-10-17", today) is Bucket.TOMORROW
    assert temporal_bucket("2026-10-18", today) is Bucket.NONE
    assert temporal_bucket("2026-10-15", today) is Bucket.NONE


def test_temporal_bucket_crosses_month_end():
    assert temporal_bucket("2026-11-1", date(2026, 10, 31)) is Bucket.TOMORROW


def test_temporal_bucket_degrades_on_malformed_date(today, caplog):
    with caplog.at_level(logging.WARNING, logger="campus_alerts.timeinterval"):
        assert temporal_bucket("not-a-date", today) is Bucket.NONE
    assert "not-a-date" in caplog.text
