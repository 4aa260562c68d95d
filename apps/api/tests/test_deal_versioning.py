from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.crm.versioning import VERSION_TOLERANCE, ensure_utc, next_version, version_drift, versions_match


STORED = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def test_tolerance_is_one_second() -> None:
    assert VERSION_TOLERANCE == timedelta(milliseconds=1000)


@pytest.mark.parametrize(
    ("offset", "expected"),
    [
        (timedelta(0), True),
        (timedelta(milliseconds=500), True),
        (timedelta(milliseconds=-500), True),
        (timedelta(milliseconds=1000), True),
        (timedelta(milliseconds=-1000), True),
        (timedelta(milliseconds=1001), False),
        (timedelta(seconds=-2), False),
    ],
)
def test_versions_match_boundary(offset: timedelta, expected: bool) -> None:
    assert versions_match(STORED + offset, STORED) is expected


def test_versions_match_accepts_custom_tolerance() -> None:
    assert versions_match(STORED + timedelta(seconds=4), STORED, tolerance=timedelta(seconds=5))
    assert not versions_match(STORED + timedelta(seconds=4), STORED, tolerance=timedelta(seconds=3))


def test_naive_values_are_treated_as_utc() -> None:
    naive = STORED.replace(tzinfo=None)

    assert ensure_utc(naive) == STORED
    assert version_drift(naive, STORED) == timedelta(0)


def test_offsets_are_normalized_before_comparison() -> None:
    seoul = timezone(timedelta(hours=9))
    same_instant = STORED.astimezone(seoul)

    assert versions_match(same_instant, STORED)
    assert ensure_utc(same_instant).tzinfo == timezone.utc


def test_next_version_uses_clock_when_it_is_ahead() -> None:
    now = STORED + timedelta(seconds=3)

    assert next_version(STORED, now) == now


@pytest.mark.parametrize("now", [STORED, STORED - timedelta(hours=1)])
def test_next_version_is_strictly_greater_than_previous(now: datetime) -> None:
    assert next_version(STORED, now) == STORED + timedelta(microseconds=1)
