"""Deal version tokens.

A deal's ``updated_at`` doubles as its optimistic-concurrency version token.
Clients echo back the value they last read; the helpers here decide whether
that echo still names the stored version and compute the next token.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

# Timestamps lose precision on their way through JSON and client caches
# (e.g. truncation to whole seconds), so tokens this close are one version.
VERSION_TOLERANCE = timedelta(milliseconds=1000)

_MIN_STEP = timedelta(microseconds=1)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def version_drift(client_token: datetime, stored_token: datetime) -> timedelta:
    return abs(ensure_utc(client_token) - ensure_utc(stored_token))


def versions_match(
    client_token: datetime,
    stored_token: datetime,
    tolerance: timedelta = VERSION_TOLERANCE,
) -> bool:
    """True when the client's token names the stored version.

    The boundary is inclusive: a drift of exactly ``tolerance`` still matches.
    """
    return version_drift(client_token, stored_token) <= tolerance


def next_version(previous: datetime, now: datetime) -> datetime:
    """Token for a mutation committed at ``now``, strictly after ``previous``."""
    previous_utc = ensure_utc(previous)
    now_utc = ensure_utc(now)
    if now_utc > previous_utc:
        return now_utc
    return previous_utc + _MIN_STEP
