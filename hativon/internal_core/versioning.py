from __future__ import annotations

"""
Version stamps for optimistic concurrency on drafts.

Design intent:
- A version is an ISO-8601 UTC timestamp string, opaque to clients.
- Stamps issued by one clock are strictly increasing, even within one microsecond.
- Comparison always goes through parsed datetimes, never string order.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

_ONE_TICK = timedelta(microseconds=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_version(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    stamp = value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    return stamp.replace("+00:00", "Z")


def parse_version(raw: str) -> datetime:
    text = str(raw or "").strip()
    if not text:
        raise ValueError("Version stamp is empty.")
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"Invalid version stamp: {raw!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_newer(candidate: str, reference: Optional[str]) -> bool:
    """True when ``candidate`` is strictly later than ``reference``.

    A missing reference counts as the epoch, so any candidate is newer.
    """
    if not reference:
        return True
    return parse_version(candidate) > parse_version(reference)


class VersionClock:
    def __init__(self, now_fn: Callable[[], datetime] = utc_now) -> None:
        self._now_fn = now_fn
        self._lock = threading.Lock()
        self._last_issued: Optional[datetime] = None

    def next_after(self, current: Optional[str]) -> str:
        with self._lock:
            candidate = self._now_fn()
            if candidate.tzinfo is None:
                candidate = candidate.replace(tzinfo=timezone.utc)
            floors = [self._last_issued]
            if current:
                floors.append(parse_version(current))
            for floor in floors:
                if floor is not None and candidate <= floor:
                    candidate = floor + _ONE_TICK
            self._last_issued = candidate
            return format_version(candidate)
