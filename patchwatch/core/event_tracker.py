"""Installation-history windowing and new-event tracking."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Iterable, List, Sequence, Tuple

from .models import HistoryEvent, TrackedEvent


def event_fingerprint(event: HistoryEvent) -> str:
    """Deterministic hash of (timestamp, resource id, status, event type)."""

    timestamp = event.last_modified.isoformat() if event.last_modified else ""
    payload = f"{timestamp}|{event.resource_id}|{event.status.value}|{event.event_type}"
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def select_recent_events(
    events: Iterable[HistoryEvent],
    now: datetime,
    window: timedelta,
    limit: int,
) -> List[HistoryEvent]:
    """Keep events modified inside ``window``, newest first, at most ``limit``.

    Events without a modification time cannot be placed in the window and
    are dropped.
    """

    cutoff = _as_utc(now) - window
    recent = [
        event
        for event in events
        if event.last_modified is not None and _as_utc(event.last_modified) >= cutoff
    ]
    recent.sort(key=lambda event: _as_utc(event.last_modified), reverse=True)
    return recent[: max(0, limit)]


@dataclass(frozen=True)
class FingerprintSet:
    """Fingerprints shown in the previous refresh cycle.

    ``primed`` is False until the first cycle has been recorded; the first
    cycle never marks anything as new.
    """

    fingerprints: FrozenSet[str] = frozenset()
    primed: bool = False

    @classmethod
    def empty(cls) -> "FingerprintSet":
        return cls()

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self.fingerprints

    def __len__(self) -> int:
        return len(self.fingerprints)


def mark_new_events(
    events: Sequence[HistoryEvent], previous: FingerprintSet
) -> Tuple[List[TrackedEvent], FingerprintSet]:
    """Flag events unseen in ``previous`` and return the replacement state.

    The returned state holds exactly this cycle's fingerprints; anything
    that dropped out of the window is forgotten.
    """

    tracked: List[TrackedEvent] = []
    for event in events:
        fingerprint = event_fingerprint(event)
        tracked.append(
            TrackedEvent(
                event=event,
                fingerprint=fingerprint,
                is_new=previous.primed and fingerprint not in previous,
            )
        )
    current = FingerprintSet(
        fingerprints=frozenset(item.fingerprint for item in tracked), primed=True
    )
    return tracked, current


def format_time_ago(timestamp: datetime, now: datetime) -> str:
    """Render the age of ``timestamp`` as ``Ns/Nm/Nh/Nd ago``."""

    seconds = int((_as_utc(now) - _as_utc(timestamp)).total_seconds())
    seconds = max(0, seconds)
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"
