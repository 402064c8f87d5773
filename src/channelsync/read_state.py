from __future__ import annotations

import logging
from typing import Callable, Dict, List, Protocol, Tuple

from .events import _now_ms

logger = logging.getLogger(__name__)

UnreadListener = Callable[[str, bool], None]


class ReadMarkerStore(Protocol):
    def advance(self, user_id: str, channel_id: str, read_at_ms: int) -> int: ...

    def last_read(self, user_id: str, channel_id: str) -> int | None: ...

    def list_markers(self, user_id: str) -> list[tuple[str, int]]: ...


class InMemoryReadMarkerStore:
    """Per (user, channel) last-read markers that never move backwards."""

    def __init__(self) -> None:
        self._markers: Dict[Tuple[str, str], int] = {}

    def advance(self, user_id: str, channel_id: str, read_at_ms: int) -> int:
        if read_at_ms < 0:
            raise ValueError("read_at_ms must be non-negative")
        key = (user_id, channel_id)
        current = self._markers.get(key)
        marker = read_at_ms if current is None else max(current, read_at_ms)
        self._markers[key] = marker
        return marker

    def last_read(self, user_id: str, channel_id: str) -> int | None:
        return self._markers.get((user_id, channel_id))

    def list_markers(self, user_id: str) -> list[tuple[str, int]]:
        return sorted((channel_id, marker) for (uid, channel_id), marker in self._markers.items() if uid == user_id)


class ReadStateTracker:
    """Derives per-channel unread flags for one user.

    Only the two inputs are kept: the channel's last activity and the user's
    last-read marker. ``is_unread`` recomputes from them on every call.
    """

    def __init__(
        self,
        user_id: str,
        store: ReadMarkerStore | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.user_id = user_id
        self._store: ReadMarkerStore = store if store is not None else InMemoryReadMarkerStore()
        self._now = now_func
        self._activity: Dict[str, int] = {}
        self._listeners: List[UnreadListener] = []

    def add_listener(self, listener: UnreadListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: UnreadListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def last_read(self, channel_id: str) -> int | None:
        return self._store.last_read(self.user_id, channel_id)

    def last_activity(self, channel_id: str) -> int | None:
        return self._activity.get(channel_id)

    def is_unread(self, channel_id: str) -> bool:
        activity = self._activity.get(channel_id)
        if activity is None:
            return False
        last_read = self._store.last_read(self.user_id, channel_id)
        return last_read is None or activity > last_read

    def unread_channels(self) -> list[str]:
        return sorted(channel_id for channel_id in self._activity if self.is_unread(channel_id))

    def note_activity(self, channel_id: str, activity_ms: int) -> bool:
        """Record channel activity; returns the resulting unread flag."""

        before = self.is_unread(channel_id)
        current = self._activity.get(channel_id)
        if current is None or activity_ms > current:
            self._activity[channel_id] = activity_ms
        after = self.is_unread(channel_id)
        self._emit(channel_id, before, after)
        return after

    def mark_read(self, channel_id: str, at_ms: int | None = None) -> int:
        """Advance the last-read marker to ``at_ms`` (default now), never back."""

        before = self.is_unread(channel_id)
        read_at = self._now() if at_ms is None else at_ms
        # Local and server clocks differ; reading always covers what was seen.
        activity = self._activity.get(channel_id)
        if activity is not None and at_ms is None:
            read_at = max(read_at, activity)
        marker = self._store.advance(self.user_id, channel_id, read_at)
        self._emit(channel_id, before, self.is_unread(channel_id))
        return marker

    def forget(self, channel_id: str) -> None:
        self._activity.pop(channel_id, None)

    def _emit(self, channel_id: str, before: bool, after: bool) -> None:
        if before == after:
            return
        logger.debug("channel %s unread=%s", channel_id, after)
        for listener in list(self._listeners):
            listener(channel_id, after)
