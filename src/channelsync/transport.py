from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, Mapping, Protocol, Set

EventHandler = Callable[[str, Dict[str, Any]], None]
ErrorHandler = Callable[[BaseException], None]


class TransportError(ConnectionError):
    """The push transport could not join, or lost its connection."""


class FeedTransport(Protocol):
    def bind(self, on_event: EventHandler, on_error: ErrorHandler) -> None: ...

    async def join(self, topic: str, filter: Mapping[str, Any]) -> None: ...

    async def leave(self, topic: str) -> None: ...

    async def close(self) -> None: ...


def _matches(filter: Mapping[str, Any], payload: Mapping[str, Any], members: Mapping[str, Set[str]]) -> bool:
    row = payload.get("new") or payload.get("record") or payload.get("old") or payload.get("old_record") or {}
    channel_id = row.get("channel_id") if isinstance(row, Mapping) else None
    if "channel_id" in filter:
        return channel_id == filter["channel_id"]
    if "channel_ids" in filter:
        return channel_id in set(filter["channel_ids"])
    if "user_id" in filter:
        return filter["user_id"] in members.get(channel_id or "", set())
    return True


class InMemoryFeedTransport:
    """Topic hub standing in for the backend's push transport.

    ``publish`` fans a raw row event out to every joined topic whose filter
    matches, so an insert can reach both a per-channel and a global topic.
    """

    def __init__(self, members: Mapping[str, Iterable[str]] | None = None) -> None:
        self._members: Dict[str, Set[str]] = {k: set(v) for k, v in (members or {}).items()}
        self._topics: Dict[str, Mapping[str, Any]] = {}
        self._on_event: EventHandler | None = None
        self._on_error: ErrorHandler | None = None
        self.fail_joins = 0
        self.join_calls = 0
        self.leave_calls: list[str] = []
        self.closed = False

    def bind(self, on_event: EventHandler, on_error: ErrorHandler) -> None:
        self._on_event = on_event
        self._on_error = on_error

    def add_member(self, channel_id: str, user_id: str) -> None:
        self._members.setdefault(channel_id, set()).add(user_id)

    @property
    def topics(self) -> list[str]:
        return sorted(self._topics)

    async def join(self, topic: str, filter: Mapping[str, Any]) -> None:
        self.join_calls += 1
        if self.fail_joins > 0:
            self.fail_joins -= 1
            raise TransportError(f"join {topic} refused")
        self._topics[topic] = dict(filter)

    async def leave(self, topic: str) -> None:
        self.leave_calls.append(topic)
        self._topics.pop(topic, None)

    async def close(self) -> None:
        self._topics.clear()
        self.closed = True

    def publish(self, payload: Dict[str, Any]) -> int:
        """Deliver ``payload`` to matching topics; returns the delivery count."""

        delivered = 0
        for topic, filter in list(self._topics.items()):
            if _matches(filter, payload, self._members) and self._on_event is not None:
                self._on_event(topic, payload)
                delivered += 1
        return delivered

    def deliver(self, topic: str, payload: Dict[str, Any]) -> None:
        """Push ``payload`` to ``topic`` whether or not it is joined."""

        if self._on_event is not None:
            self._on_event(topic, payload)

    def drop(self, exc: BaseException | None = None) -> None:
        """Simulate a lost connection: every joined topic is forgotten."""

        self._topics.clear()
        if self._on_error is not None:
            self._on_error(exc or TransportError("connection lost"))
