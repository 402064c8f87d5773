"""Typed change-feed events.

The push transport hands over untyped dictionaries; they are mapped onto a
closed set of event classes here, before anything else in the package sees
them.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Union

from .errors import MalformedEvent

MESSAGES_TABLE = "messages"

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_timestamp_ms(value: Any) -> int:
    """Accept integer milliseconds or an ISO-8601 string."""

    if isinstance(value, bool):
        raise MalformedEvent("timestamp must not be a boolean")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedEvent(f"invalid timestamp: {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    raise MalformedEvent(f"invalid timestamp: {value!r}")


@dataclass(frozen=True)
class MessageRecord:
    """A confirmed message row as stored by the backend."""

    id: str
    channel_id: str
    user_id: str
    content: str
    created_at_ms: int
    is_system_update: bool = False
    client_ref: str | None = None

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "MessageRecord":
        try:
            message_id = row["id"]
            channel_id = row["channel_id"]
            user_id = row["user_id"]
        except KeyError as exc:
            raise MalformedEvent(f"message record missing {exc.args[0]}") from exc
        if not all(isinstance(v, str) and v for v in (message_id, channel_id, user_id)):
            raise MalformedEvent("id, channel_id and user_id must be non-empty strings")
        content = row.get("content", "")
        if not isinstance(content, str):
            raise MalformedEvent("content must be a string")
        created = row.get("created_at", row.get("timestamp"))
        client_ref = row.get("client_ref")
        return cls(
            id=message_id,
            channel_id=channel_id,
            user_id=user_id,
            content=content,
            created_at_ms=parse_timestamp_ms(created),
            is_system_update=bool(row.get("is_system_update", False)),
            client_ref=client_ref if isinstance(client_ref, str) and client_ref else None,
        )

    def to_mapping(self) -> dict[str, Any]:
        row: dict[str, Any] = {
            "id": self.id,
            "channel_id": self.channel_id,
            "user_id": self.user_id,
            "content": self.content,
            "created_at": self.created_at_ms,
            "is_system_update": self.is_system_update,
        }
        if self.client_ref is not None:
            row["client_ref"] = self.client_ref
        return row


@dataclass(frozen=True)
class InsertEvent:
    message: MessageRecord

    @property
    def channel_id(self) -> str:
        return self.message.channel_id


@dataclass(frozen=True)
class UpdateEvent:
    message: MessageRecord
    old: MessageRecord | None = None

    @property
    def channel_id(self) -> str:
        return self.message.channel_id


@dataclass(frozen=True)
class DeleteEvent:
    message_id: str
    channel_id: str | None = None
    old: MessageRecord | None = None


FeedEvent = Union[InsertEvent, UpdateEvent, DeleteEvent]


def _optional_record(row: Any) -> MessageRecord | None:
    if not isinstance(row, Mapping) or not row:
        return None
    try:
        return MessageRecord.from_mapping(row)
    except MalformedEvent:
        return None


def parse_feed_event(raw: Mapping[str, Any]) -> FeedEvent:
    """Map a raw change-feed payload onto a typed event.

    Both the ``{event, new, old}`` shape and the realtime ``{type, record,
    old_record}`` shape are accepted. Only the ``messages`` table is handled.
    """

    if not isinstance(raw, Mapping):
        raise MalformedEvent("event payload must be an object")
    table = raw.get("table", MESSAGES_TABLE)
    if table != MESSAGES_TABLE:
        raise MalformedEvent(f"unsupported table: {table!r}")
    kind = raw.get("event") or raw.get("type") or raw.get("eventType")
    new = raw.get("new", raw.get("record"))
    old = raw.get("old", raw.get("old_record"))

    if kind == INSERT:
        if not isinstance(new, Mapping):
            raise MalformedEvent("INSERT without new record")
        return InsertEvent(message=MessageRecord.from_mapping(new))
    if kind == UPDATE:
        if not isinstance(new, Mapping):
            raise MalformedEvent("UPDATE without new record")
        return UpdateEvent(message=MessageRecord.from_mapping(new), old=_optional_record(old))
    if kind == DELETE:
        if not isinstance(old, Mapping) or not isinstance(old.get("id"), str):
            raise MalformedEvent("DELETE without old record id")
        old_record = _optional_record(old)
        channel_id = old.get("channel_id") if isinstance(old.get("channel_id"), str) else None
        return DeleteEvent(message_id=old["id"], channel_id=channel_id, old=old_record)
    raise MalformedEvent(f"unsupported event type: {kind!r}")
