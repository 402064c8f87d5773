"""Outbound writes against the row store.

``RestChatBackend`` talks to the REST interface of the hosted backend over
aiohttp. ``InMemoryChatBackend`` keeps rows in dictionaries and can echo
writes onto an ``InMemoryFeedTransport`` the way the real backend's change
feed does.
"""

from __future__ import annotations

import itertools
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Protocol, Set

import aiohttp

from .errors import AlreadyExists, BackendError, PermissionDenied
from .events import DELETE, INSERT, UPDATE, MessageRecord, _now_ms
from .transport import InMemoryFeedTransport

logger = logging.getLogger(__name__)


class ChatBackend(Protocol):
    async def send_message(
        self,
        channel_id: str,
        user_id: str,
        content: str,
        *,
        is_system_update: bool = False,
        client_ref: str | None = None,
    ) -> MessageRecord: ...

    async def get_message(self, message_id: str) -> MessageRecord: ...

    async def edit_message(self, message_id: str, content: str) -> MessageRecord: ...

    async def fetch_messages(self, channel_id: str) -> List[MessageRecord]: ...

    async def mark_read(self, user_id: str, channel_id: str, read_at_ms: int) -> None: ...

    async def list_members(self, channel_id: str) -> List[str]: ...

    async def add_member(self, channel_id: str, user_id: str, added_by: str) -> None: ...

    async def remove_member(self, channel_id: str, user_id: str) -> None: ...

    async def update_channel(self, channel_id: str, updates: Mapping[str, Any]) -> Dict[str, Any]: ...

    async def delete_channel(self, channel_id: str) -> None: ...

    async def upload_file(self, filename: str, data: bytes, content_type: str) -> str: ...


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


class RestChatBackend:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        bucket: str = "attachments",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.bucket = bucket
        self._session = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self, extra: Mapping[str, str] | None = None) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if extra:
            headers.update(extra)
        return headers

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        params: Mapping[str, str] | None = None,
        json: Any = None,
        data: bytes | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._client().request(
                method, url, params=params, json=json, data=data, headers=self._headers(headers)
            ) as response:
                text = await response.text()
                logger.debug("%s %s -> %s", method, path, response.status)
                if response.status in (401, 403):
                    raise PermissionDenied(action, authoritative=True)
                if response.status == 409:
                    raise AlreadyExists(text or action)
                if response.status >= 400:
                    raise BackendError(response.status, text)
                if not text:
                    return None
                return await response.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise BackendError(0, str(exc)) from exc

    @staticmethod
    def _single(rows: Any, action: str) -> Mapping[str, Any]:
        if isinstance(rows, list):
            if not rows:
                raise BackendError(404, f"{action}: no row returned")
            rows = rows[0]
        if not isinstance(rows, Mapping):
            raise BackendError(502, f"{action}: unexpected response")
        return rows

    async def send_message(
        self,
        channel_id: str,
        user_id: str,
        content: str,
        *,
        is_system_update: bool = False,
        client_ref: str | None = None,
    ) -> MessageRecord:
        body: Dict[str, Any] = {
            "channel_id": channel_id,
            "user_id": user_id,
            "content": content,
            "is_system_update": is_system_update,
        }
        if client_ref is not None:
            body["client_ref"] = client_ref
        rows = await self._request("POST", "/rest/v1/messages", action="send_message", json=body)
        return MessageRecord.from_mapping(self._single(rows, "send_message"))

    async def get_message(self, message_id: str) -> MessageRecord:
        rows = await self._request(
            "GET", "/rest/v1/messages", action="get_message", params={"id": f"eq.{message_id}", "select": "*"}
        )
        return MessageRecord.from_mapping(self._single(rows, "get_message"))

    async def edit_message(self, message_id: str, content: str) -> MessageRecord:
        rows = await self._request(
            "PATCH",
            "/rest/v1/messages",
            action="edit_message",
            params={"id": f"eq.{message_id}"},
            json={"content": content},
        )
        return MessageRecord.from_mapping(self._single(rows, "edit_message"))

    async def fetch_messages(self, channel_id: str) -> List[MessageRecord]:
        rows = await self._request(
            "GET",
            "/rest/v1/messages",
            action="fetch_messages",
            params={"channel_id": f"eq.{channel_id}", "order": "created_at.asc", "select": "*"},
        )
        return [MessageRecord.from_mapping(row) for row in rows or []]

    async def mark_read(self, user_id: str, channel_id: str, read_at_ms: int) -> None:
        await self._request(
            "PATCH",
            "/rest/v1/channel_members",
            action="mark_read",
            params={"channel_id": f"eq.{channel_id}", "user_id": f"eq.{user_id}"},
            json={"last_read_at": _iso(read_at_ms)},
            headers={"Prefer": "return=minimal"},
        )

    async def list_members(self, channel_id: str) -> List[str]:
        rows = await self._request(
            "GET",
            "/rest/v1/channel_members",
            action="list_members",
            params={"channel_id": f"eq.{channel_id}", "select": "user_id"},
        )
        return [row["user_id"] for row in rows or [] if isinstance(row, Mapping) and "user_id" in row]

    async def add_member(self, channel_id: str, user_id: str, added_by: str) -> None:
        await self._request(
            "POST",
            "/rest/v1/channel_members",
            action="add_member",
            json={"channel_id": channel_id, "user_id": user_id, "added_by": added_by},
        )

    async def remove_member(self, channel_id: str, user_id: str) -> None:
        await self._request(
            "DELETE",
            "/rest/v1/channel_members",
            action="remove_member",
            params={"channel_id": f"eq.{channel_id}", "user_id": f"eq.{user_id}"},
        )

    async def update_channel(self, channel_id: str, updates: Mapping[str, Any]) -> Dict[str, Any]:
        rows = await self._request(
            "PATCH", "/rest/v1/channels", action="edit_channel", params={"id": f"eq.{channel_id}"}, json=dict(updates)
        )
        return dict(self._single(rows, "edit_channel"))

    async def delete_channel(self, channel_id: str) -> None:
        await self._request("DELETE", "/rest/v1/channels", action="delete_channel", params={"id": f"eq.{channel_id}"})

    async def upload_file(self, filename: str, data: bytes, content_type: str) -> str:
        path = f"{_now_ms()}_{filename}"
        await self._request(
            "POST",
            f"/storage/v1/object/{self.bucket}/{path}",
            action="upload_file",
            data=data,
            headers={"Content-Type": content_type},
        )
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"


class InMemoryChatBackend:
    """Dictionary-backed backend; writes are echoed onto ``feed`` if given.

    A send carrying a ``client_ref`` that was already stored returns the
    original row instead of inserting a second one.
    """

    def __init__(
        self,
        feed: InMemoryFeedTransport | None = None,
        *,
        echo_client_ref: bool = True,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.feed = feed
        self.echo_client_ref = echo_client_ref
        self._now = now_func
        self._ids = itertools.count(1)
        self._messages: Dict[str, MessageRecord] = {}
        self._by_ref: Dict[str, MessageRecord] = {}
        self._members: Dict[str, Set[str]] = {}
        self._channels: Dict[str, Dict[str, Any]] = {}
        self.read_markers: Dict[tuple[str, str], int] = {}
        self.uploads: Dict[str, bytes] = {}
        self.fail_next_send: BaseException | None = None
        self.auto_echo = True
        self.writes = 0

    def add_channel(self, channel_id: str, members: Iterable[str] = (), **fields: Any) -> None:
        self._channels[channel_id] = {"id": channel_id, **fields}
        self._members.setdefault(channel_id, set()).update(members)
        if self.feed is not None:
            for user_id in members:
                self.feed.add_member(channel_id, user_id)

    def channel(self, channel_id: str) -> Dict[str, Any] | None:
        return self._channels.get(channel_id)

    def _echo(self, kind: str, message: MessageRecord, old: MessageRecord | None = None) -> None:
        if self.feed is None or not self.auto_echo:
            return
        new = message.to_mapping()
        if not self.echo_client_ref:
            new.pop("client_ref", None)
        payload: Dict[str, Any] = {"event": kind, "table": "messages", "schema": "public", "new": new}
        if old is not None:
            payload["old"] = old.to_mapping()
        self.feed.publish(payload)

    async def send_message(
        self,
        channel_id: str,
        user_id: str,
        content: str,
        *,
        is_system_update: bool = False,
        client_ref: str | None = None,
    ) -> MessageRecord:
        self.writes += 1
        if self.fail_next_send is not None:
            exc, self.fail_next_send = self.fail_next_send, None
            raise exc
        if client_ref is not None and client_ref in self._by_ref:
            return self._by_ref[client_ref]
        message = MessageRecord(
            id=f"msg-{next(self._ids):06d}",
            channel_id=channel_id,
            user_id=user_id,
            content=content,
            created_at_ms=self._now(),
            is_system_update=is_system_update,
            client_ref=client_ref,
        )
        self._messages[message.id] = message
        if client_ref is not None:
            self._by_ref[client_ref] = message
        self._echo(INSERT, message)
        return message

    def insert_remote(self, channel_id: str, user_id: str, content: str, *, is_system_update: bool = False) -> MessageRecord:
        """Store a message written by another client and echo it."""

        message = MessageRecord(
            id=f"msg-{next(self._ids):06d}",
            channel_id=channel_id,
            user_id=user_id,
            content=content,
            created_at_ms=self._now(),
            is_system_update=is_system_update,
        )
        self._messages[message.id] = message
        self._echo(INSERT, message)
        return message

    async def get_message(self, message_id: str) -> MessageRecord:
        try:
            return self._messages[message_id]
        except KeyError:
            raise BackendError(404, f"message {message_id} not found") from None

    async def edit_message(self, message_id: str, content: str) -> MessageRecord:
        self.writes += 1
        old = await self.get_message(message_id)
        updated = MessageRecord(
            id=old.id,
            channel_id=old.channel_id,
            user_id=old.user_id,
            content=content,
            created_at_ms=old.created_at_ms,
            is_system_update=old.is_system_update,
            client_ref=old.client_ref,
        )
        self._messages[message_id] = updated
        self._echo(UPDATE, updated, old)
        return updated

    def delete_remote(self, message_id: str) -> None:
        old = self._messages.pop(message_id)
        if self.feed is not None:
            self.feed.publish({"event": DELETE, "table": "messages", "schema": "public", "old": old.to_mapping()})

    async def fetch_messages(self, channel_id: str) -> List[MessageRecord]:
        rows = [m for m in self._messages.values() if m.channel_id == channel_id]
        return sorted(rows, key=lambda m: m.created_at_ms)

    async def mark_read(self, user_id: str, channel_id: str, read_at_ms: int) -> None:
        key = (user_id, channel_id)
        self.read_markers[key] = max(self.read_markers.get(key, 0), read_at_ms)

    async def list_members(self, channel_id: str) -> List[str]:
        return sorted(self._members.get(channel_id, set()))

    async def add_member(self, channel_id: str, user_id: str, added_by: str) -> None:
        self.writes += 1
        roster = self._members.setdefault(channel_id, set())
        if user_id in roster:
            raise AlreadyExists("User is already a member")
        roster.add(user_id)
        if self.feed is not None:
            self.feed.add_member(channel_id, user_id)

    async def remove_member(self, channel_id: str, user_id: str) -> None:
        self.writes += 1
        self._members.setdefault(channel_id, set()).discard(user_id)

    async def update_channel(self, channel_id: str, updates: Mapping[str, Any]) -> Dict[str, Any]:
        self.writes += 1
        channel = self._channels.setdefault(channel_id, {"id": channel_id})
        channel.update(updates)
        return dict(channel)

    async def delete_channel(self, channel_id: str) -> None:
        self.writes += 1
        self._channels.pop(channel_id, None)
        self._members.pop(channel_id, None)

    async def upload_file(self, filename: str, data: bytes, content_type: str) -> str:
        path = f"{_now_ms()}_{filename}"
        self.uploads[path] = data
        return f"memory://attachments/{path}"
