"""aiohttp websocket transport for the backend's realtime endpoint.

Frames are JSON objects ``{"topic", "event", "payload", "ref"}``. A topic is
joined with ``phx_join`` carrying a ``postgres_changes`` filter on the
``messages`` table; the server answers with ``phx_reply`` and then pushes
``postgres_changes`` frames whose ``payload.data`` is the row event.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, Mapping

import aiohttp

from .transport import ErrorHandler, EventHandler, TransportError

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "realtime:"
HEARTBEAT_TOPIC = "phoenix"


def postgres_filter(filter: Mapping[str, Any]) -> str | None:
    if "channel_id" in filter:
        return f"channel_id=eq.{filter['channel_id']}"
    if "channel_ids" in filter:
        return "channel_id=in.(" + ",".join(filter["channel_ids"]) + ")"
    return None


class RealtimeTransport:
    def __init__(
        self,
        url: str,
        *,
        api_key: str = "",
        heartbeat_interval_s: float = 25.0,
        join_timeout_s: float = 10.0,
        schema: str = "public",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.heartbeat_interval_s = heartbeat_interval_s
        self.join_timeout_s = join_timeout_s
        self.schema = schema
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._refs = itertools.count(1)
        self._pending: Dict[str, asyncio.Future] = {}
        self._joined: set[str] = set()
        self._on_event: EventHandler | None = None
        self._on_error: ErrorHandler | None = None
        self._closing = False
        self._connect_lock = asyncio.Lock()

    def bind(self, on_event: EventHandler, on_error: ErrorHandler) -> None:
        self._on_event = on_event
        self._on_error = on_error

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.connected:
                return
            self._closing = False
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
                self._owns_session = True
            params = {"vsn": "1.0.0"}
            if self.api_key:
                params["apikey"] = self.api_key
            try:
                self._ws = await self._session.ws_connect(self.url, params=params, heartbeat=None)
            except (aiohttp.ClientError, OSError) as exc:
                raise TransportError(f"connect to {self.url} failed: {exc}") from exc
            self._reader_task = asyncio.create_task(self._reader(self._ws))
            self._heartbeat_task = asyncio.create_task(self._heartbeat(self._ws))
            logger.info("connected to %s", self.url)

    async def join(self, topic: str, filter: Mapping[str, Any]) -> None:
        await self.connect()
        change: Dict[str, Any] = {"event": "*", "schema": self.schema, "table": "messages"}
        condition = postgres_filter(filter)
        if condition is not None:
            change["filter"] = condition
        payload = {"config": {"postgres_changes": [change]}}
        if self.api_key:
            payload["access_token"] = self.api_key
        reply = await self._request(TOPIC_PREFIX + topic, "phx_join", payload)
        if reply.get("status") != "ok":
            raise TransportError(f"join {topic} rejected: {reply.get('response')}")
        self._joined.add(topic)

    async def leave(self, topic: str) -> None:
        self._joined.discard(topic)
        if not self.connected:
            return
        await self._send(TOPIC_PREFIX + topic, "phx_leave", {})

    async def close(self) -> None:
        self._closing = True
        for task in (self._heartbeat_task, self._reader_task):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._heartbeat_task, self._reader_task) if t is not None),
            return_exceptions=True,
        )
        self._heartbeat_task = None
        self._reader_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        self._fail_pending(TransportError("transport closed"))
        self._joined.clear()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _send(self, topic: str, event: str, payload: Mapping[str, Any]) -> str:
        ref = str(next(self._refs))
        await self._write(topic, event, payload, ref)
        return ref

    async def _write(self, topic: str, event: str, payload: Mapping[str, Any], ref: str) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError("not connected")
        try:
            await self._ws.send_json({"topic": topic, "event": event, "payload": dict(payload), "ref": ref})
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def _request(self, topic: str, event: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        ref = str(next(self._refs))
        future: asyncio.Future = loop.create_future()
        self._pending[ref] = future
        try:
            await self._write(topic, event, payload, ref)
            try:
                return await asyncio.wait_for(future, timeout=self.join_timeout_s)
            except asyncio.TimeoutError as exc:
                raise TransportError(f"{event} on {topic} timed out") from exc
        finally:
            self._pending.pop(ref, None)

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            while not ws.closed:
                await asyncio.sleep(self.heartbeat_interval_s)
                if ws.closed:
                    return
                await ws.send_json({"topic": HEARTBEAT_TOPIC, "event": "heartbeat", "payload": {}, "ref": str(next(self._refs))})
        except asyncio.CancelledError:
            return
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.debug("heartbeat stopped: %s", exc)

    async def _reader(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning("ignoring malformed realtime frame")
                        continue
                    if isinstance(frame, dict):
                        self._handle_frame(frame)
                elif msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                    break
        except asyncio.CancelledError:
            return
        if not self._closing:
            await self._lost(TransportError("realtime connection lost"))

    def _handle_frame(self, frame: Dict[str, Any]) -> None:
        event = frame.get("event")
        topic = str(frame.get("topic") or "")
        payload = frame.get("payload") or {}
        if event == "phx_reply":
            future = self._pending.get(str(frame.get("ref")))
            if future is not None and not future.done():
                future.set_result(payload if isinstance(payload, dict) else {})
            return
        if not topic.startswith(TOPIC_PREFIX):
            return
        local_topic = topic[len(TOPIC_PREFIX) :]
        if event == "postgres_changes":
            data = payload.get("data") if isinstance(payload, dict) else None
            if isinstance(data, dict) and self._on_event is not None:
                self._on_event(local_topic, data)
        elif event in ("phx_error", "phx_close") and local_topic in self._joined:
            self._joined.discard(local_topic)
            if event == "phx_error" and self._on_error is not None:
                self._on_error(TransportError(f"channel {local_topic} errored"))

    async def _lost(self, exc: TransportError) -> None:
        """Release the dead socket and its heartbeat, then report ``exc``."""

        logger.warning("%s", exc)
        ws, self._ws = self._ws, None
        heartbeat, self._heartbeat_task = self._heartbeat_task, None
        self._fail_pending(exc)
        self._joined.clear()
        if heartbeat is not None:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
        if ws is not None:
            await ws.close()
        if self._on_error is not None:
            self._on_error(exc)

    def _fail_pending(self, exc: BaseException) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()
