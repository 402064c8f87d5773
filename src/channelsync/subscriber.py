"""Change-feed subscriptions with reconnect and backoff.

Each subscription moves through::

    INIT -> SUBSCRIBING -> ACTIVE
    ACTIVE -> RECONNECTING -> ACTIVE        (transport error, automatic)
    SUBSCRIBING | RECONNECTING -> DEGRADED  (retries exhausted, stale data)
    any -> CLOSED                           (explicit teardown)

Raw events are normalized into typed events before reaching the callback.
Events for a closed subscription are discarded.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Union

from .errors import MalformedEvent
from .events import FeedEvent, parse_feed_event
from .transport import FeedTransport, TransportError

logger = logging.getLogger(__name__)

INIT = "INIT"
SUBSCRIBING = "SUBSCRIBING"
ACTIVE = "ACTIVE"
RECONNECTING = "RECONNECTING"
DEGRADED = "DEGRADED"
CLOSED = "CLOSED"

EventCallback = Callable[[FeedEvent], None]


@dataclass(frozen=True)
class ChannelScope:
    channel_id: str

    @property
    def topic_prefix(self) -> str:
        return f"room:{self.channel_id}"

    def transport_filter(self) -> Dict[str, Any]:
        return {"channel_id": self.channel_id}

    def matches(self, channel_id: str | None) -> bool:
        return channel_id == self.channel_id


@dataclass(frozen=True)
class GlobalScope:
    """Every channel ``user_id`` belongs to.

    Membership is enforced by the backend; ``channel_ids`` narrows delivery
    further on the client when it is known.
    """

    user_id: str
    channel_ids: FrozenSet[str] | None = None

    @property
    def topic_prefix(self) -> str:
        return f"user:{self.user_id}"

    def transport_filter(self) -> Dict[str, Any]:
        if self.channel_ids is not None:
            return {"channel_ids": sorted(self.channel_ids)}
        return {"user_id": self.user_id}

    def matches(self, channel_id: str | None) -> bool:
        if self.channel_ids is None or channel_id is None:
            return True
        return channel_id in self.channel_ids


Scope = Union[ChannelScope, GlobalScope]


@dataclass(eq=False)
class SubscriptionHandle:
    scope: Scope
    topic: str
    callback: EventCallback
    state: str = INIT
    attempts: int = 0
    delivered: int = 0

    @property
    def is_live(self) -> bool:
        return self.state in (ACTIVE, RECONNECTING, DEGRADED)


@dataclass
class RetryPolicy:
    base_delay_s: float = 0.5
    max_delay_s: float = 30.0
    max_attempts: int = 6

    def delay(self, attempt: int) -> float:
        return min(self.max_delay_s, self.base_delay_s * (2 ** max(0, attempt - 1)))


class ChangeFeedSubscriber:
    def __init__(
        self,
        transport: FeedTransport,
        retry: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._handles: Dict[str, SubscriptionHandle] = {}
        self._counter = itertools.count(1)
        self._recovery: asyncio.Task | None = None
        self._rerun = False
        transport.bind(self._on_event, self._on_error)

    @property
    def handles(self) -> List[SubscriptionHandle]:
        return list(self._handles.values())

    async def subscribe(self, scope: Scope, callback: EventCallback) -> SubscriptionHandle:
        topic = f"{scope.topic_prefix}:{next(self._counter)}"
        handle = SubscriptionHandle(scope=scope, topic=topic, callback=callback)
        self._handles[topic] = handle
        handle.state = SUBSCRIBING
        logger.info("subscribing %s", topic)
        await self._join(handle)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Tear down ``handle``; a second call for the same handle does nothing."""

        if handle.state == CLOSED:
            return
        handle.state = CLOSED
        self._handles.pop(handle.topic, None)
        try:
            await self._transport.leave(handle.topic)
        except TransportError as exc:
            logger.debug("leave %s failed: %s", handle.topic, exc)
        logger.info("unsubscribed %s", handle.topic)

    async def close(self) -> None:
        for handle in list(self._handles.values()):
            await self.unsubscribe(handle)
        if self._recovery is not None:
            self._recovery.cancel()
            try:
                await self._recovery
            except asyncio.CancelledError:
                pass
            self._recovery = None
        await self._transport.close()

    async def recover(self) -> None:
        """Rejoin every subscription that is reconnecting or degraded.

        A transport error raised while a pass is running queues another
        pass, so handles that dropped after their turn are rejoined too.
        """

        while True:
            self._rerun = False
            for handle in list(self._handles.values()):
                if handle.state in (RECONNECTING, DEGRADED):
                    handle.attempts = 0
                    await self._join(handle)
            if not self._rerun:
                return

    async def _join(self, handle: SubscriptionHandle) -> None:
        while handle.state != CLOSED:
            handle.attempts += 1
            try:
                await self._transport.join(handle.topic, handle.scope.transport_filter())
            except (TransportError, OSError, asyncio.TimeoutError) as exc:
                if handle.state == CLOSED:
                    return
                if handle.attempts >= self._retry.max_attempts:
                    handle.state = DEGRADED
                    logger.warning("subscription %s degraded after %d attempts: %s", handle.topic, handle.attempts, exc)
                    return
                if handle.state == ACTIVE:
                    handle.state = RECONNECTING
                delay = self._retry.delay(handle.attempts)
                logger.debug("join %s failed (%s); retrying in %.2fs", handle.topic, exc, delay)
                await self._sleep(delay)
                continue
            if handle.state == CLOSED:
                # Torn down while the handshake was in flight.
                try:
                    await self._transport.leave(handle.topic)
                except TransportError as exc:
                    logger.debug("leave %s failed: %s", handle.topic, exc)
                return
            handle.state = ACTIVE
            handle.attempts = 0
            return

    def _on_event(self, topic: str, payload: Mapping[str, Any]) -> None:
        handle = self._handles.get(topic)
        if handle is None or handle.state == CLOSED:
            logger.debug("discarding event for closed topic %s", topic)
            return
        try:
            event = parse_feed_event(payload)
        except MalformedEvent as exc:
            logger.warning("dropping malformed event on %s: %s", topic, exc)
            return
        if not handle.scope.matches(event.channel_id):
            return
        handle.delivered += 1
        handle.callback(event)

    def _on_error(self, exc: BaseException) -> None:
        logger.warning("transport error: %s", exc)
        for handle in self._handles.values():
            if handle.state == ACTIVE:
                handle.state = RECONNECTING
        if self._recovery is None or self._recovery.done():
            self._recovery = asyncio.get_running_loop().create_task(self.recover())
        else:
            self._rerun = True
