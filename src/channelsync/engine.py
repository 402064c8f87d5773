"""Session wiring: feed events in, ledger and unread updates, alerts out.

One ``SyncEngine`` exists per signed-in user. It keeps a global
subscription for every channel the user belongs to and a per-channel
subscription for each open ``ChannelView``; both feed the same routing
path, which is idempotent, so an insert seen twice is applied once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Set

from .actions import ChannelActions
from .backend import ChatBackend
from .capabilities import SEND_MESSAGE, require
from .config import SyncConfig
from .content import AUDIO, FILE, IMAGE, audio_content, file_content, image_content
from .errors import BackendError, ChannelSyncError, PermissionDenied, SendFailed
from .events import DeleteEvent, FeedEvent, InsertEvent, MessageRecord, UpdateEvent, _now_ms
from .ledger import MessageLedger
from .notify import (
    CollectingSurface,
    Decision,
    DispatchContext,
    NotificationDispatcher,
    NotificationPolicy,
    NotificationSurface,
)
from .read_state import ReadMarkerStore, ReadStateTracker
from .reconcile import ReconciliationMatcher
from .subscriber import ChangeFeedSubscriber, ChannelScope, GlobalScope, RetryPolicy, SubscriptionHandle
from .transport import FeedTransport, TransportError
from .upload_guard import UploadGuard

logger = logging.getLogger(__name__)

DecisionListener = Callable[[MessageRecord, Decision], None]
Uploader = Callable[[], Awaitable[str]]

_SEND_ERRORS = (BackendError, TransportError, OSError, asyncio.TimeoutError)


class ChannelView:
    """An open channel: its ledger plus the per-channel subscription."""

    def __init__(self, engine: "SyncEngine", channel_id: str, name: str, ledger: MessageLedger) -> None:
        self._engine = engine
        self.channel_id = channel_id
        self.name = name
        self.ledger = ledger
        self.handle: SubscriptionHandle | None = None

    @property
    def messages(self) -> List[MessageRecord]:
        return self.ledger.messages

    async def send(self, content: str, *, is_system_update: bool = False) -> MessageRecord:
        """Send ``content`` optimistically.

        The tentative entry is visible until the backend answers. On failure
        it is removed again and ``SendFailed`` is raised; a backend refusal is
        re-raised as ``PermissionDenied``.
        """

        engine = self._engine
        require(engine.role, SEND_MESSAGE)
        handle = self.ledger.append_tentative(engine.user_id, content, is_system_update=is_system_update)
        try:
            confirmed = await engine.backend.send_message(
                self.channel_id,
                engine.user_id,
                content,
                is_system_update=is_system_update,
                client_ref=handle.client_ref,
            )
        except PermissionDenied as exc:
            self.ledger.fail_tentative(handle, exc)
            raise
        except asyncio.CancelledError:
            self.ledger.fail_tentative(handle, "cancelled")
            raise
        except _SEND_ERRORS as exc:
            self.ledger.fail_tentative(handle, exc)
            raise SendFailed(self.channel_id, content, exc) from exc
        self.ledger.resolve_sent(handle, confirmed)
        engine._note_own(confirmed)
        return confirmed

    async def edit_message(self, message_id: str, new_content: str) -> MessageRecord:
        message = await self._confirmed(message_id)
        updated = await self._engine.actions.edit_message(message, new_content)
        self.ledger.apply_edit(updated.id, updated.content)
        return updated

    async def delete_message(self, message_id: str) -> MessageRecord:
        message = await self._confirmed(message_id)
        updated = await self._engine.actions.delete_message(message)
        self.ledger.apply_delete(message.id)
        return updated

    def mark_read(self) -> int:
        return self._engine.mark_read(self.channel_id)

    async def _confirmed(self, message_id: str) -> MessageRecord:
        if any(entry.id == message_id for entry in self.ledger.pending()):
            raise ValueError(f"message {message_id} is not confirmed yet")
        message = self.ledger.get(message_id)
        if message is None:
            message = await self._engine.backend.get_message(message_id)
        return message


class SyncEngine:
    def __init__(
        self,
        user_id: str,
        role: str,
        backend: ChatBackend,
        transport: FeedTransport,
        *,
        config: SyncConfig | None = None,
        surface: NotificationSurface | None = None,
        read_store: ReadMarkerStore | None = None,
        native_notifications: bool = False,
        now_func: Callable[[], int] = _now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.user_id = user_id
        self.role = role
        self.backend = backend
        self.config = config or SyncConfig()
        self._now = now_func
        retry = RetryPolicy(
            base_delay_s=self.config.retry_base_delay_s,
            max_delay_s=self.config.retry_max_delay_s,
            max_attempts=self.config.retry_max_attempts,
        )
        self.subscriber = ChangeFeedSubscriber(transport, retry, sleep=sleep)
        self.tracker = ReadStateTracker(user_id, read_store, now_func=now_func)
        self.surface: NotificationSurface = surface if surface is not None else CollectingSurface()
        policy = NotificationPolicy(icon=self.config.notification_icon, badge=self.config.notification_badge)
        self.dispatcher = NotificationDispatcher(policy, self.surface, dedupe_size=self.config.dispatch_dedupe_size)
        self.guard = UploadGuard(self.config.upload_safety_timeout_ms, now_func=now_func)
        self.actions = ChannelActions(user_id, role, backend)
        self.native_notifications = native_notifications
        self.focused_channel_id: str | None = None
        self.page_visible = True
        self._names: Dict[str, str] = {}
        self._views: Dict[str, ChannelView] = {}
        self._global: SubscriptionHandle | None = None
        self._listeners: List[DecisionListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def views(self) -> Dict[str, ChannelView]:
        return dict(self._views)

    @property
    def global_handle(self) -> SubscriptionHandle | None:
        return self._global

    def add_decision_listener(self, listener: DecisionListener) -> None:
        self._listeners.append(listener)

    def set_channel_name(self, channel_id: str, name: str) -> None:
        self._names[channel_id] = name

    def context(self) -> DispatchContext:
        return DispatchContext(
            user_id=self.user_id,
            focused_channel_id=self.focused_channel_id,
            page_visible=self.page_visible,
            native_notifications=self.native_notifications,
        )

    async def start(self, channels: Mapping[str, str] | None = None) -> SubscriptionHandle:
        """Open the global subscription; ``channels`` maps known ids to names."""

        if self._global is not None:
            return self._global
        channel_ids = None
        if channels is not None:
            self._names.update(channels)
            channel_ids = frozenset(channels)
        self._global = await self.subscriber.subscribe(GlobalScope(self.user_id, channel_ids), self._route)
        logger.info("engine started for %s", self.user_id)
        return self._global

    async def logout(self) -> None:
        if self._closed:
            return
        self._closed = True
        for channel_id in list(self._views):
            await self.close_channel(channel_id)
        if self._global is not None:
            await self.subscriber.unsubscribe(self._global)
        await self.subscriber.close()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("engine stopped for %s", self.user_id)

    async def open_channel(self, channel_id: str, name: str | None = None) -> ChannelView:
        view = self._views.get(channel_id)
        if view is None:
            if name is not None:
                self._names[channel_id] = name
            matcher = ReconciliationMatcher(self.config.match_window_ms, now_func=self._now)
            ledger = MessageLedger(
                channel_id,
                matcher,
                pending_timeout_ms=self.config.pending_timeout_ms,
                now_func=self._now,
            )
            view = ChannelView(self, channel_id, self._names.get(channel_id, channel_id), ledger)
            self._views[channel_id] = view
            view.handle = await self.subscriber.subscribe(ChannelScope(channel_id), self._route)
            await self._reload(view)
        self.focus(channel_id)
        return view

    async def close_channel(self, channel_id: str) -> None:
        view = self._views.pop(channel_id, None)
        if view is None:
            return
        if view.handle is not None:
            await self.subscriber.unsubscribe(view.handle)
        if self.focused_channel_id == channel_id:
            self.focused_channel_id = None

    def focus(self, channel_id: str | None) -> None:
        self.focused_channel_id = channel_id
        if channel_id is not None and self.page_visible:
            self.mark_read(channel_id)

    def set_visibility(self, visible: bool) -> None:
        """Record page visibility; the host calls ``handle_resume`` on return."""

        became_visible = visible and not self.page_visible
        self.page_visible = visible
        if became_visible and self.focused_channel_id is not None:
            self.mark_read(self.focused_channel_id)

    def mark_read(self, channel_id: str) -> int:
        """Advance the local marker and push it to the backend in the background."""

        marker = self.tracker.mark_read(channel_id)
        task = asyncio.get_running_loop().create_task(self._push_read(channel_id, marker))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return marker

    async def handle_resume(self) -> bool:
        """Refresh open channels after the app returns to the foreground.

        Skipped while an upload holds the guard, so a file picker returning
        does not wipe the channel the user is attaching to.
        """

        if self.guard.is_held():
            logger.info("resume skipped: upload in progress")
            return False
        logger.info("resuming %d open channel(s)", len(self._views))
        for view in list(self._views.values()):
            await self._reload(view)
        await self.subscriber.recover()
        if self.page_visible and self.focused_channel_id in self._views:
            self.mark_read(self.focused_channel_id)
        return True

    async def upload(self, channel_id: str, kind: str, filename: str, uploader: Uploader) -> MessageRecord:
        """Run ``uploader`` under the upload guard and send the tagged result."""

        with self.guard.hold():
            url = await uploader()
            if kind == IMAGE:
                content = image_content(url, filename)
            elif kind == FILE:
                content = file_content(url, filename)
            elif kind == AUDIO:
                content = audio_content(url)
            else:
                raise ValueError(f"unknown attachment kind: {kind}")
            view = self._views.get(channel_id)
            if view is None:
                view = await self.open_channel(channel_id)
            return await view.send(content)

    async def upload_bytes(
        self, channel_id: str, kind: str, filename: str, data: bytes, content_type: str
    ) -> MessageRecord:
        async def _store() -> str:
            return await self.backend.upload_file(filename, data, content_type)

        return await self.upload(channel_id, kind, filename, _store)

    async def _reload(self, view: ChannelView) -> None:
        known = {entry.id for entry in view.ledger.entries if not entry.tentative}
        messages = await self.backend.fetch_messages(view.channel_id)
        current = [entry.message for entry in view.ledger.entries if not entry.tentative]
        view.ledger.reset(messages)
        latest = max((m.created_at_ms for m in messages), default=None)
        # Confirmed records applied while the fetch was in flight, or newer
        # than the snapshot, are not in it yet.
        for message in current:
            if view.ledger.get(message.id) is not None:
                continue
            if message.id not in known or latest is None or message.created_at_ms > latest:
                view.ledger.apply_confirmed(message)
        if latest is not None:
            self.tracker.note_activity(view.channel_id, latest)

    def _route(self, event: FeedEvent) -> None:
        if isinstance(event, InsertEvent):
            self._on_insert(event.message)
        elif isinstance(event, UpdateEvent):
            view = self._views.get(event.channel_id)
            if view is not None:
                view.ledger.apply_edit(event.message.id, event.message.content)
        elif isinstance(event, DeleteEvent):
            views: Iterable[ChannelView]
            if event.channel_id is not None:
                view = self._views.get(event.channel_id)
                views = [view] if view is not None else []
            else:
                views = list(self._views.values())
            for view in views:
                view.ledger.apply_delete(event.message_id)

    def _on_insert(self, message: MessageRecord) -> None:
        view = self._views.get(message.channel_id)
        if view is not None:
            view.ledger.apply_confirmed(message)
        self.tracker.note_activity(message.channel_id, message.created_at_ms)
        if message.user_id == self.user_id:
            self._note_own(message)
        decision = self.dispatcher.dispatch(message, self.context(), self._names.get(message.channel_id))
        if decision is None:
            return
        if decision.mark_read:
            self.mark_read(message.channel_id)
        for listener in list(self._listeners):
            listener(message, decision)

    def _note_own(self, message: MessageRecord) -> None:
        # The author has seen their own message.
        self.tracker.note_activity(message.channel_id, message.created_at_ms)
        self.tracker.mark_read(message.channel_id, message.created_at_ms)

    async def _push_read(self, channel_id: str, marker: int) -> None:
        try:
            await self.backend.mark_read(self.user_id, channel_id, marker)
        except ChannelSyncError as exc:
            logger.warning("mark read for %s failed: %s", channel_id, exc)
