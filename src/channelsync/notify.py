"""Alert policy for newly ledgered messages.

``NotificationPolicy.evaluate`` is pure: everything it needs about the
session arrives in a ``DispatchContext``. ``NotificationDispatcher`` applies
the decision to a ``NotificationSurface`` at most once per message id.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Protocol, Set

from .content import preview
from .events import MessageRecord

logger = logging.getLogger(__name__)

SURFACE_NONE = "none"
SURFACE_IN_APP = "in_app"
SURFACE_OS = "os"

REASON_SELF = "self_authored"
REASON_SYSTEM = "system_update"
REASON_FOCUSED = "focused_channel"
REASON_HIDDEN = "page_hidden"
REASON_FALLBACK = "fallback"


@dataclass(frozen=True)
class DispatchContext:
    user_id: str
    focused_channel_id: str | None = None
    page_visible: bool = True
    native_notifications: bool = False


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    tag: str
    icon: str = ""
    badge: str = ""
    renotify: bool = True


@dataclass(frozen=True)
class Decision:
    reason: str
    surface: str = SURFACE_NONE
    play_cue: bool = False
    mark_read: bool = False
    notification: Notification | None = None

    @property
    def suppressed(self) -> bool:
        return not self.play_cue and self.surface == SURFACE_NONE


class NotificationPolicy:
    def __init__(self, *, icon: str = "", badge: str = "") -> None:
        self.icon = icon
        self.badge = badge

    def evaluate(self, message: MessageRecord, context: DispatchContext, channel_name: str | None = None) -> Decision:
        if message.user_id == context.user_id:
            return Decision(REASON_SELF)
        if message.is_system_update:
            return Decision(REASON_SYSTEM)
        if message.channel_id == context.focused_channel_id and context.page_visible:
            return Decision(REASON_FOCUSED, play_cue=True, mark_read=True)
        notification = Notification(
            title=f"New message in {channel_name or message.channel_id}",
            body=preview(message.content),
            tag=message.channel_id,
            icon=self.icon,
            badge=self.badge,
            renotify=True,
        )
        if not context.page_visible and context.native_notifications:
            return Decision(REASON_HIDDEN, surface=SURFACE_OS, play_cue=True, notification=notification)
        return Decision(REASON_FALLBACK, surface=SURFACE_IN_APP, play_cue=True, notification=notification)


class NotificationSurface(Protocol):
    def show_notification(self, notification: Notification) -> None: ...

    def show_alert(self, title: str, body: str) -> None: ...

    def play_sound(self) -> None: ...

    def vibrate(self) -> None: ...


class CollectingSurface:
    """Records side effects; OS notifications with the same tag replace each other."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []
        self.active: Dict[str, Notification] = {}

    def show_notification(self, notification: Notification) -> None:
        replaced = notification.tag in self.active and notification.renotify
        self.active[notification.tag] = notification
        self.events.append(
            {
                "t": "notification",
                "tag": notification.tag,
                "title": notification.title,
                "body": notification.body,
                "replaced": replaced,
            }
        )

    def show_alert(self, title: str, body: str) -> None:
        self.events.append({"t": "alert", "title": title, "body": body})

    def play_sound(self) -> None:
        self.events.append({"t": "sound"})

    def vibrate(self) -> None:
        self.events.append({"t": "haptic"})

class NotificationDispatcher:
    def __init__(self, policy: NotificationPolicy, surface: NotificationSurface, *, dedupe_size: int = 512) -> None:
        self.policy = policy
        self.surface = surface
        self._dedupe_size = dedupe_size
        self._seen_order: Deque[str] = deque()
        self._seen: Set[str] = set()

    def dispatch(
        self,
        message: MessageRecord,
        context: DispatchContext,
        channel_name: str | None = None,
    ) -> Decision | None:
        """Evaluate and apply ``message``; ``None`` when it was already handled."""

        if self._record(message.id):
            return None
        decision = self.policy.evaluate(message, context, channel_name)
        logger.debug("message %s in %s: %s", message.id, message.channel_id, decision.reason)
        if decision.play_cue:
            self.surface.play_sound()
            self.surface.vibrate()
        if decision.notification is not None:
            if decision.surface == SURFACE_OS:
                self.surface.show_notification(decision.notification)
            elif decision.surface == SURFACE_IN_APP:
                self.surface.show_alert(decision.notification.title, decision.notification.body)
        return decision

    def _record(self, message_id: str) -> bool:
        if message_id in self._seen:
            return True
        self._seen_order.append(message_id)
        self._seen.add(message_id)
        if len(self._seen_order) > self._dedupe_size:
            evicted = self._seen_order.popleft()
            self._seen.discard(evicted)
        return False
