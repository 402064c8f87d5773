"""Channel message sync, read state and notification policy."""

from .actions import ChannelActions
from .backend import ChatBackend, InMemoryChatBackend, RestChatBackend
from .capabilities import can, capabilities_for, require
from .config import SyncConfig, load_config
from .engine import ChannelView, SyncEngine
from .errors import (
    AlreadyExists,
    BackendError,
    ChannelSyncError,
    MalformedEvent,
    NotOwner,
    PermissionDenied,
    SendFailed,
)
from .events import DeleteEvent, InsertEvent, MessageRecord, UpdateEvent, parse_feed_event
from .ledger import MessageLedger
from .notify import DispatchContext, NotificationDispatcher, NotificationPolicy
from .read_state import ReadStateTracker
from .reconcile import ReconciliationMatcher
from .sqlite_read_state import SQLiteReadMarkerStore
from .subscriber import ChangeFeedSubscriber, ChannelScope, GlobalScope
from .upload_guard import UploadGuard

__all__ = [
    "AlreadyExists",
    "BackendError",
    "ChangeFeedSubscriber",
    "ChannelActions",
    "ChannelScope",
    "ChannelSyncError",
    "ChannelView",
    "ChatBackend",
    "DeleteEvent",
    "DispatchContext",
    "GlobalScope",
    "InMemoryChatBackend",
    "InsertEvent",
    "MalformedEvent",
    "MessageLedger",
    "MessageRecord",
    "NotOwner",
    "NotificationDispatcher",
    "NotificationPolicy",
    "PermissionDenied",
    "ReadStateTracker",
    "ReconciliationMatcher",
    "RestChatBackend",
    "SQLiteReadMarkerStore",
    "SendFailed",
    "SyncConfig",
    "SyncEngine",
    "UpdateEvent",
    "UploadGuard",
    "can",
    "capabilities_for",
    "load_config",
    "parse_feed_event",
    "require",
]
