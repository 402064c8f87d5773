from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, replace
from typing import Callable, Iterable, List

from .content import tombstone
from .events import MessageRecord, _now_ms
from .reconcile import DUPLICATE, SUPERSEDES, LedgerEntry, ReconciliationMatcher

logger = logging.getLogger(__name__)

APPENDED = "appended"
RECONCILED = "reconciled"
IGNORED = "ignored"


def new_client_ref() -> str:
    return f"cr_{secrets.token_urlsafe(12)}"


@dataclass(frozen=True)
class TentativeHandle:
    channel_id: str
    local_id: str
    client_ref: str


@dataclass(frozen=True)
class FailedSend:
    channel_id: str
    content: str
    error: str
    failed_at_ms: int


class MessageLedger:
    """Ordered, duplicate-free view of one channel's messages.

    Tentative entries are inserted when the user sends and are replaced in
    place by their confirmed record. A confirmed id is only ever present once.
    """

    def __init__(
        self,
        channel_id: str,
        matcher: ReconciliationMatcher | None = None,
        *,
        pending_timeout_ms: int = 5_000,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.channel_id = channel_id
        self._now = now_func
        self._matcher = matcher or ReconciliationMatcher(now_func=now_func)
        self.pending_timeout_ms = pending_timeout_ms
        self._entries: List[LedgerEntry] = []
        self.failures: List[FailedSend] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[LedgerEntry]:
        return list(self._entries)

    @property
    def messages(self) -> list[MessageRecord]:
        return [entry.message for entry in self._entries]

    def get(self, message_id: str) -> MessageRecord | None:
        index = self._index_of(message_id)
        return None if index is None else self._entries[index].message

    def pending(self) -> list[LedgerEntry]:
        return [entry for entry in self._entries if entry.tentative]

    def stalled(self) -> list[LedgerEntry]:
        """Tentative entries still unmatched after the pending timeout."""

        now_ms = self._now()
        return [
            entry
            for entry in self._entries
            if entry.tentative and now_ms - entry.local_created_ms > self.pending_timeout_ms
        ]

    def append_tentative(
        self,
        user_id: str,
        content: str,
        *,
        is_system_update: bool = False,
        client_ref: str | None = None,
    ) -> TentativeHandle:
        now_ms = self._now()
        client_ref = client_ref or new_client_ref()
        local_id = f"local_{secrets.token_hex(8)}"
        message = MessageRecord(
            id=local_id,
            channel_id=self.channel_id,
            user_id=user_id,
            content=content,
            created_at_ms=now_ms,
            is_system_update=is_system_update,
            client_ref=client_ref,
        )
        self._entries.append(LedgerEntry(message=message, tentative=True, local_created_ms=now_ms, client_ref=client_ref))
        logger.debug("tentative %s appended to %s", local_id, self.channel_id)
        return TentativeHandle(channel_id=self.channel_id, local_id=local_id, client_ref=client_ref)

    def apply_confirmed(self, message: MessageRecord) -> str:
        """Fold a confirmed record into the ledger.

        Returns ``"ignored"`` for a replay of an id already present,
        ``"reconciled"`` when a tentative entry was superseded in place and
        ``"appended"`` otherwise.
        """

        self._require_channel(message)
        match = self._matcher.match(self._entries, message)
        if match.kind == DUPLICATE:
            return IGNORED
        if match.kind == SUPERSEDES and match.index is not None:
            superseded = self._entries[match.index]
            self._entries[match.index] = self._confirmed_entry(message, superseded.local_created_ms)
            logger.debug("confirmed %s superseded %s in %s", message.id, superseded.id, self.channel_id)
            return RECONCILED
        self._entries.append(self._confirmed_entry(message, self._now()))
        return APPENDED

    def resolve_sent(self, handle: TentativeHandle, message: MessageRecord) -> str:
        """Apply the backend's acknowledgement for the send behind ``handle``."""

        self._require_channel(message)
        tentative_index = self._index_of(handle.local_id)
        if self._index_of(message.id) is not None:
            # The feed echo got here first; drop the tentative if it survived.
            if tentative_index is not None:
                del self._entries[tentative_index]
            return IGNORED
        if tentative_index is not None:
            entry = self._entries[tentative_index]
            self._entries[tentative_index] = self._confirmed_entry(message, entry.local_created_ms)
            return RECONCILED
        return self.apply_confirmed(message)

    def fail_tentative(self, handle: TentativeHandle, error: BaseException | str) -> FailedSend | None:
        """Remove the tentative entry for a send that failed.

        Only that entry goes; confirmed records applied while the send was in
        flight stay where they are.
        """

        index = self._index_of(handle.local_id)
        if index is None:
            return None
        entry = self._entries.pop(index)
        failure = FailedSend(
            channel_id=self.channel_id,
            content=entry.message.content,
            error=str(error),
            failed_at_ms=self._now(),
        )
        self.failures.append(failure)
        logger.warning("send to %s failed: %s", self.channel_id, failure.error)
        return failure

    def apply_edit(self, message_id: str, new_content: str) -> bool:
        index = self._index_of(message_id)
        if index is None:
            return False
        entry = self._entries[index]
        if entry.message.content == new_content:
            return True
        self._entries[index] = replace(entry, message=replace(entry.message, content=new_content))
        return True

    def apply_delete(self, message_id: str) -> bool:
        """Tombstone ``message_id``; the row stays in place."""

        index = self._index_of(message_id)
        if index is None:
            return False
        entry = self._entries[index]
        self._entries[index] = replace(entry, message=replace(entry.message, content=tombstone(entry.message.content)))
        return True

    def reset(self, messages: Iterable[MessageRecord]) -> None:
        """Replace confirmed contents with a fresh server snapshot.

        Tentative entries whose correlation token is not in the snapshot are
        kept at the end so an in-flight send stays visible.
        """

        loaded: List[LedgerEntry] = []
        seen: set[str] = set()
        refs: set[str] = set()
        for message in sorted(messages, key=lambda m: m.created_at_ms):
            self._require_channel(message)
            if message.id in seen:
                continue
            seen.add(message.id)
            if message.client_ref is not None:
                refs.add(message.client_ref)
            loaded.append(self._confirmed_entry(message, self._now()))
        survivors = [entry for entry in self._entries if entry.tentative and entry.client_ref not in refs]
        self._entries = loaded + survivors

    def _confirmed_entry(self, message: MessageRecord, local_created_ms: int) -> LedgerEntry:
        return LedgerEntry(message=message, tentative=False, local_created_ms=local_created_ms, client_ref=message.client_ref)

    def _index_of(self, message_id: str) -> int | None:
        for index, entry in enumerate(self._entries):
            if entry.message.id == message_id:
                return index
        return None

    def _require_channel(self, message: MessageRecord) -> None:
        if message.channel_id != self.channel_id:
            raise ValueError(f"message {message.id} belongs to {message.channel_id}, not {self.channel_id}")
