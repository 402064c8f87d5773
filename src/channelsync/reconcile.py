"""Correlates confirmed messages with the tentative entries they supersede."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

from .events import MessageRecord, _now_ms

DUPLICATE = "duplicate"
SUPERSEDES = "supersedes"
NEW = "new"


@dataclass
class LedgerEntry:
    message: MessageRecord
    tentative: bool
    local_created_ms: int
    client_ref: str | None = None

    @property
    def id(self) -> str:
        return self.message.id


@dataclass(frozen=True)
class Match:
    kind: str
    index: int | None = None


class ReconciliationMatcher:
    """Decides what a confirmed message means for an existing ledger.

    The correlation token echoed by the backend is tried first. When the
    confirmed record carries none, the oldest tentative entry with the same
    author and content created within ``window_ms`` is taken instead; this is
    best effort only, since the feed does not guarantee a correlatable echo.
    """

    def __init__(self, window_ms: int = 5_000, *, now_func: Callable[[], int] = _now_ms) -> None:
        if window_ms < 0:
            raise ValueError("window_ms must be non-negative")
        self.window_ms = window_ms
        self._now = now_func

    def match(self, entries: Sequence[LedgerEntry], confirmed: MessageRecord) -> Match:
        for index, entry in enumerate(entries):
            if not entry.tentative and entry.message.id == confirmed.id:
                return Match(DUPLICATE, index)

        if confirmed.client_ref is not None:
            for index, entry in enumerate(entries):
                if entry.tentative and entry.client_ref == confirmed.client_ref:
                    return Match(SUPERSEDES, index)

        now_ms = self._now()
        for index, entry in enumerate(entries):
            if not entry.tentative:
                continue
            if confirmed.client_ref is not None and entry.client_ref is not None:
                # Both sides carry a token and they differ: a different send.
                continue
            if now_ms - entry.local_created_ms > self.window_ms:
                continue
            candidate = entry.message
            if (
                candidate.channel_id == confirmed.channel_id
                and candidate.user_id == confirmed.user_id
                and candidate.content == confirmed.content
            ):
                return Match(SUPERSEDES, index)
        return Match(NEW)
