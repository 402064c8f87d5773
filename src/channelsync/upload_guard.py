from __future__ import annotations

import logging
import secrets
from contextlib import contextmanager
from typing import Callable, Dict, Iterator

from .events import _now_ms

logger = logging.getLogger(__name__)


class UploadGuard:
    """Reference-counted signal that a file pick or upload is in flight.

    Each ``acquire`` returns a token that must be released once. A token
    that is never released lapses after ``safety_timeout_ms`` so an
    abandoned file picker cannot block resume refreshes forever.
    """

    def __init__(self, safety_timeout_ms: int = 60_000, *, now_func: Callable[[], int] = _now_ms) -> None:
        if safety_timeout_ms <= 0:
            raise ValueError("safety_timeout_ms must be positive")
        self.safety_timeout_ms = safety_timeout_ms
        self._now = now_func
        self._holds: Dict[str, int] = {}

    def acquire(self) -> str:
        token = f"ug_{secrets.token_hex(6)}"
        self._holds[token] = self._now() + self.safety_timeout_ms
        return token

    def release(self, token: str) -> bool:
        """Release ``token``; releasing twice or after expiry is a no-op."""

        return self._holds.pop(token, None) is not None

    def is_held(self) -> bool:
        self._expire()
        return bool(self._holds)

    def count(self) -> int:
        self._expire()
        return len(self._holds)

    @contextmanager
    def hold(self) -> Iterator[str]:
        token = self.acquire()
        try:
            yield token
        finally:
            self.release(token)

    def _expire(self) -> None:
        now_ms = self._now()
        for token, deadline in list(self._holds.items()):
            if deadline <= now_ms:
                self._holds.pop(token, None)
                logger.warning("upload guard hold %s lapsed after %sms", token, self.safety_timeout_ms)
