"""Fixed-window rate limiter for the edge chat gateway.

Tracks per-identity request counts in a window store. The window rolls over
lazily on the first call after it expires; there is no background timer.
Because windows are fixed, a caller can land up to twice the limit across a
window boundary. That is the accepted approximation.

The default store is an in-process dict that lives as long as the app and is
never persisted, so a restart resets every counter. Any store implementing
WindowStore (e.g. a shared cache) can be injected instead; the limiter reads
and writes it in separate steps and does not lock.
"""

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from edge_gateway.errors import CallerError


class RateLimitExceeded(CallerError):
    """Raised when a caller exceeds their rate limit."""

    outcome = "rate_limited"

    def __init__(self, identity: str, retry_after: float, detail: str) -> None:
        super().__init__(429, "Rate limit exceeded", detail)
        self.identity = identity
        self.retry_after = retry_after


@dataclass
class WindowEntry:
    """Fixed-window counter for a single identity."""

    count: int
    reset_at: float


class WindowStore(ABC):
    """Where window entries live between requests."""

    @abstractmethod
    async def get(self, identity: str) -> Optional[WindowEntry]:
        """Return the stored entry for identity, if any."""

    @abstractmethod
    async def set(self, identity: str, entry: WindowEntry) -> None:
        """Store the entry for identity."""


class InMemoryWindowStore(WindowStore):
    """Process-lifetime window store backed by a dict."""

    def __init__(self) -> None:
        self._entries: Dict[str, WindowEntry] = {}

    async def get(self, identity: str) -> Optional[WindowEntry]:
        entry = self._entries.get(identity)
        if entry is None:
            return None
        return WindowEntry(count=entry.count, reset_at=entry.reset_at)

    async def set(self, identity: str, entry: WindowEntry) -> None:
        self._entries[identity] = WindowEntry(
            count=entry.count, reset_at=entry.reset_at
        )

    def __len__(self) -> int:
        return len(self._entries)


class RateLimiter:
    """Per-identity fixed-window rate limiter."""

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        store: Optional[WindowStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.store = store if store is not None else InMemoryWindowStore()
        self._clock = clock

    async def check(self, identity: Optional[str]) -> None:
        """Admit one request for identity or raise.

        Anonymous requests (no identity) are not metered.

        Args:
            identity: The caller identity, or None.

        Raises:
            RateLimitExceeded: If the identity has used up the current window.
        """
        if not identity:
            return

        now = self._clock()
        entry = await self.store.get(identity)
        if entry is None:
            entry = WindowEntry(count=0, reset_at=now + self.window_seconds)

        if now > entry.reset_at:
            entry.count = 0
            entry.reset_at = now + self.window_seconds

        if entry.count >= self.max_requests:
            retry_after = max(entry.reset_at - now, 0.0)
            raise RateLimitExceeded(
                identity,
                retry_after,
                "Limit of {} requests per {} seconds reached. Please wait {} "
                "seconds or upgrade to premium.".format(
                    self.max_requests,
                    _format_seconds(self.window_seconds),
                    math.ceil(retry_after),
                ),
            )

        entry.count += 1
        await self.store.set(identity, entry)


def _format_seconds(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)
