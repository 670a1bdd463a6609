"""Circuit breaker and retry queue shared by the state store and media sender."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "abort",
    "etimedout",
    "econnreset",
    "connection reset",
    "fetch failed",
    "network",
)

STATE_UPSERT = "state_upsert"
ANALYTICS_EVENT = "analytics_event"

MAX_ATTEMPTS = {STATE_UPSERT: 8, ANALYTICS_EVENT: 5}
BATCH_PER_TICK = {STATE_UPSERT: 3, ANALYTICS_EVENT: 5}


def is_transient_error(exc: BaseException) -> bool:
    """Timeouts, resets and generic network failures never open a breaker."""

    if isinstance(exc, (TimeoutError, ConnectionResetError)):
        return True
    message = f"{type(exc).__name__} {exc}".lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class CircuitBreaker:
    """Failure-counting switch with a cooldown window.

    ``count_transient=False`` ignores transient errors when counting, which is
    what the persistence breaker wants; the media breaker counts everything.
    """

    def __init__(
        self,
        name: str,
        *,
        threshold: int,
        cooldown: float,
        count_transient: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.threshold = max(1, int(threshold))
        self.cooldown = float(cooldown)
        self.count_transient = count_transient
        self._clock = clock
        self.failures = 0
        self._opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        if self._opened_at is None:
            return False
        if self._clock() - self._opened_at >= self.cooldown:
            # Half-open: let the next call through; one more failure re-opens.
            self._opened_at = None
            self.failures = self.threshold - 1
            logger.info("%s breaker half-open after %.0fs cooldown", self.name, self.cooldown)
            return False
        return True

    def record_success(self) -> None:
        if self.failures or self._opened_at is not None:
            logger.info("%s breaker reset", self.name)
        self.failures = 0
        self._opened_at = None

    def record_failure(self, exc: Optional[BaseException] = None) -> bool:
        """Count a failure; return True when it was counted toward opening."""

        if exc is not None and not self.count_transient and is_transient_error(exc):
            return False
        self.failures += 1
        if self.failures >= self.threshold and self._opened_at is None:
            self._opened_at = self._clock()
            logger.warning("%s breaker opened after %s failures", self.name, self.failures)
        return True

    def snapshot(self) -> Dict[str, Any]:
        return {"open": self.is_open, "failures": self.failures}


def backoff_delay(
    attempt: int,
    *,
    base: float = 1.0,
    cap: float = 45.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """``base * 2**(attempt-1)`` plus up to 10% jitter, capped at ``cap`` seconds."""

    delay = base * (2 ** max(0, attempt - 1))
    return min(delay + rng() * 0.1 * delay, cap)


@dataclass
class RetryEntry:
    op_kind: str
    key: str
    args: Tuple[Any, ...]
    attempt: int
    next_at: float
    enqueued_at: float = field(default=0.0)


class RetryQueue:
    """Bounded queue of failed writes keyed ``op_kind:id``.

    Re-queuing the same key replaces the older entry (the newest snapshot wins)
    while keeping its attempt count. When full, the oldest entry is dropped.
    """

    def __init__(
        self,
        *,
        max_size: int = 200,
        base_delay: float = 1.0,
        max_delay: float = 45.0,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.max_size = max_size
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._rng = rng
        self._entries: Dict[str, RetryEntry] = {}
        self._attempts: Dict[str, int] = {}
        self.dropped = 0

    def enqueue(self, op_kind: str, key: str, *args: Any) -> Optional[RetryEntry]:
        """Schedule a retry; returns ``None`` when max attempts are exhausted."""

        full_key = f"{op_kind}:{key}"
        attempt = self._attempts.get(full_key, 0) + 1
        limit = MAX_ATTEMPTS.get(op_kind, MAX_ATTEMPTS[ANALYTICS_EVENT])
        if attempt > limit:
            logger.warning("Max retries (%s) reached for %s; dropping", limit, full_key)
            self._attempts.pop(full_key, None)
            self._entries.pop(full_key, None)
            self.dropped += 1
            return None

        self._attempts[full_key] = attempt
        self._entries.pop(full_key, None)
        while len(self._entries) >= self.max_size:
            oldest_key = min(self._entries, key=lambda k: self._entries[k].enqueued_at)
            self._entries.pop(oldest_key)
            self._attempts.pop(oldest_key, None)
            self.dropped += 1
            logger.warning("Retry queue full (%s); dropped %s", self.max_size, oldest_key)

        now = self._clock()
        delay = backoff_delay(attempt, base=self.base_delay, cap=self.max_delay, rng=self._rng)
        entry = RetryEntry(op_kind, key, tuple(args), attempt, now + delay, enqueued_at=now)
        self._entries[full_key] = entry
        logger.info("Queued %s for retry (attempt %s, delay %.1fs)", full_key, attempt, delay)
        return entry

    def due(self) -> List[RetryEntry]:
        """Pop the entries whose ``next_at`` has passed, per-kind batch limits applied."""

        now = self._clock()
        ready: List[RetryEntry] = []
        taken: Dict[str, int] = {}
        for full_key, entry in sorted(self._entries.items(), key=lambda item: item[1].next_at):
            if entry.next_at > now:
                continue
            limit = BATCH_PER_TICK.get(entry.op_kind, 1)
            if taken.get(entry.op_kind, 0) >= limit:
                continue
            taken[entry.op_kind] = taken.get(entry.op_kind, 0) + 1
            ready.append(entry)
        for entry in ready:
            self._entries.pop(f"{entry.op_kind}:{entry.key}", None)
        return ready

    def succeeded(self, entry: RetryEntry) -> None:
        self._attempts.pop(f"{entry.op_kind}:{entry.key}", None)

    def discard(self, op_kind: str, key: str) -> bool:
        """Forget any queued retry and attempt count for ``op_kind:key``."""

        full_key = f"{op_kind}:{key}"
        self._attempts.pop(full_key, None)
        return self._entries.pop(full_key, None) is not None

    def stats(self) -> Dict[str, Any]:
        by_kind = {STATE_UPSERT: 0, ANALYTICS_EVENT: 0}
        for entry in self._entries.values():
            by_kind[entry.op_kind] = by_kind.get(entry.op_kind, 0) + 1
        return {
            "queued": len(self._entries),
            "by_kind": by_kind,
            "tracked_keys": len(self._attempts),
            "dropped": self.dropped,
        }

    def __len__(self) -> int:
        return len(self._entries)
