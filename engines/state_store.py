"""Subscriber state store: in-memory map with a debounced, breaker-guarded
write-behind to the ``subscribers`` table and a retry queue for failed writes."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import db
from engines.resilience import (
    ANALYTICS_EVENT,
    STATE_UPSERT,
    CircuitBreaker,
    RetryEntry,
    RetryQueue,
)
from schemas import Subscriber

logger = logging.getLogger(__name__)

MENU_TRACK_TTL_SECONDS = 12 * 60 * 60
_KNOWN_MENUS = {"welcome", "topic_practice", "homework", "memory_hacks"}


class SQLiteSubscriberBackend:
    """Async facade over ``db``; every call runs in a worker thread."""

    async def fetch(self, subscriber_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(db.fetch_subscriber, subscriber_id)

    async def upsert(self, row: Mapping[str, Any]) -> None:
        await asyncio.to_thread(db.upsert_subscriber, row)

    async def insert_event(self, subscriber_id: str, event_type: str, payload: Mapping[str, Any]) -> None:
        await asyncio.to_thread(db.insert_event, subscriber_id, event_type, payload)


class MenuTracker:
    """Last menu per subscriber, kept for 12 hours.

    The channel can outlive a process restart; this lets the dispatcher put a
    learner back into the flow they were last shown.
    """

    def __init__(self, ttl: float = MENU_TRACK_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._last_menu: Dict[str, Tuple[str, float]] = {}

    def track(self, subscriber_id: str, menu: str) -> None:
        self._last_menu[subscriber_id] = (menu or "welcome", self._clock())

    def last_menu(self, subscriber_id: str) -> Optional[str]:
        entry = self._last_menu.get(subscriber_id)
        if entry is None or self._clock() - entry[1] > self.ttl:
            return None
        return entry[0]

    def sweep(self) -> int:
        now = self._clock()
        stale = [k for k, (_, ts) in self._last_menu.items() if now - ts > self.ttl]
        for key in stale:
            self._last_menu.pop(key, None)
        return len(stale)


class StateStore:
    """Owns the subscriber map, pending debounced writes and the retry queue.

    The in-memory map is authoritative for the duration of a turn; the backend
    is a durable backstop. ``start``/``stop`` manage the retry scheduler and
    the hourly TTL sweep.
    """

    def __init__(
        self,
        backend: Optional[Any] = None,
        *,
        debounce_seconds: float = 0.5,
        upsert_timeout: float = 12.0,
        retrieve_timeout: float = 3.0,
        ttl_hours: float = 10.0,
        retry_interval: float = 30.0,
        sweep_interval: float = 3600.0,
        breaker: Optional[CircuitBreaker] = None,
        retry_queue: Optional[RetryQueue] = None,
        menu_tracker: Optional[MenuTracker] = None,
    ) -> None:
        self.backend = backend
        self.debounce_seconds = debounce_seconds
        self.upsert_timeout = upsert_timeout
        self.retrieve_timeout = retrieve_timeout
        self.ttl = timedelta(hours=ttl_hours)
        self.retry_interval = retry_interval
        self.sweep_interval = sweep_interval
        self.breaker = breaker if breaker is not None else CircuitBreaker("state", threshold=5, cooldown=60.0)
        self.retry_queue = retry_queue if retry_queue is not None else RetryQueue()
        self.menu_tracker = menu_tracker if menu_tracker is not None else MenuTracker()
        self.subscribers: Dict[str, Subscriber] = {}
        self._pending: Dict[str, Dict[str, Any]] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._written_at: Dict[str, str] = {}
        self._background: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # read path
    # ------------------------------------------------------------------
    async def get_or_create(self, subscriber_id: str) -> Tuple[Subscriber, bool]:
        """Return ``(subscriber, created)``; ``created`` is True for a fresh default."""

        subscriber = self.subscribers.get(subscriber_id)
        created = False
        if subscriber is None:
            subscriber = await self.retrieve(subscriber_id)
            if subscriber is None:
                subscriber = Subscriber(id=subscriber_id)
                created = True
                logger.info("Created new subscriber state for %s", subscriber_id)
            self.subscribers[subscriber_id] = subscriber
        subscriber.touch()
        return subscriber, created

    async def retrieve(self, subscriber_id: str) -> Optional[Subscriber]:
        """Load a stored snapshot under the retrieval timeout; ``None`` on miss or failure."""

        if self.backend is None or self.breaker.is_open:
            return None
        try:
            row = await asyncio.wait_for(self.backend.fetch(subscriber_id), self.retrieve_timeout)
        except asyncio.TimeoutError as exc:
            self.breaker.record_failure(exc)
            logger.warning("State retrieval timeout for %s", subscriber_id)
            return None
        except Exception as exc:
            self.breaker.record_failure(exc)
            logger.warning("State retrieval failed for %s: %s", subscriber_id, exc)
            return None
        self.breaker.record_success()
        if not row:
            return None
        logger.info("Restored state for %s from storage", subscriber_id)
        return Subscriber.from_row(row)

    # ------------------------------------------------------------------
    # write path
    # ------------------------------------------------------------------
    def persist(self, subscriber_id: str, subscriber: Subscriber) -> None:
        """Record ``subscriber`` and schedule one debounced upsert for the id.

        Calls within the debounce window overwrite the pending snapshot, so a
        burst produces a single write carrying the latest state.
        """

        self.subscribers[subscriber_id] = subscriber
        self._pending[subscriber_id] = subscriber.to_row()
        timer = self._timers.get(subscriber_id)
        if timer is not None and not timer.done():
            return
        loop = asyncio.get_running_loop()
        self._timers[subscriber_id] = loop.create_task(self._flush_later(subscriber_id))

    async def _flush_later(self, subscriber_id: str) -> None:
        await asyncio.sleep(self.debounce_seconds)
        self._timers.pop(subscriber_id, None)
        row = self._pending.pop(subscriber_id, None)
        if row is not None:
            await self._write_state(row)

    async def _write_state(self, row: Dict[str, Any]) -> bool:
        if self.backend is None:
            return False
        subscriber_id = row["id"]
        written = self._written_at.get(subscriber_id)
        if written and (row.get("updated_at") or "") < written:
            logger.info("Skipping stale snapshot for %s; a newer one is stored", subscriber_id)
            return True
        if self.breaker.is_open:
            logger.info("State breaker open; kept %s in memory", subscriber_id)
            self.retry_queue.enqueue(STATE_UPSERT, subscriber_id, row)
            return False
        try:
            await asyncio.wait_for(self.backend.upsert(row), self.upsert_timeout)
        except Exception as exc:
            self.breaker.record_failure(exc)
            logger.warning("State persistence failed for %s: %s", subscriber_id, exc or type(exc).__name__)
            self.retry_queue.enqueue(STATE_UPSERT, subscriber_id, row)
            return False
        self.breaker.record_success()
        self._written_at[subscriber_id] = row.get("updated_at") or ""
        if self.retry_queue.discard(STATE_UPSERT, subscriber_id):
            logger.info("Dropped queued state retry for %s; newer snapshot stored", subscriber_id)
        logger.debug("State persisted for %s", subscriber_id)
        return True

    async def track_event(self, subscriber_id: str, event_type: str, payload: Optional[Mapping[str, Any]] = None) -> bool:
        """Append an analytics event; failures are queued, never raised."""

        if self.backend is None:
            return False
        data = dict(payload or {})
        key = f"{subscriber_id}:{uuid.uuid4().hex[:12]}"
        return await self._write_event(key, subscriber_id, event_type, data)

    async def _write_event(self, key: str, subscriber_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        if self.breaker.is_open:
            self.retry_queue.enqueue(ANALYTICS_EVENT, key, subscriber_id, event_type, payload)
            return False
        try:
            await asyncio.wait_for(
                self.backend.insert_event(subscriber_id, event_type, payload), self.upsert_timeout
            )
        except Exception as exc:
            self.breaker.record_failure(exc)
            logger.warning("Analytics event %s failed for %s: %s", event_type, subscriber_id, exc)
            self.retry_queue.enqueue(ANALYTICS_EVENT, key, subscriber_id, event_type, payload)
            return False
        self.breaker.record_success()
        return True

    async def flush(self) -> None:
        """Write every pending snapshot now, bypassing the debounce timers."""

        for subscriber_id, task in list(self._timers.items()):
            task.cancel()
        self._timers.clear()
        pending, self._pending = self._pending, {}
        for row in pending.values():
            await self._write_state(row)

    # ------------------------------------------------------------------
    # background work
    # ------------------------------------------------------------------
    async def process_retries(self) -> int:
        """Run due retries; returns how many succeeded."""

        succeeded = 0
        for entry in self.retry_queue.due():
            if await self._run_retry(entry):
                self.retry_queue.succeeded(entry)
                succeeded += 1
        return succeeded

    async def _run_retry(self, entry: RetryEntry) -> bool:
        if entry.op_kind == STATE_UPSERT:
            (row,) = entry.args
            return await self._write_state(row)
        subscriber_id, event_type, payload = entry.args
        return await self._write_event(entry.key, subscriber_id, event_type, payload)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Drop subscribers inactive for longer than the TTL."""

        cutoff = (now or datetime.now(timezone.utc)) - self.ttl
        stale = [sid for sid, sub in self.subscribers.items() if sub.last_active < cutoff]
        for subscriber_id in stale:
            self.subscribers.pop(subscriber_id, None)
            self._written_at.pop(subscriber_id, None)
        tracked = self.menu_tracker.sweep()
        if stale or tracked:
            logger.info("TTL sweep removed %s subscribers and %s menu entries", len(stale), tracked)
        return len(stale)

    async def _retry_loop(self) -> None:
        while True:
            await asyncio.sleep(self.retry_interval)
            try:
                await self.process_retries()
            except Exception:
                logger.exception("Retry scheduler tick failed")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._background = [
            loop.create_task(self._retry_loop()),
            loop.create_task(self._sweep_loop()),
        ]
        logger.info("State store scheduler started (retry every %ss)", self.retry_interval)

    async def stop(self) -> None:
        for task in self._background:
            task.cancel()
        for task in self._background:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._background = []
        await self.flush()

    def retry_stats(self) -> Dict[str, Any]:
        stats = self.retry_queue.stats()
        return {
            "queued": stats["queued"],
            "by_kind": stats["by_kind"],
            "dropped": stats["dropped"],
            "breaker": self.breaker.snapshot(),
            "pending_writes": len(self._pending),
            "subscribers_in_memory": len(self.subscribers),
        }

    @staticmethod
    def known_menu(name: Optional[str]) -> Optional[str]:
        if name and name in _KNOWN_MENUS:
            return name
        return None
