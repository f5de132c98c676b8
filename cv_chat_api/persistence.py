"""Two-tier conversation persistence.

The transient tier (a process-local TTL cache) is authoritative while the
process lives. The durable tier (Redis REST store) is a best-effort archive:
writes to it are buffered per session and flushed in one batch after a shared
debounce window with no further saves. A crash inside that window loses the
buffered turns; durable failures never reach callers.
"""

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import structlog
from cachetools import TTLCache
from pydantic import ValidationError

from cv_chat_api.config import Settings
from cv_chat_api.kv_client import KVClient, KVError
from cv_chat_api.models import ConversationRecord
from cv_chat_api.observability import (
    conversation_flushes_total,
    conversation_pending_writes,
    conversation_records_flushed_total,
    conversation_sessions_expired_total,
    conversation_store_fallbacks_total,
)

logger = structlog.get_logger()

CONVERSATION_KEY_PREFIX = "conversation:"
SESSION_INDEX_KEY = "conversation_sessions"


class LookupStatus(Enum):
    HIT = "hit"
    MISS = "miss"
    UNREADABLE = "unreadable"
    UNAVAILABLE = "unavailable"


@dataclass
class TierLookup:
    """Result of reading one session from one tier."""

    status: LookupStatus
    record: ConversationRecord | None = None

    @classmethod
    def hit(cls, record: ConversationRecord) -> "TierLookup":
        return cls(LookupStatus.HIT, record)

    @classmethod
    def miss(cls) -> "TierLookup":
        return cls(LookupStatus.MISS)

    @classmethod
    def unreadable(cls) -> "TierLookup":
        return cls(LookupStatus.UNREADABLE)

    @classmethod
    def unavailable(cls) -> "TierLookup":
        return cls(LookupStatus.UNAVAILABLE)


class TransientTier:
    """Thread-safe in-memory record cache with TTL-based expiration.

    Records are copied on the way in and on the way out, so a caller mutating
    a loaded record never changes what the cache holds until it saves.
    """

    def __init__(self, max_sessions: int = 10000, ttl_seconds: float = 86400):
        self._max_sessions = max_sessions
        self._ttl = ttl_seconds
        self._cache: TTLCache[str, ConversationRecord] = TTLCache(
            maxsize=max_sessions,
            ttl=ttl_seconds,
        )
        self._lock = threading.Lock()

    def fetch(self, session_id: str) -> TierLookup:
        with self._lock:
            record = self._cache.get(session_id)
        if record is None:
            return TierLookup.miss()
        return TierLookup.hit(record.model_copy(deep=True))

    def put(self, session_id: str, record: ConversationRecord) -> None:
        snapshot = record.model_copy(deep=True)
        with self._lock:
            self._cache[session_id] = snapshot

    def put_if_absent(self, session_id: str, record: ConversationRecord) -> bool:
        """Store the record unless the session is already cached.

        Returns:
            True if the record was stored.
        """
        snapshot = record.model_copy(deep=True)
        with self._lock:
            if session_id in self._cache:
                return False
            self._cache[session_id] = snapshot
            return True

    def contains(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._cache

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._cache.keys())

    def expire(self, cutoff: datetime) -> list[str]:
        """Drop every record whose last activity is older than ``cutoff``."""
        with self._lock:
            stale = [sid for sid, rec in self._cache.items() if rec.last_activity < cutoff]
            for sid in stale:
                del self._cache[sid]
        return stale

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "active_sessions": len(self._cache),
                "max_sessions": self._max_sessions,
                "ttl_seconds": self._ttl,
            }


class DurableTier:
    """Conversation records in a Redis REST store.

    Layout: ``conversation:<id>`` holds the record JSON and the set
    ``conversation_sessions`` indexes every id ever written.
    """

    def __init__(self, client: KVClient):
        self._client = client

    @staticmethod
    def key(session_id: str) -> str:
        return f"{CONVERSATION_KEY_PREFIX}{session_id}"

    async def fetch(self, session_id: str) -> TierLookup:
        try:
            payload = await self._client.get(self.key(session_id))
        except KVError as e:
            logger.warning("Durable store read failed", session_id=session_id, error=str(e))
            return TierLookup.unavailable()

        if payload is None:
            return TierLookup.miss()

        try:
            return TierLookup.hit(ConversationRecord.from_json(payload))
        except ValidationError as e:
            logger.warning(
                "Ignoring unreadable record in durable store",
                session_id=session_id,
                error=str(e),
            )
            return TierLookup.unreadable()

    async def write_batch(self, payloads: dict[str, str]) -> None:
        """Write serialized records in one pipeline. Raises KVError."""
        commands: list[list[Any]] = []
        for session_id, payload in payloads.items():
            commands.append(["SET", self.key(session_id), payload])
            commands.append(["SADD", SESSION_INDEX_KEY, session_id])
        await self._client.pipeline(commands)

    async def session_ids(self) -> list[str]:
        return await self._client.smembers(SESSION_INDEX_KEY)

    async def remove(self, session_ids: list[str]) -> None:
        if not session_ids:
            return
        await self._client.pipeline(
            [
                ["DEL", *(self.key(sid) for sid in session_ids)],
                ["SREM", SESSION_INDEX_KEY, *session_ids],
            ]
        )

    async def unindex(self, session_ids: list[str]) -> None:
        """Drop index entries whose record key no longer exists."""
        if session_ids:
            await self._client.srem(SESSION_INDEX_KEY, *session_ids)

    async def close(self) -> None:
        await self._client.close()


class PersistenceCoordinator:
    """Routes conversation reads and writes across the two tiers."""

    def __init__(
        self,
        transient: TransientTier,
        durable: DurableTier | None = None,
        debounce_seconds: float = 5.0,
    ):
        """Initialize the coordinator.

        Args:
            transient: Process-local cache, always used.
            durable: Optional durable tier. None selects transient-only mode.
            debounce_seconds: Quiet period after the last save before the
                pending writes are flushed.
        """
        self._transient = transient
        self._durable = durable
        self._debounce_seconds = debounce_seconds
        self._pending: dict[str, str] = {}
        self._lock = threading.Lock()
        self._timer: asyncio.TimerHandle | None = None
        self._flush_lock = asyncio.Lock()
        self._flush_tasks: set[asyncio.Task[int]] = set()
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "PersistenceCoordinator":
        transient = TransientTier(
            max_sessions=settings.max_sessions,
            ttl_seconds=settings.session_retention.total_seconds(),
        )
        durable = None
        if settings.has_durable_store:
            durable = DurableTier(
                KVClient(
                    url=settings.kv_rest_api_url,
                    token=settings.kv_rest_api_token,
                    timeout=settings.kv_timeout_seconds,
                )
            )
        else:
            logger.info("Durable store not configured, using transient cache only")
        return cls(transient, durable, settings.flush_debounce_seconds)

    @property
    def durable_configured(self) -> bool:
        return self._durable is not None

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    async def load(self, session_id: str) -> ConversationRecord | None:
        """Return an independent copy of the session's record, or None.

        Never raises for durable store problems: they degrade to a miss.
        """
        lookup = self._transient.fetch(session_id)
        if lookup.status is LookupStatus.HIT:
            return lookup.record

        # Evicted from the cache but not flushed yet
        with self._lock:
            payload = self._pending.get(session_id)
        if payload is not None:
            record = ConversationRecord.from_json(payload)
            self._transient.put(session_id, record)
            return record

        if self._durable is None:
            return None

        lookup = await self._durable.fetch(session_id)
        if lookup.status is LookupStatus.HIT and lookup.record is not None:
            if not self._transient.put_if_absent(session_id, lookup.record):
                # A save for this session landed while we were reading
                return self._transient.fetch(session_id).record
            return lookup.record

        if lookup.status is LookupStatus.UNAVAILABLE:
            conversation_store_fallbacks_total.labels(operation="load").inc()
            logger.warning(
                "Durable store unavailable, falling back to transient cache",
                session_id=session_id,
            )
        return None

    async def save(self, session_id: str, record: ConversationRecord) -> None:
        """Store the record locally now and schedule the durable write."""
        self._transient.put(session_id, record)

        if self._durable is None or self._closed:
            return

        payload = record.to_json()
        with self._lock:
            self._pending[session_id] = payload
            conversation_pending_writes.set(len(self._pending))
        self._arm_timer()

    def _arm_timer(self) -> None:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = loop.call_later(self._debounce_seconds, self._on_timer)

    def _cancel_timer(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
        task = asyncio.get_running_loop().create_task(self._flush(), name="conversation-flush")
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def flush_now(self) -> int:
        """Flush pending writes immediately.

        Returns:
            Number of records written (0 if nothing was pending or the
            durable store rejected the batch).
        """
        self._cancel_timer()
        return await self._flush()

    async def _flush(self) -> int:
        if self._durable is None:
            return 0

        async with self._flush_lock:
            with self._lock:
                batch = dict(self._pending)
            if not batch:
                return 0

            try:
                await self._durable.write_batch(batch)
            except KVError as e:
                conversation_flushes_total.labels(status="error").inc()
                conversation_store_fallbacks_total.labels(operation="flush").inc()
                logger.error(
                    "Batch flush to durable store failed, keeping pending writes",
                    records=len(batch),
                    error=str(e),
                )
                return 0

            with self._lock:
                # Entries saved again during the write stay for the next flush
                for session_id, payload in batch.items():
                    if self._pending.get(session_id) == payload:
                        del self._pending[session_id]
                remaining = len(self._pending)
            conversation_pending_writes.set(remaining)
            conversation_flushes_total.labels(status="success").inc()
            conversation_records_flushed_total.inc(len(batch))

            logger.info(
                "Flushed conversations to durable store",
                records=len(batch),
                remaining=remaining,
            )
            return len(batch)

    async def shutdown(self) -> None:
        """Flush whatever is pending and release the durable client."""
        self._cancel_timer()
        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)
        await self._flush()
        self._closed = True

        if self._durable is not None:
            with self._lock:
                lost = len(self._pending)
            if lost:
                logger.error("Pending conversation writes not persisted at shutdown", records=lost)
            await self._durable.close()
        logger.info("Persistence coordinator stopped")

    async def list_session_ids(self) -> list[str]:
        """All known session ids across both tiers."""
        ids = set(self._transient.session_ids())
        with self._lock:
            ids.update(self._pending)

        if self._durable is not None:
            try:
                ids.update(await self._durable.session_ids())
            except KVError as e:
                conversation_store_fallbacks_total.labels(operation="list").inc()
                logger.warning("Durable store unavailable while listing sessions", error=str(e))
        return sorted(ids)

    async def sweep_expired(self, retention: timedelta) -> int:
        """Remove records whose last activity is older than ``retention``.

        Returns:
            Number of sessions removed.
        """
        cutoff = datetime.now(timezone.utc) - retention
        expired = set(self._transient.expire(cutoff))
        with self._lock:
            for session_id in expired:
                self._pending.pop(session_id, None)
            conversation_pending_writes.set(len(self._pending))

        if self._durable is not None:
            try:
                stale = []
                dangling = []
                for session_id in await self._durable.session_ids():
                    if session_id in expired or self._transient.contains(session_id):
                        continue
                    with self._lock:
                        if session_id in self._pending:
                            continue
                    lookup = await self._durable.fetch(session_id)
                    if lookup.status is LookupStatus.MISS:
                        dangling.append(session_id)
                    elif lookup.status is LookupStatus.HIT and lookup.record is not None:
                        if lookup.record.last_activity < cutoff:
                            stale.append(session_id)
                await self._durable.remove(sorted(expired) + stale)
                await self._durable.unindex(dangling)
                expired.update(stale)
            except KVError as e:
                conversation_store_fallbacks_total.labels(operation="sweep").inc()
                logger.warning("Durable store unavailable during expiry sweep", error=str(e))

        if expired:
            conversation_sessions_expired_total.inc(len(expired))
            logger.info("Expired conversations removed", sessions=len(expired))
        return len(expired)

    def get_stats(self) -> dict[str, Any]:
        stats = self._transient.get_stats()
        stats["pending_writes"] = self.pending_count
        stats["durable_configured"] = self.durable_configured
        return stats
