"""
Two-tier segment cache.

Holds Quick and Authoritative segment counts per conversation, expires
them after a TTL, and loads/saves the whole store through a RecordStore.

Tier rules:
1. Authoritative beats Quick on read
2. An Authoritative write discards any Quick entry for the same id
3. A Quick write never replaces an Authoritative entry, whatever its arrival order
"""

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from .models import CacheTier, SegmentCacheEntry
from .repository import RecordStore

log = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=12)
DEFAULT_SCOPE = "default"

ChangeListener = Callable[[List[str]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class TieredCache:
    """Thread-safe two-tier segment cache.

    The cache is the only shared mutable resource of the engine. All
    accessors take the same lock; change listeners run after the lock is
    released so they may read the cache freely.
    """

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        scope: str = DEFAULT_SCOPE,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize an empty cache.

        Args:
            store: Persistence boundary; None keeps the cache in memory only
            scope: Record key inside the store (one record per user/session)
            ttl: Maximum age of the store and of each entry
            clock: Source of the current time (aware datetimes)
        """
        if ttl <= timedelta(0):
            raise ValueError("ttl must be > 0")
        self.store = store
        self.scope = scope
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.RLock()
        self._quick: Dict[str, SegmentCacheEntry] = {}
        self._authoritative: Dict[str, SegmentCacheEntry] = {}
        self._last_persisted_at: Optional[datetime] = None
        self._listeners: List[ChangeListener] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, conversation_id: str) -> Optional[SegmentCacheEntry]:
        """Return the highest-priority entry for an id, or None."""
        with self._lock:
            entry = self._authoritative.get(conversation_id)
            if entry is None:
                entry = self._quick.get(conversation_id)
            return entry

    def has_authoritative(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._authoritative

    def entries(self) -> List[SegmentCacheEntry]:
        """Resolved entries, one per id."""
        with self._lock:
            merged = dict(self._quick)
            merged.update(self._authoritative)
            return list(merged.values())

    def stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "quick": len(self._quick),
                "authoritative": len(self._authoritative),
                "last_persisted_at": self._last_persisted_at,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(set(self._quick) | set(self._authoritative))

    def __contains__(self, conversation_id: object) -> bool:
        with self._lock:
            return conversation_id in self._authoritative or conversation_id in self._quick

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put_quick(self, conversation_id: str, segment_count: int) -> bool:
        """Store a Quick estimate.

        Returns:
            False if the id already has an Authoritative entry (write ignored)
        """
        entry = SegmentCacheEntry(
            conversation_id=conversation_id,
            segment_count=segment_count,
            computed_at=self._clock(),
            tier=CacheTier.QUICK,
        )
        with self._lock:
            if conversation_id in self._authoritative:
                log.debug("Ignoring quick write for %s: authoritative entry exists", conversation_id)
                return False
            self._quick[conversation_id] = entry
        self._notify([conversation_id])
        return True

    def put_authoritative(self, conversation_id: str, segment_count: int) -> None:
        """Store an Authoritative count, superseding any Quick entry."""
        entry = SegmentCacheEntry(
            conversation_id=conversation_id,
            segment_count=segment_count,
            computed_at=self._clock(),
            tier=CacheTier.AUTHORITATIVE,
        )
        with self._lock:
            self._quick.pop(conversation_id, None)
            self._authoritative[conversation_id] = entry
        self._notify([conversation_id])

    def invalidate_quick(self) -> int:
        """Drop every Quick entry; Authoritative entries are untouched.

        Returns:
            Number of entries removed
        """
        with self._lock:
            removed = list(self._quick)
            self._quick.clear()
        if removed:
            self._notify(removed)
        return len(removed)

    def clear(self) -> None:
        with self._lock:
            removed = list(set(self._quick) | set(self._authoritative))
            self._quick.clear()
            self._authoritative.clear()
        if removed:
            self._notify(removed)

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a listener called with the changed ids after each mutation.

        Returns:
            A function that unregisters the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, conversation_ids: List[str]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(conversation_ids)
            except Exception:
                log.exception("Cache change listener failed")

    # ------------------------------------------------------------------
    # Persistence boundary
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Replace the in-memory store with the persisted record.

        The whole record is discarded when it was persisted more than one
        TTL ago; otherwise entries individually older than the TTL are
        dropped. Any read or parse failure yields an empty store.

        Returns:
            Number of entries loaded
        """
        if self.store is None:
            return 0

        quick: Dict[str, SegmentCacheEntry] = {}
        authoritative: Dict[str, SegmentCacheEntry] = {}
        last_persisted_at: Optional[datetime] = None
        try:
            raw = self.store.read(self.scope)
            if raw:
                now = self._clock()
                data = json.loads(raw)
                last_persisted_at = _from_epoch_ms(int(data["lastPersistedAt"]))
                if now - last_persisted_at > self.ttl:
                    log.info("Segment cache record for %s expired, discarding it", self.scope)
                    last_persisted_at = None
                    self._discard_record()
                else:
                    for entry in self._parse_entries(data.get("entries") or [], now):
                        target = authoritative if entry.tier is CacheTier.AUTHORITATIVE else quick
                        target[entry.conversation_id] = entry
                    for conversation_id in authoritative:
                        quick.pop(conversation_id, None)
        except Exception as e:
            log.warning("Failed to load segment cache for %s, starting empty: %s", self.scope, e)
            quick, authoritative, last_persisted_at = {}, {}, None

        with self._lock:
            changed = set(self._quick) | set(self._authoritative) | set(quick) | set(authoritative)
            self._quick = quick
            self._authoritative = authoritative
            self._last_persisted_at = last_persisted_at
        if changed:
            self._notify(sorted(changed))

        loaded = len(quick) + len(authoritative)
        log.info("Loaded %d cached segment counts for %s", loaded, self.scope)
        return loaded

    def persist(self) -> bool:
        """Write the whole store as one record.

        Failures are logged; the in-memory store stays authoritative for the
        rest of the process either way.

        Returns:
            True if the record was written
        """
        if self.store is None:
            return False

        now = self._clock()
        with self._lock:
            entries = list(self._quick.values()) + list(self._authoritative.values())
        record = {
            "entries": [
                {
                    "id": entry.conversation_id,
                    "segmentCount": entry.segment_count,
                    "computedAt": _to_epoch_ms(entry.computed_at),
                    "tier": entry.tier.value,
                }
                for entry in entries
            ],
            "lastPersistedAt": _to_epoch_ms(now),
        }
        try:
            self.store.write(self.scope, json.dumps(record))
        except Exception as e:
            log.warning("Failed to persist segment cache for %s: %s", self.scope, e)
            return False

        with self._lock:
            self._last_persisted_at = now
        log.debug("Persisted %d segment counts for %s", len(entries), self.scope)
        return True

    def _parse_entries(self, raw_entries: Iterable[dict], now: datetime) -> List[SegmentCacheEntry]:
        entries = []
        for raw in raw_entries:
            try:
                computed_at = _from_epoch_ms(int(raw["computedAt"]))
                if now - computed_at > self.ttl:
                    continue
                # Records written before tiers were persisted only held
                # authoritative counts
                tier = CacheTier(raw.get("tier", CacheTier.AUTHORITATIVE.value))
                entries.append(SegmentCacheEntry(
                    conversation_id=str(raw["id"]),
                    segment_count=raw["segmentCount"],
                    computed_at=computed_at,
                    tier=tier,
                ))
            except (KeyError, TypeError, ValueError) as e:
                log.debug("Skipping malformed cache entry %r: %s", raw, e)
        return entries

    def _discard_record(self) -> None:
        try:
            self.store.delete(self.scope)
        except Exception as e:
            log.warning("Failed to delete expired segment cache for %s: %s", self.scope, e)
