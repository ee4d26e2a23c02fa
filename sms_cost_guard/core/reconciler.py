"""
Background reconciliation of segment counts.

Fetches full content for conversations that lack an Authoritative cache
entry and promotes them, in fixed-size batches with a pause between
batches and exponential backoff when the provider rate-limits.

Failure handling:
1. Rate limit - retry the batch's remaining ids with backoff, then mark it degraded
2. Other fetch error - the id stays unreconciled until a later pass
3. Configuration error - propagated to the caller
4. Implausible candidate count - the pass is aborted before any fetch
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, FrozenSet, Iterable, List, Mapping, Optional, Set

from .estimator import SegmentEstimator
from sms_cost_guard.sdk.conversation_service import (
    ConversationService,
    ConversationServiceConfigError,
    RateLimitError,
)
from sms_cost_guard.storage.cache import TieredCache
from sms_cost_guard.storage.models import Conversation

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Maximum plausible candidates per caller context
DEFAULT_SAFETY_LIMITS = {"today": 100}


@dataclass(frozen=True)
class ReconcilerSettings:
    """Concurrency and backoff limits for reconciliation. Times in seconds."""
    batch_size: int = 10
    batch_delay: float = 0.1
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 8.0
    safety_limits: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_SAFETY_LIMITS))

    def __post_init__(self):
        """Validate limits."""
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.batch_delay < 0:
            raise ValueError("batch_delay cannot be negative")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ValueError("backoff delays cannot be negative")
        for context, limit in self.safety_limits.items():
            if limit < 1:
                raise ValueError(f"safety limit for '{context}' must be >= 1")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)


class ReconcileStatus(Enum):
    """Outcome of a reconciliation pass."""
    COMPLETED = "completed"
    DEGRADED = "degraded"    # At least one batch exhausted its rate-limit retries
    ABORTED = "aborted"      # Safety valve tripped, nothing fetched
    CANCELLED = "cancelled"  # Stopped before scheduling every batch


@dataclass(frozen=True)
class ReconcileProgress:
    """Progress of a pass, published after every fetch."""
    completed: int
    total: int
    cache_hits: int
    new_calculations: int
    failed: int = 0
    skipped_in_flight: int = 0
    degraded_batches: int = 0


@dataclass(frozen=True)
class ReconcileResult:
    """Final outcome of a pass."""
    status: ReconcileStatus
    progress: ReconcileProgress
    diagnostic: Optional[str] = None

    @property
    def fetched(self) -> int:
        return self.progress.new_calculations + self.progress.failed


class InFlightSet:
    """Conversation ids currently being fetched, shared by all passes."""

    def __init__(self):
        self._ids: Set[str] = set()
        self._lock = threading.Lock()

    def try_add(self, conversation_id: str) -> bool:
        """Claim an id; False if another fetch already holds it."""
        with self._lock:
            if conversation_id in self._ids:
                return False
            self._ids.add(conversation_id)
            return True

    def discard(self, conversation_id: str) -> None:
        with self._lock:
            self._ids.discard(conversation_id)

    def snapshot(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._ids)

    def __contains__(self, conversation_id: object) -> bool:
        with self._lock:
            return conversation_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


@dataclass
class _PassState:
    total: int
    cache_hits: int = 0
    new_calculations: int = 0
    failed: int = 0
    skipped_in_flight: int = 0
    degraded_batches: int = 0

    @property
    def completed(self) -> int:
        return self.cache_hits + self.new_calculations + self.failed + self.skipped_in_flight

    def progress(self) -> ReconcileProgress:
        return ReconcileProgress(
            completed=self.completed,
            total=self.total,
            cache_hits=self.cache_hits,
            new_calculations=self.new_calculations,
            failed=self.failed,
            skipped_in_flight=self.skipped_in_flight,
            degraded_batches=self.degraded_batches,
        )


_OK = "ok"
_FAILED = "failed"
_RATE_LIMITED = "rate_limited"
_SKIPPED = "skipped"


class BatchReconciler:
    """Promotes conversations to Authoritative counts in the background.

    Passes may overlap: the shared in-flight set guarantees at most one
    fetch per id at a time, and ids that already hold an Authoritative
    entry are never fetched again.
    """

    def __init__(
        self,
        service: ConversationService,
        cache: TieredCache,
        estimator: SegmentEstimator,
        settings: Optional[ReconcilerSettings] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.service = service
        self.cache = cache
        self.estimator = estimator
        self.settings = settings or ReconcilerSettings()
        self._sleep = sleep
        self._in_flight = InFlightSet()
        self._cancel_events: List[asyncio.Event] = []

    @property
    def in_flight(self) -> FrozenSet[str]:
        return self._in_flight.snapshot()

    def cancel(self) -> None:
        """Stop every running pass from scheduling further batches.

        Fetches already started run to completion and still write their
        results.
        """
        for event in list(self._cancel_events):
            event.set()

    async def reconcile(
        self,
        conversations: Iterable[Conversation],
        context: Optional[str] = None,
        on_progress: Optional[Callable[[ReconcileProgress], None]] = None,
    ) -> ReconcileResult:
        """Run one reconciliation pass.

        Args:
            conversations: Conversation window to reconcile
            context: Caller view name used by the safety valve (e.g. "today")
            on_progress: Called with a progress update at start and after each fetch

        Returns:
            ReconcileResult describing the pass

        Raises:
            ConversationServiceConfigError: If the conversation service is misconfigured
        """
        ids = list(dict.fromkeys(c.conversation_id for c in conversations))
        state = _PassState(total=len(ids))
        candidates = []
        for conversation_id in ids:
            if self.cache.has_authoritative(conversation_id):
                state.cache_hits += 1
            else:
                candidates.append(conversation_id)

        limit = self.settings.safety_limits.get(context) if context else None
        if limit is not None and len(candidates) > limit:
            diagnostic = (
                f"{len(candidates)} conversations need reconciliation for '{context}', "
                f"limit is {limit}; check the caller's date filtering"
            )
            log.warning("Reconciliation aborted: %s", diagnostic)
            return ReconcileResult(ReconcileStatus.ABORTED, state.progress(), diagnostic)

        if not candidates:
            log.debug("All %d conversations already reconciled", state.total)
            self._emit(on_progress, state)
            return ReconcileResult(ReconcileStatus.COMPLETED, state.progress())

        cancel_event = asyncio.Event()
        self._cancel_events.append(cancel_event)
        try:
            return await self._run_pass(candidates, state, cancel_event, on_progress)
        finally:
            self._cancel_events.remove(cancel_event)

    async def _run_pass(
        self,
        candidates: List[str],
        state: _PassState,
        cancel_event: asyncio.Event,
        on_progress: Optional[Callable[[ReconcileProgress], None]],
    ) -> ReconcileResult:
        size = self.settings.batch_size
        batches = [candidates[i:i + size] for i in range(0, len(candidates), size)]
        log.info("Reconciling %d of %d conversations in %d batches",
                 len(candidates), state.total, len(batches))
        self._emit(on_progress, state)

        status = ReconcileStatus.COMPLETED
        for index, batch in enumerate(batches):
            if index > 0:
                await self._sleep(self.settings.batch_delay)
            if cancel_event.is_set():
                log.info("Reconciliation cancelled before batch %d/%d", index + 1, len(batches))
                status = ReconcileStatus.CANCELLED
                break

            if not await self._run_batch(batch, state, cancel_event, on_progress):
                status = ReconcileStatus.DEGRADED
            log.info("Batch %d/%d done: %d/%d conversations processed",
                     index + 1, len(batches), state.completed, state.total)

        if status is ReconcileStatus.COMPLETED and state.degraded_batches:
            status = ReconcileStatus.DEGRADED
        return ReconcileResult(status, state.progress())

    async def _run_batch(
        self,
        batch: List[str],
        state: _PassState,
        cancel_event: asyncio.Event,
        on_progress: Optional[Callable[[ReconcileProgress], None]],
    ) -> bool:
        """Fetch one batch, retrying rate-limited ids. False if degraded."""
        pending = batch
        attempt = 0
        while True:
            outcomes = await asyncio.gather(
                *(self._reconcile_one(cid, state, on_progress) for cid in pending),
                return_exceptions=True,
            )
            # Raise configuration errors once every sibling fetch has settled
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
            rate_limited = [cid for cid, outcome in zip(pending, outcomes) if outcome == _RATE_LIMITED]
            if not rate_limited:
                return True

            if attempt >= self.settings.max_retries or cancel_event.is_set():
                return self._degrade(rate_limited, attempt, state, on_progress)

            delay = self.settings.backoff_delay(attempt)
            attempt += 1
            log.info("Rate limited on %d conversations, retrying in %.1fs (attempt %d/%d)",
                     len(rate_limited), delay, attempt, self.settings.max_retries)
            await self._sleep(delay)
            if cancel_event.is_set():
                log.info("Reconciliation cancelled during backoff")
                return self._degrade(rate_limited, attempt - 1, state, on_progress)
            pending = rate_limited

    def _degrade(
        self,
        rate_limited: List[str],
        retries: int,
        state: _PassState,
        on_progress: Optional[Callable[[ReconcileProgress], None]],
    ) -> bool:
        log.warning("Batch degraded: %d conversations still rate limited after %d retries",
                    len(rate_limited), retries)
        state.failed += len(rate_limited)
        state.degraded_batches += 1
        self._emit(on_progress, state)
        return False

    async def _reconcile_one(
        self,
        conversation_id: str,
        state: _PassState,
        on_progress: Optional[Callable[[ReconcileProgress], None]],
    ) -> str:
        if self.cache.has_authoritative(conversation_id):
            # Filled by an overlapping pass since this one started
            state.cache_hits += 1
            self._emit(on_progress, state)
            return _OK
        if not self._in_flight.try_add(conversation_id):
            state.skipped_in_flight += 1
            self._emit(on_progress, state)
            return _SKIPPED

        try:
            full = await self.service.fetch_full_conversation(conversation_id)
            segments = self.estimator.estimate_messages(full.messages or (), conversation_id)
            self.cache.put_authoritative(conversation_id, segments)
        except ConversationServiceConfigError:
            raise
        except RateLimitError:
            return _RATE_LIMITED
        except Exception as e:
            log.warning("Failed to reconcile conversation %s: %s", conversation_id, e)
            state.failed += 1
            self._emit(on_progress, state)
            return _FAILED
        finally:
            self._in_flight.discard(conversation_id)

        log.debug("Conversation %s reconciled: %d segments", conversation_id, segments)
        state.new_calculations += 1
        self._emit(on_progress, state)
        return _OK

    def _emit(
        self,
        on_progress: Optional[Callable[[ReconcileProgress], None]],
        state: _PassState,
    ) -> None:
        if on_progress is None:
            return
        try:
            on_progress(state.progress())
        except Exception:
            log.exception("Reconciliation progress callback failed")
