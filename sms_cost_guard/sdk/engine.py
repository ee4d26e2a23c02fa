"""
Segment accounting engine.

Single entry point for callers: holds the current conversation window,
publishes a fresh snapshot whenever the window or the cache changes, and
runs background reconciliation against the conversation service.
"""

import logging
import threading
from typing import Callable, List, Optional, Sequence

from ..config.loader import EngineConfig
from ..core.aggregation import AggregationEngine, AggregationSnapshot
from ..core.estimator import SegmentEstimator
from ..core.pricing import CostConverter, CostEstimate, FixedRateProvider, FxProvider
from ..core.reconciler import BatchReconciler, ReconcileProgress, ReconcileResult
from ..storage.cache import TieredCache
from ..storage.models import Conversation
from ..storage.repository import RecordStore, SqliteRecordStore
from .conversation_service import ConversationService

log = logging.getLogger(__name__)

SnapshotListener = Callable[[AggregationSnapshot], None]


class SegmentEngine:
    """Caller-facing surface of the segment accounting engine.

    Collaborators are injected; nothing is looked up through globals.
    """

    def __init__(
        self,
        cache: TieredCache,
        service: ConversationService,
        estimator: Optional[SegmentEstimator] = None,
        converter: Optional[CostConverter] = None,
        reconciler: Optional[BatchReconciler] = None,
    ):
        self.cache = cache
        self.service = service
        self.estimator = estimator or SegmentEstimator()
        self.converter = converter or CostConverter()
        self.aggregator = AggregationEngine(self.estimator, self.converter)
        self.reconciler = reconciler or BatchReconciler(service, cache, self.estimator)

        self._lock = threading.Lock()
        self._conversations: List[Conversation] = []
        self._latest: Optional[AggregationSnapshot] = None
        self._listeners: List[SnapshotListener] = []
        self._unsubscribe_cache = cache.subscribe(self._on_cache_change)

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        service: ConversationService,
        store: Optional[RecordStore] = None,
        fx: Optional[FxProvider] = None,
    ) -> "SegmentEngine":
        """Wire an engine from configuration.

        Args:
            config: Engine configuration
            service: Conversation service to reconcile against
            store: Persistence boundary; defaults to SQLite at cache.db_path
            fx: FX provider; defaults to the configured fixed rate
        """
        if store is None:
            store = SqliteRecordStore(config.cache.db_path)
        cache = TieredCache(store=store, scope=config.cache.scope, ttl=config.cache.ttl)
        estimator = SegmentEstimator()
        pricing = config.pricing
        converter = CostConverter(
            price_per_segment=pricing.price_per_segment,
            base_currency=pricing.base_currency,
            fx=fx or FixedRateProvider(pricing.fx_rate, pricing.target_currency),
            target_currency=pricing.target_currency,
        )
        reconciler = BatchReconciler(
            service, cache, estimator, settings=config.reconciler.to_settings()
        )
        return cls(cache, service, estimator=estimator, converter=converter, reconciler=reconciler)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @property
    def conversations(self) -> List[Conversation]:
        with self._lock:
            return list(self._conversations)

    @property
    def latest_snapshot(self) -> Optional[AggregationSnapshot]:
        return self._latest

    def set_conversations(self, conversations: Sequence[Conversation]) -> AggregationSnapshot:
        """Replace the current window and publish its snapshot."""
        with self._lock:
            self._conversations = list(conversations)
        return self._publish()

    def snapshot(self, conversations: Optional[Sequence[Conversation]] = None) -> AggregationSnapshot:
        """Compute a fresh snapshot without publishing it.

        Args:
            conversations: Window to aggregate; defaults to the current one
        """
        if conversations is None:
            conversations = self.conversations
        return self.aggregator.snapshot(conversations, self.cache)

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Receive every published snapshot.

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

    def _on_cache_change(self, conversation_ids: List[str]) -> None:
        self._publish()

    def _publish(self) -> AggregationSnapshot:
        snapshot = self.snapshot()
        with self._lock:
            self._latest = snapshot
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                log.exception("Snapshot listener failed")
        return snapshot

    # ------------------------------------------------------------------
    # Cache operations
    # ------------------------------------------------------------------

    def load(self) -> int:
        return self.cache.load()

    def persist(self) -> bool:
        return self.cache.persist()

    def estimate_quick(self, conversation: Conversation) -> int:
        """Estimate a conversation and record it as a Quick entry.

        Returns:
            The count now served for the conversation (an existing
            Authoritative count wins over the new estimate)
        """
        segments = self.estimator.estimate(conversation)
        self.cache.put_quick(conversation.conversation_id, segments)
        entry = self.cache.get(conversation.conversation_id)
        return entry.segment_count if entry is not None else segments

    def invalidate_and_recompute(self) -> AggregationSnapshot:
        """Drop Quick estimates, keep Authoritative counts, recompute."""
        removed = self.cache.invalidate_quick()
        log.info("Invalidated %d quick segment estimates", removed)
        self.cache.persist()
        return self._publish()

    def cost_for(self, segment_count: int) -> CostEstimate:
        return self.converter.to_cost(segment_count)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        context: Optional[str] = None,
        on_progress: Optional[Callable[[ReconcileProgress], None]] = None,
    ) -> ReconcileResult:
        """Reconcile the current window and persist the results.

        Args:
            context: Caller view name for the safety valve (e.g. "today")
            on_progress: Progress callback (completed/total, cache hits, new calculations)
        """
        try:
            result = await self.reconciler.reconcile(
                self.conversations, context=context, on_progress=on_progress
            )
        finally:
            self.cache.persist()
        log.info("Reconciliation %s: %d new, %d cached, %d failed",
                 result.status.value, result.progress.new_calculations,
                 result.progress.cache_hits, result.progress.failed)
        return result

    def cancel_reconciliation(self) -> None:
        self.reconciler.cancel()

    def close(self) -> None:
        """Detach from the cache and stop background work."""
        self.reconciler.cancel()
        self._unsubscribe_cache()
