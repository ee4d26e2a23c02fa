"""
Segment and cost aggregation.

Builds a consistent snapshot of segment totals and cost for a set of
conversations. Snapshots are always recomputed from scratch; nothing is
patched incrementally.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, Optional

from .estimator import SegmentEstimator
from .pricing import CostConverter
from sms_cost_guard.storage.cache import TieredCache
from sms_cost_guard.storage.models import Conversation


@dataclass(frozen=True)
class AggregationSnapshot:
    """Consistent aggregate view of a conversation window.

    accurate_count counts conversations resolved from the cache;
    fallback_count counts those estimated on the fly.
    """
    total_segments: int
    total_cost: Decimal
    currency: str
    accurate_count: int
    fallback_count: int
    per_conversation: Dict[str, int] = field(default_factory=dict)
    fx_fallback: bool = False
    computed_at: Optional[datetime] = None

    @property
    def conversation_count(self) -> int:
        return self.accurate_count + self.fallback_count

    @property
    def average_cost_per_conversation(self) -> Decimal:
        if self.conversation_count == 0:
            return Decimal("0")
        return self.total_cost / self.conversation_count


class AggregationEngine:
    """Computes snapshots from conversations and the segment cache."""

    def __init__(self, estimator: SegmentEstimator, converter: CostConverter):
        self.estimator = estimator
        self.converter = converter

    def snapshot(self, conversations: Iterable[Conversation], cache: TieredCache) -> AggregationSnapshot:
        """Compute a fresh snapshot.

        Cached counts (Authoritative over Quick) are used where present;
        otherwise the estimator supplies a count that is NOT written back
        to the cache, so aggregation never triggers a cache change.

        Cost is priced once over the segment total rather than summed per
        conversation, so rounding does not compound.
        """
        per_conversation: Dict[str, int] = {}
        accurate_count = 0
        fallback_count = 0

        for conversation in conversations:
            # Repeated ids are counted once
            if conversation.conversation_id in per_conversation:
                continue
            entry = cache.get(conversation.conversation_id)
            if entry is not None:
                segments = entry.segment_count
                accurate_count += 1
            else:
                segments = self.estimator.estimate(conversation)
                fallback_count += 1
            per_conversation[conversation.conversation_id] = segments

        total_segments = sum(per_conversation.values())
        cost = self.converter.to_cost(total_segments)

        return AggregationSnapshot(
            total_segments=total_segments,
            total_cost=cost.amount,
            currency=cost.currency,
            accurate_count=accurate_count,
            fallback_count=fallback_count,
            per_conversation=per_conversation,
            fx_fallback=cost.fx_fallback,
            computed_at=datetime.now(timezone.utc),
        )
