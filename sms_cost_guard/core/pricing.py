"""
Pricing calculations and currency conversion.

Turns segment counts into a local-currency cost using a fixed provider
price per segment and an exchange-rate lookup.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Optional, Protocol, Union

log = logging.getLogger(__name__)

Amount = Union[Decimal, float]

# Provider SMS rate, inbound and outbound alike
SMS_PRICE_PER_SEGMENT = Decimal("0.0083")
BASE_CURRENCY = "USD"
LOCAL_CURRENCY = "CAD"
# Used when no live USD->CAD rate is available
FALLBACK_FX_RATE = Decimal("1.35")

_COST_QUANTUM = Decimal("0.0001")


class FxProvider(Protocol):
    """External exchange-rate service."""

    def convert(self, amount: Decimal, from_currency: str) -> Amount:
        ...


class FixedRateProvider:
    """FX provider with a single fixed rate into one target currency."""

    def __init__(self, rate: Amount = FALLBACK_FX_RATE, to_currency: str = LOCAL_CURRENCY):
        rate = Decimal(str(rate))
        if rate <= 0:
            raise ValueError("rate must be > 0")
        self.rate = rate
        self.to_currency = to_currency

    def convert(self, amount: Decimal, from_currency: str) -> Decimal:
        if from_currency == self.to_currency:
            return amount
        return amount * self.rate


@dataclass(frozen=True)
class CostEstimate:
    """Point-in-time cost for a segment count.

    Not a locked-in price: the FX rate may move between estimates.
    """
    segments: int
    base_amount: Decimal
    amount: Decimal
    currency: str
    fx_fallback: bool = False

    @property
    def amount_float(self) -> float:
        return float(self.amount)


class CostConverter:
    """Converts segment counts into a currency amount."""

    def __init__(
        self,
        price_per_segment: Amount = SMS_PRICE_PER_SEGMENT,
        base_currency: str = BASE_CURRENCY,
        fx: Optional[FxProvider] = None,
        target_currency: str = LOCAL_CURRENCY,
    ):
        price = Decimal(str(price_per_segment))
        if price <= 0:
            raise ValueError("price_per_segment must be > 0")
        self.price_per_segment = price
        self.base_currency = base_currency
        self.target_currency = target_currency
        self.fx = fx if fx is not None else FixedRateProvider(to_currency=target_currency)

    def to_cost(self, segment_count: int) -> CostEstimate:
        """Price a segment count in the target currency.

        If the FX lookup fails the unconverted base amount is returned and
        flagged with ``fx_fallback`` instead of raising.

        Args:
            segment_count: Total segments to price

        Returns:
            CostEstimate rounded UP to 4 decimal places
        """
        if segment_count <= 0:
            zero = Decimal("0").quantize(_COST_QUANTUM)
            return CostEstimate(
                segments=max(segment_count, 0),
                base_amount=zero,
                amount=zero,
                currency=self.target_currency,
            )

        base_amount = Decimal(segment_count) * self.price_per_segment
        try:
            converted = Decimal(str(self.fx.convert(base_amount, self.base_currency)))
        except Exception as e:
            log.warning("FX conversion %s->%s failed, reporting %s amount: %s",
                        self.base_currency, self.target_currency, self.base_currency, e)
            return CostEstimate(
                segments=segment_count,
                base_amount=_round_up(base_amount),
                amount=_round_up(base_amount),
                currency=self.base_currency,
                fx_fallback=True,
            )

        return CostEstimate(
            segments=segment_count,
            base_amount=_round_up(base_amount),
            amount=_round_up(converted),
            currency=self.target_currency,
        )

    def rate_info(self) -> str:
        """Human-readable per-segment rate."""
        per_segment = self.to_cost(1)
        return (
            f"SMS: {self.base_currency} {self.price_per_segment}/segment -> "
            f"{per_segment.currency} {per_segment.amount}/segment"
        )


def _round_up(amount: Decimal) -> Decimal:
    # Conservative bias: costs always round up
    return amount.quantize(_COST_QUANTUM, rounding=ROUND_UP)
