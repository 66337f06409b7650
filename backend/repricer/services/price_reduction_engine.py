"""Price reduction decision engine.

``evaluate`` decides whether one listing should be reduced this cycle and to
what price. It reads the listing but never writes to it and never talks to
the price update endpoint; ``apply_decision`` mutates the listing once the
caller has pushed the price to eBay.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP, ROUND_UP
from typing import Any, Awaitable, Callable, Dict, Optional

from repricer.models_sqlalchemy.models import ReductionStrategy
from repricer.services.competitive_pricing_service import MarketAnalysis
from repricer.utils.logger import logger
from repricer.utils.time_utils import to_utc


CENT = Decimal("0.01")
MARKET_DISCOUNT = Decimal("0.95")
MAX_SINGLE_DROP_RATIO = Decimal("0.5")
DEFAULT_TIME_TRIGGER_DAYS = 3
DEFAULT_WATCH_COUNT_THRESHOLD = 5

REASON_TIME_TRIGGER = "time trigger"
REASON_LOW_INTEREST = "low interest"

MarketLookup = Callable[[Any], Awaitable[MarketAnalysis]]

_PERCENT_STRATEGIES = {
    ReductionStrategy.fixed_percentage,
    ReductionStrategy.time_based,
    ReductionStrategy.market_based,
}


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_price(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _strategy(listing) -> ReductionStrategy:
    value = getattr(listing, "strategy", None) or ReductionStrategy.fixed_percentage
    return value if isinstance(value, ReductionStrategy) else ReductionStrategy(value)


@dataclass
class ReductionDecision:
    should_reduce: bool
    current_price: Decimal
    new_price: Optional[Decimal]
    reason: str
    trigger: Optional[str] = None
    strategy: Optional[str] = None
    market: Optional[MarketAnalysis] = None

    @property
    def match_tier(self) -> Optional[str]:
        return self.market.match_tier if self.market is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_reduce": self.should_reduce,
            "current_price": float(self.current_price),
            "new_price": float(self.new_price) if self.new_price is not None else None,
            "reason": self.reason,
            "trigger": self.trigger,
            "strategy": self.strategy,
            "market": self.market.to_dict() if self.market is not None else None,
        }


def percentage_price(current: Decimal, percent: Decimal) -> Decimal:
    return current * (Decimal("1") - percent / Decimal("100"))


def price_floor(listing) -> Decimal:
    """Lowest price a single evaluation may produce."""
    minimum = to_decimal(listing.minimum_price)
    original = to_decimal(getattr(listing, "original_price", None)) or to_decimal(listing.current_price)
    # Rounded up so the result never dips below half of the original price.
    half_original = (original * MAX_SINGLE_DROP_RATIO).quantize(CENT, rounding=ROUND_UP)
    return max(minimum, half_original)


class PriceReductionEngine:
    def _reject(self, current: Decimal, reason: str, strategy: ReductionStrategy, **extra) -> ReductionDecision:
        return ReductionDecision(
            should_reduce=False,
            current_price=current,
            new_price=None,
            reason=reason,
            strategy=strategy.value,
            **extra,
        )

    def check_trigger(self, listing, now: datetime) -> Optional[str]:
        """Return the trigger reason that fires for ``listing``, if any. Time wins over demand."""
        end_time = to_utc(getattr(listing, "end_time", None))
        if end_time is not None:
            days_remaining = (end_time - now).total_seconds() / 86400
            window = getattr(listing, "time_trigger_days", None)
            window = DEFAULT_TIME_TRIGGER_DAYS if window is None else window
            if 0 < days_remaining <= window:
                return REASON_TIME_TRIGGER

        threshold = getattr(listing, "watch_count_threshold", None)
        threshold = DEFAULT_WATCH_COUNT_THRESHOLD if threshold is None else threshold
        if (getattr(listing, "watch_count", None) or 0) < threshold:
            return REASON_LOW_INTEREST
        return None

    async def evaluate(
        self,
        listing,
        now: Optional[datetime] = None,
        market_lookup: Optional[MarketLookup] = None,
    ) -> ReductionDecision:
        now = to_utc(now) or datetime.now(timezone.utc)
        strategy = _strategy(listing)
        current = to_decimal(listing.current_price)
        minimum = to_decimal(listing.minimum_price)
        amount = to_decimal(listing.reduction_amount) or Decimal("0")

        if minimum is None:
            return self._reject(current, "no minimum price set", strategy)
        if amount <= 0:
            return self._reject(current, "reduction amount must be positive", strategy)
        if strategy in _PERCENT_STRATEGIES and amount > 100:
            return self._reject(current, "reduction percentage above 100", strategy)
        if current <= minimum:
            return self._reject(current, "at or below minimum price", strategy)

        trigger = self.check_trigger(listing, now)
        if trigger is None:
            return self._reject(current, "no trigger", strategy)

        market: Optional[MarketAnalysis] = None
        if strategy == ReductionStrategy.fixed_dollar:
            candidate = current - amount
        elif strategy == ReductionStrategy.market_based:
            candidate = percentage_price(current, amount)
            if market_lookup is not None:
                market = await market_lookup(listing)
            if market is not None and not market.has_insufficient_data and market.average_price is not None:
                candidate = min(market.average_price * MARKET_DISCOUNT, candidate)
        else:
            candidate = percentage_price(current, amount)

        new_price = max(round_price(candidate), price_floor(listing))
        if new_price >= current:
            return self._reject(current, "price floor reached", strategy, trigger=trigger, market=market)

        logger.info(
            "[reduction] listing=%s %s -> %s (%s, %s)",
            getattr(listing, "id", None), current, new_price, strategy.value, trigger,
        )
        return ReductionDecision(
            should_reduce=True,
            current_price=current,
            new_price=new_price,
            reason=trigger,
            trigger=trigger,
            strategy=strategy.value,
            market=market,
        )

    def apply_decision(self, listing, decision: ReductionDecision, now: Optional[datetime] = None) -> bool:
        """Write an accepted decision onto ``listing``. Rejected decisions change nothing."""
        if not decision.should_reduce or decision.new_price is None:
            return False

        now = to_utc(now) or datetime.now(timezone.utc)
        listing.current_price = decision.new_price
        listing.last_reduction_at = now
        if listing.reduction_enabled:
            listing.next_reduction_at = now + timedelta(days=listing.interval_days or 0)
        else:
            listing.next_reduction_at = None
        listing.total_reductions = (listing.total_reductions or 0) + 1
        return True


price_reduction_engine = PriceReductionEngine()
