"""
Pricing calculations and rate management.

Handles cost computations for provider/model pairs from versioned
pricing records.
"""

from decimal import Decimal, ROUND_UP
from typing import Callable, Iterable, Mapping, Optional

from ai_cost_meter.logging_config import get_logger
from ai_cost_meter.storage.cache import (
    COST_ESTIMATES_TTL,
    CacheLayer,
    cost_estimate_key,
    escape_glob,
)
from ai_cost_meter.storage.models import PricingRecord, utcnow
from ai_cost_meter.storage.repository import MeteringStore

from .errors import RateNotFoundError
from .token_counter import TokenUsage, estimate_message_tokens

log = get_logger(__name__)

# Pre-call estimate used when a provider/model has no pricing
DEFAULT_ESTIMATED_COST = Decimal("0.01")
DEFAULT_MAX_OUTPUT_TOKENS = 1000

# Costs keep sub-cent precision and round UP
COST_QUANTUM = Decimal("0.000001")


def calculate_cost(usage: TokenUsage, pricing: PricingRecord) -> Decimal:
    """Cost of a token pair at a given price.

    Args:
        usage: Input and output token counts
        pricing: Rates per 1K tokens

    Returns:
        (input/1000)*input_rate + (output/1000)*output_rate, rounded up
        to six decimal places
    """
    input_cost = (Decimal(usage.input_tokens) / Decimal("1000")) * pricing.input_cost_per_1k
    output_cost = (Decimal(usage.output_tokens) / Decimal("1000")) * pricing.output_cost_per_1k
    return (input_cost + output_cost).quantize(COST_QUANTUM, rounding=ROUND_UP)


class CostModel:
    """Pricing lookup and cost arithmetic over a pricing store."""

    def __init__(
        self,
        store: MeteringStore,
        cache: Optional[CacheLayer] = None,
        default_cost: Decimal = DEFAULT_ESTIMATED_COST,
        clock: Callable = utcnow,
    ):
        self._store = store
        self._cache = cache or CacheLayer(None)
        self.default_cost = Decimal(str(default_cost))
        self._clock = clock

    def get_rate(self, provider: str, model: str) -> PricingRecord:
        """Current pricing: the latest record effective on or before today.

        Cached per (provider, model, day), so a price scheduled for a later
        date is picked up on its first day.

        Raises:
            RateNotFoundError: If no pricing exists for the pair
        """
        today = self._clock().date()
        key = cost_estimate_key(provider, model, today)
        cached = self._cache.get(key)
        if cached is not None:
            return PricingRecord.from_dict(cached)

        record = self._store.latest_pricing(provider, model, today)
        if record is None:
            raise RateNotFoundError(provider, model)
        self._cache.set(key, record.to_dict(), COST_ESTIMATES_TTL)
        return record

    def add_pricing(self, record: PricingRecord) -> None:
        """Append a pricing version and drop every cached rate for the pair."""
        self._store.add_pricing(record)
        self._cache.delete_pattern(
            f"cost:{escape_glob(record.provider)}:{escape_glob(record.model)}:*"
        )

    def estimated_cost(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    ) -> float:
        """Pre-call cost estimate.

        The caller's max output tokens stand in for the real output size,
        so the estimate leans high. Missing pricing falls back to
        ``default_cost`` instead of failing the admission check.
        """
        try:
            pricing = self.get_rate(provider, model)
        except RateNotFoundError:
            log.warning(
                "pricing_missing_using_default",
                provider=provider,
                model=model,
                default_cost=str(self.default_cost),
            )
            return float(self.default_cost)
        usage = TokenUsage(input_tokens=input_tokens, output_tokens=max_output_tokens)
        return float(calculate_cost(usage, pricing))

    def estimate_messages_cost(
        self,
        provider: str,
        model: str,
        messages: Iterable[Mapping[str, str]],
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    ) -> float:
        """Pre-call estimate for a chat conversation."""
        input_tokens = estimate_message_tokens(messages)
        return self.estimated_cost(provider, model, input_tokens, max_output_tokens)

    def estimate_tokens_cost(self, provider: str, model: str, estimated_tokens: int) -> float:
        """Price an undifferentiated token count at the mean of input and output rates."""
        try:
            pricing = self.get_rate(provider, model)
        except RateNotFoundError:
            log.warning(
                "pricing_missing_using_default",
                provider=provider,
                model=model,
                default_cost=str(self.default_cost),
            )
            return float(self.default_cost)
        average_rate = (pricing.input_cost_per_1k + pricing.output_cost_per_1k) / Decimal("2")
        cost = (Decimal(estimated_tokens) / Decimal("1000")) * average_rate
        return float(cost.quantize(COST_QUANTUM, rounding=ROUND_UP))

    def actual_cost(self, provider: str, model: str, usage: TokenUsage) -> float:
        """Cost of measured usage.

        Raises:
            RateNotFoundError: If no pricing exists for the pair
        """
        return float(calculate_cost(usage, self.get_rate(provider, model)))
