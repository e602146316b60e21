"""
Component wiring.

Builds the store, cache and engine components once and injects them
into each other. Nothing here is a module-level singleton; callers own
the returned object.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ai_cost_meter.config.loader import MeteringConfig
from ai_cost_meter.storage.cache import CacheLayer
from ai_cost_meter.storage.repository import MeteringStore, SQLiteMeteringStore

from .extraction import TokenExtractorRegistry, default_registry
from .metering import MeteringMiddleware
from .pricing import CostModel
from .quota import QuotaEvaluator
from .recorder import UsageRecorder


@dataclass(frozen=True)
class MeteringService:
    """All metering components sharing one store and one cache."""
    store: MeteringStore
    cache: CacheLayer
    cost_model: CostModel
    evaluator: QuotaEvaluator
    recorder: UsageRecorder
    middleware: MeteringMiddleware
    max_output_tokens: int = 1000

    @classmethod
    def build(
        cls,
        store: MeteringStore,
        cache: Optional[CacheLayer] = None,
        default_cost: float = 0.01,
        quota_ttl: int = 300,
        max_output_tokens: int = 1000,
        extractors: Optional[TokenExtractorRegistry] = None,
    ) -> "MeteringService":
        cache = cache or CacheLayer(None)
        cost_model = CostModel(store, cache, default_cost=Decimal(str(default_cost)))
        evaluator = QuotaEvaluator(store, cache, ttl=quota_ttl)
        recorder = UsageRecorder(store)
        middleware = MeteringMiddleware(
            evaluator,
            recorder,
            cost_model,
            cache,
            extractors=extractors or default_registry(),
            default_estimated_cost=default_cost,
        )
        return cls(
            store=store,
            cache=cache,
            cost_model=cost_model,
            evaluator=evaluator,
            recorder=recorder,
            middleware=middleware,
            max_output_tokens=max_output_tokens,
        )

    @classmethod
    def from_config(cls, config: MeteringConfig) -> "MeteringService":
        """Wire components from a loaded configuration."""
        return cls.build(
            store=SQLiteMeteringStore(config.database.path),
            cache=CacheLayer.from_url(config.cache.redis_url, timeout=config.cache.timeout_seconds),
            default_cost=config.estimation.default_cost,
            quota_ttl=config.cache.quota_ttl_seconds,
            max_output_tokens=config.estimation.max_output_tokens,
        )
