"""
Metering middleware.

Wraps a provider call with admission control before it runs and usage
recording after it completes.

Every wrapped call ends in one of three states:
    DENIED         quota check refused it; the operation never ran
    RECORDED       the operation ran and its usage was stored
    RECORD_FAILED  the operation ran but its usage could not be stored

RECORDED and RECORD_FAILED both hand the response back to the caller:
admission failures are loud, accounting failures are soft.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from ai_cost_meter.logging_config import get_logger
from ai_cost_meter.storage.cache import CacheLayer
from ai_cost_meter.storage.models import utcnow, to_iso

from .extraction import TokenExtractorRegistry, default_registry
from .pricing import DEFAULT_ESTIMATED_COST, CostModel
from .quota import QuotaCheckRequest, QuotaCheckResult, QuotaEvaluator
from .recorder import UsageRecorder, UsageTrackingOptions

log = get_logger(__name__)


class MeteringState(Enum):
    """Where a metered call ended up."""
    DENIED = "denied"
    RECORDED = "recorded"
    RECORD_FAILED = "record_failed"


@dataclass(frozen=True)
class UsageResult:
    """Measured usage of a completed call."""
    input_tokens: int
    output_tokens: int
    cost_usd: float
    record_id: str

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class MeteredResult:
    """What ``wrap`` hands back to the caller."""
    response: Any
    usage: Optional[UsageResult]
    quota_exceeded: bool
    state: MeteringState
    check: Optional[QuotaCheckResult] = None


class MeteringMiddleware:
    """Estimate, admit or deny, execute, record, invalidate.

    Usage:
        middleware = MeteringMiddleware(evaluator, recorder, cost_model, cache)
        result = middleware.wrap(options, lambda: client.chat(...), estimated_cost=0.02)
        if result.quota_exceeded:
            ...
    """

    def __init__(
        self,
        evaluator: QuotaEvaluator,
        recorder: UsageRecorder,
        cost_model: CostModel,
        cache: Optional[CacheLayer] = None,
        extractors: Optional[TokenExtractorRegistry] = None,
        default_estimated_cost: float = float(DEFAULT_ESTIMATED_COST),
    ):
        self._evaluator = evaluator
        self._recorder = recorder
        self._cost_model = cost_model
        self._cache = cache or CacheLayer(None)
        self._extractors = extractors or default_registry()
        self.default_estimated_cost = default_estimated_cost

    def wrap(
        self,
        options: UsageTrackingOptions,
        operation: Callable[[], Any],
        estimated_cost: Optional[float] = None,
    ) -> MeteredResult:
        """Run ``operation`` if quotas allow it and record what it cost.

        Exceptions from the quota check and from ``operation`` propagate
        unchanged. Nothing raised while recording escapes.

        Args:
            options: Call identifiers
            operation: Zero-argument callable performing the provider call
            estimated_cost: Pre-call cost estimate; defaults to the fallback estimate

        Returns:
            MeteredResult; ``quota_exceeded`` is True and ``response`` None when denied
        """
        if estimated_cost is None:
            estimated_cost = self.default_estimated_cost

        check = self._evaluator.check(QuotaCheckRequest(
            organization_id=options.organization_id,
            provider=options.provider,
            model=options.model,
            estimated_cost=estimated_cost,
            user_id=options.user_id,
        ))

        if not check.allowed:
            log.warning(
                "metered_call_blocked",
                organization_id=options.organization_id,
                provider=options.provider,
                model=options.model,
                quota_type=check.limiting_quota.quota_type,
            )
            return MeteredResult(
                response=None,
                usage=None,
                quota_exceeded=True,
                state=MeteringState.DENIED,
                check=check,
            )

        response = operation()

        usage = self.track(options, response)
        return MeteredResult(
            response=response,
            usage=usage,
            quota_exceeded=False,
            state=MeteringState.RECORDED if usage is not None else MeteringState.RECORD_FAILED,
            check=check,
        )

    def track(self, options: UsageTrackingOptions, response: Any) -> Optional[UsageResult]:
        """Record usage of a completed call and invalidate cached quota state.

        This is the one place where recording failures are contained;
        it never raises.
        """
        try:
            usage = self._record(options, response)
        except Exception as e:
            log.error(
                "usage_tracking_failed",
                organization_id=options.organization_id,
                provider=options.provider,
                model=options.model,
                error=str(e),
            )
            usage = None

        self._cache.invalidate_organization(options.organization_id)
        return usage

    def _record(self, options: UsageTrackingOptions, response: Any) -> Optional[UsageResult]:
        tokens = self._extractors.extract(options.provider, response)
        cost = self._cost_model.actual_cost(options.provider, options.model, tokens)
        outcome = self._recorder.record(
            options,
            tokens.input_tokens,
            tokens.output_tokens,
            cost,
            {
                "provider": options.provider,
                "model": options.model,
                "timestamp": to_iso(utcnow()),
            },
        )
        if not outcome.ok:
            return None
        return UsageResult(
            input_tokens=tokens.input_tokens,
            output_tokens=tokens.output_tokens,
            cost_usd=cost,
            record_id=outcome.record_id,
        )
