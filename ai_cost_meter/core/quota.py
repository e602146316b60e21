"""
Hierarchical quota evaluation.

Admission control for a single provider call. Every live quota that
applies to the call is checked:

Check Order:
1. Organization daily
2. Organization monthly
3. Provider scoped (daily, then monthly)
4. Model scoped (daily, then monthly)

A request is admitted only if every quota admits it. When several
quotas deny, the reported limiting quota is the first denier in the
order above, not the one with the least headroom left.

Quota state is read through the cache. A cached snapshot can lag behind
concurrent admissions by up to the TTL, so a burst of requests may be
over-admitted by a bounded amount. The persisted counter stays exact
because increments happen in the store.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from ai_cost_meter.logging_config import get_logger
from ai_cost_meter.storage.cache import QUOTA_CHECK_TTL, CacheLayer, quota_check_key
from ai_cost_meter.storage.models import (
    QuotaDefinition,
    QuotaPeriod,
    QuotaScope,
    QuotaViolation,
    utcnow,
)
from ai_cost_meter.storage.repository import MeteringStore

from .errors import ValidationError, require_fields

log = get_logger(__name__)

_SCOPE_RANK = {QuotaScope.ORGANIZATION: 0, QuotaScope.PROVIDER: 1, QuotaScope.MODEL: 2}
_PERIOD_RANK = {QuotaPeriod.DAILY: 0, QuotaPeriod.MONTHLY: 1}


def check_order(quota: QuotaDefinition) -> tuple:
    """Sort key placing quotas in the fixed reporting order."""
    return (_SCOPE_RANK[quota.scope], _PERIOD_RANK[quota.period])


def _money(value: float) -> Decimal:
    return Decimal(str(value))


@dataclass(frozen=True)
class QuotaCheckRequest:
    """Admission request for one provider call."""
    organization_id: str
    provider: str
    model: str
    estimated_cost: float = 0.0
    user_id: Optional[str] = None

    def __post_init__(self):
        require_fields(
            organization_id=self.organization_id,
            provider=self.provider,
            model=self.model,
        )
        if self.estimated_cost < 0:
            raise ValidationError("estimated_cost must be >= 0")


@dataclass(frozen=True)
class QuotaStatus:
    """Evaluation of one quota against one request."""
    quota_type: str
    allowed: bool
    limit: float
    current: float
    remaining: float
    provider: Optional[str] = None
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.quota_type,
            "allowed": self.allowed,
            "limit": self.limit,
            "current": self.current,
            "remaining": self.remaining,
            "provider": self.provider,
            "model": self.model,
        }


@dataclass(frozen=True)
class QuotaCheckResult:
    """Admission decision. Denial is a value, never an exception."""
    allowed: bool
    limiting_quota: Optional[QuotaStatus] = None
    all_quota_statuses: List[QuotaStatus] = field(default_factory=list)

    @property
    def headline(self) -> Optional[QuotaStatus]:
        """The denying quota, else the first quota checked, else ``None``."""
        if self.limiting_quota is not None:
            return self.limiting_quota
        return self.all_quota_statuses[0] if self.all_quota_statuses else None

    @property
    def remaining(self) -> float:
        """Headroom of the headline quota; infinite when no quota applies."""
        status = self.headline
        return status.remaining if status is not None else math.inf


def evaluate_quota(quota: QuotaDefinition, estimated_cost: float) -> QuotaStatus:
    """Evaluate a single quota.

    Admitted only if ``current_usage + estimated_cost < limit_amount``;
    reaching the limit exactly denies.
    """
    limit = _money(quota.limit_amount)
    current = _money(quota.current_usage)
    allowed = current + _money(estimated_cost) < limit
    remaining = max(limit - current, Decimal("0"))
    return QuotaStatus(
        quota_type=quota.quota_type,
        allowed=allowed,
        limit=float(limit),
        current=float(current),
        remaining=float(remaining),
        provider=quota.provider,
        model=quota.model,
    )


def decide(quotas: List[QuotaDefinition], estimated_cost: float) -> QuotaCheckResult:
    """Combine per-quota evaluations into one decision.

    No short-circuit: every quota is evaluated so the result lists the
    status of each scope.
    """
    statuses = [evaluate_quota(q, estimated_cost) for q in sorted(quotas, key=check_order)]
    limiting = next((s for s in statuses if not s.allowed), None)
    return QuotaCheckResult(
        allowed=limiting is None,
        limiting_quota=limiting,
        all_quota_statuses=statuses,
    )


class QuotaEvaluator:
    """Admission decisions over cached quota snapshots with store fallback."""

    def __init__(
        self,
        store: MeteringStore,
        cache: Optional[CacheLayer] = None,
        ttl: int = QUOTA_CHECK_TTL,
        clock: Callable = utcnow,
    ):
        self._store = store
        self._cache = cache or CacheLayer(None)
        self.ttl = ttl
        self._clock = clock

    def load_quotas(self, organization_id: str, provider: str, model: str) -> List[QuotaDefinition]:
        """Applicable quotas, served from cache when possible.

        Store errors propagate: without quota state no correct decision
        can be made.
        """
        now = self._clock()

        def fetch() -> List[Dict[str, Any]]:
            quotas = self._store.get_quotas(organization_id, provider, model, now)
            return [q.to_dict() for q in quotas]

        rows = self._cache.get_or_set(
            quota_check_key(organization_id, provider, model), fetch, self.ttl
        )
        quotas = [QuotaDefinition.from_dict(row) for row in rows]
        # A cached snapshot can outlive a reset boundary
        return [q for q in quotas if q.reset_at > now]

    def check(self, request: QuotaCheckRequest) -> QuotaCheckResult:
        """Decide whether a call may proceed."""
        quotas = self.load_quotas(request.organization_id, request.provider, request.model)
        result = decide(quotas, request.estimated_cost)

        if not result.allowed:
            limiting = result.limiting_quota
            log.warning(
                "quota_denied",
                organization_id=request.organization_id,
                user_id=request.user_id,
                provider=request.provider,
                model=request.model,
                quota_type=limiting.quota_type,
                current_usage=limiting.current,
                limit=limiting.limit,
                estimated_cost=request.estimated_cost,
            )
            self._record_violation(request, limiting)

        return result

    def _record_violation(self, request: QuotaCheckRequest, limiting: QuotaStatus) -> None:
        violation = QuotaViolation(
            timestamp=self._clock(),
            user_id=request.user_id,
            organization_id=request.organization_id,
            provider=request.provider,
            model=request.model,
            quota_type=limiting.quota_type,
            attempted_cost=request.estimated_cost,
            current_usage=limiting.current,
            quota_limit=limiting.limit,
        )
        try:
            self._store.insert_violation(violation)
        except Exception as e:
            # Audit is best-effort
            log.error(
                "quota_violation_audit_failed",
                organization_id=request.organization_id,
                error=str(e),
            )
