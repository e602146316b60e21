"""
Data models for storage layer.

Defines pricing, quota, usage and audit entities and their
serialized forms.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime with a fixed layout so stored values sort correctly."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class QuotaPeriod(Enum):
    """Accounting window a quota applies to."""
    DAILY = "daily"
    MONTHLY = "monthly"


class QuotaScope(Enum):
    """Dimension a quota limits, from broadest to narrowest."""
    ORGANIZATION = "organization"
    PROVIDER = "provider"
    MODEL = "model"


@dataclass(frozen=True)
class PricingRecord:
    """Versioned price of a provider/model pair.

    Append-only: a price change is a new record with a later
    effective date, never an update.
    """
    provider: str
    model: str
    effective_date: date
    input_cost_per_1k: Decimal
    output_cost_per_1k: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "effective_date": self.effective_date.isoformat(),
            "input_cost_per_1k": str(self.input_cost_per_1k),
            "output_cost_per_1k": str(self.output_cost_per_1k),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingRecord":
        return cls(
            provider=data["provider"],
            model=data["model"],
            effective_date=date.fromisoformat(data["effective_date"]),
            input_cost_per_1k=Decimal(str(data["input_cost_per_1k"])),
            output_cost_per_1k=Decimal(str(data["output_cost_per_1k"])),
        )


@dataclass(frozen=True)
class QuotaDefinition:
    """Spend limit for one scope and period of an organization.

    ``current_usage`` is only ever changed by an atomic store-side
    increment when usage is recorded. It may exceed ``limit_amount``
    right after a borderline request was admitted.
    """
    organization_id: str
    period: QuotaPeriod
    limit_amount: float
    reset_at: datetime
    current_usage: float = 0.0
    provider: Optional[str] = None
    model: Optional[str] = None
    last_reset_at: Optional[datetime] = None
    quota_id: Optional[int] = None

    def __post_init__(self):
        if self.model is not None and self.provider is None:
            raise ValueError("model-scoped quotas must also name a provider")
        if self.limit_amount < 0:
            raise ValueError("limit_amount must be >= 0")

    @property
    def scope(self) -> QuotaScope:
        if self.model is not None:
            return QuotaScope.MODEL
        if self.provider is not None:
            return QuotaScope.PROVIDER
        return QuotaScope.ORGANIZATION

    @property
    def quota_type(self) -> str:
        """Label used in check results: ``daily``, ``provider_monthly``, ..."""
        if self.scope == QuotaScope.ORGANIZATION:
            return self.period.value
        return f"{self.scope.value}_{self.period.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quota_id": self.quota_id,
            "organization_id": self.organization_id,
            "period": self.period.value,
            "provider": self.provider,
            "model": self.model,
            "limit_amount": self.limit_amount,
            "current_usage": self.current_usage,
            "reset_at": to_iso(self.reset_at),
            "last_reset_at": to_iso(self.last_reset_at) if self.last_reset_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuotaDefinition":
        return cls(
            quota_id=data.get("quota_id"),
            organization_id=data["organization_id"],
            period=QuotaPeriod(data["period"]),
            provider=data.get("provider"),
            model=data.get("model"),
            limit_amount=float(data["limit_amount"]),
            current_usage=float(data.get("current_usage") or 0.0),
            reset_at=from_iso(data["reset_at"]),
            last_reset_at=from_iso(data["last_reset_at"]) if data.get("last_reset_at") else None,
        )


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one completed provider call.

    Append-only events that create an auditable ledger of AI costs.
    Once written, these records must never be modified.
    """
    record_id: str
    timestamp: datetime
    user_id: str
    organization_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    session_id: Optional[str] = None
    workflow_id: Optional[str] = None
    request_data: Dict[str, Any] = field(default_factory=dict)
    response_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class QuotaViolation:
    """Audit row written when a request is denied."""
    timestamp: datetime
    organization_id: str
    provider: str
    model: str
    quota_type: str
    attempted_cost: float
    current_usage: float
    quota_limit: float
    user_id: Optional[str] = None


@dataclass(frozen=True)
class UsageSummary:
    """Aggregated spend of an organization over a time window."""
    organization_id: str
    start: datetime
    end: datetime
    total_cost: float
    total_tokens: int
    total_calls: int
    by_provider: Dict[str, Dict[str, float]] = field(default_factory=dict)
    by_model: Dict[str, Dict[str, float]] = field(default_factory=dict)
    by_day: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "start": to_iso(self.start),
            "end": to_iso(self.end),
            "total_cost": self.total_cost,
            "total_tokens": self.total_tokens,
            "total_calls": self.total_calls,
            "by_provider": self.by_provider,
            "by_model": self.by_model,
            "by_day": self.by_day,
        }


def _add_month(moment: datetime) -> datetime:
    year, month = divmod(moment.month, 12)
    return moment.replace(year=moment.year + year, month=month + 1, day=1)


def advance_reset(reset_at: datetime, period: QuotaPeriod) -> datetime:
    """Move a reset boundary forward by one period."""
    if period == QuotaPeriod.DAILY:
        return reset_at + timedelta(days=1)
    if reset_at.day != 1:
        reset_at = reset_at.replace(day=1)
    return _add_month(reset_at)


def next_reset_at(period: QuotaPeriod, now: Optional[datetime] = None) -> datetime:
    """First reset boundary after ``now``: next UTC midnight or first of next month."""
    now = now or utcnow()
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    if period == QuotaPeriod.DAILY:
        return midnight + timedelta(days=1)
    return _add_month(midnight)
