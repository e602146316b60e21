"""
Usage recording.

Writes realized usage after a call completed. Recording is best-effort:
a store failure produces a failed ``RecordResult`` and a log line, never
an exception.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from ai_cost_meter.logging_config import get_logger
from ai_cost_meter.storage.models import UsageRecord, utcnow
from ai_cost_meter.storage.repository import MeteringStore, new_record_id

from .errors import PersistenceError, require_fields

log = get_logger(__name__)


@dataclass(frozen=True)
class UsageTrackingOptions:
    """Identifiers attached to a metered call."""
    user_id: str
    organization_id: str
    provider: str
    model: str
    session_id: Optional[str] = None
    workflow_id: Optional[str] = None
    request_data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        require_fields(
            user_id=self.user_id,
            organization_id=self.organization_id,
            provider=self.provider,
            model=self.model,
        )


@dataclass(frozen=True)
class RecordResult:
    """Outcome of a recording attempt: a record id or a persistence error."""
    record_id: Optional[str] = None
    error: Optional[PersistenceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.record_id is not None


class UsageRecorder:
    """Persists usage records and increments quota counters."""

    def __init__(self, store: MeteringStore, clock: Callable = utcnow):
        self._store = store
        self._clock = clock

    def record(
        self,
        options: UsageTrackingOptions,
        input_tokens: int,
        output_tokens: int,
        cost: float,
        response_metadata: Optional[Dict[str, Any]] = None,
    ) -> RecordResult:
        """Write one usage record and bump every matching quota counter.

        Both writes happen in one store transaction. Never raises.

        Args:
            options: Call identifiers
            input_tokens: Measured input tokens
            output_tokens: Measured output tokens
            cost: Actual cost in USD
            response_metadata: Optional response details kept with the record

        Returns:
            RecordResult holding the new record id or the failure
        """
        record = UsageRecord(
            record_id=new_record_id(),
            timestamp=self._clock(),
            user_id=options.user_id,
            organization_id=options.organization_id,
            session_id=options.session_id,
            workflow_id=options.workflow_id,
            provider=options.provider,
            model=options.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
            request_data=dict(options.request_data),
            response_data=dict(response_metadata or {}),
        )
        try:
            record_id = self._store.log_usage(record)
        except Exception as e:
            error = e if isinstance(e, PersistenceError) else PersistenceError(str(e))
            log.error(
                "usage_record_failed",
                organization_id=options.organization_id,
                provider=options.provider,
                model=options.model,
                cost_usd=cost,
                error=str(error),
            )
            return RecordResult(error=error)

        log.info(
            "usage_recorded",
            record_id=record_id,
            organization_id=options.organization_id,
            provider=options.provider,
            model=options.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=f"${cost:.6f}",
        )
        return RecordResult(record_id=record_id)
