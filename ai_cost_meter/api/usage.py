"""Usage summary endpoint: cached spend aggregates per organization."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ai_cost_meter.core.service import MeteringService
from ai_cost_meter.storage.cache import USAGE_SUMMARY_TTL, usage_summary_key
from ai_cost_meter.storage.models import utcnow

from .deps import Identity, get_service, require_identity

router = APIRouter(prefix="/usage", tags=["usage"])

DEFAULT_WINDOW_DAYS = 30


def _parse_day(value: Optional[str], fallback: date, name: str) -> date:
    if value is None:
        return fallback
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"'{name}' must be an ISO date (YYYY-MM-DD)",
        ) from None


@router.get("/summary")
def usage_summary(
    organization_id: str = Query(min_length=1),
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    identity: Identity = Depends(require_identity),
    service: MeteringService = Depends(get_service),
) -> Dict[str, Any]:
    """Aggregated cost, tokens and calls with provider, model and day breakdowns."""
    today = utcnow().date()
    end_day = _parse_day(end_date, today, "end_date")
    start_day = _parse_day(start_date, end_day - timedelta(days=DEFAULT_WINDOW_DAYS), "start_date")
    if start_day > end_day:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="'start_date' must not be after 'end_date'",
        )

    start = datetime.combine(start_day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(end_day, time.max, tzinfo=timezone.utc)

    return service.cache.get_or_set(
        usage_summary_key(organization_id, start_day.isoformat(), end_day.isoformat()),
        lambda: service.store.usage_summary(organization_id, start, end).to_dict(),
        USAGE_SUMMARY_TTL,
    )
