"""
Admission-check endpoint.

POST /quota-check answers whether an organization may make a provider
call of a given estimated cost. 200 when allowed, 429 when a quota
denies; both carry the same body shape and rate-limit headers.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ai_cost_meter.core.errors import ValidationError
from ai_cost_meter.core.quota import QuotaCheckRequest, QuotaCheckResult
from ai_cost_meter.core.service import MeteringService
from ai_cost_meter.logging_config import get_logger

from .deps import Identity, get_service, require_identity
from .schemas import QuotaCheckBody

log = get_logger(__name__)

router = APIRouter(tags=["quota"])


def resolve_estimated_cost(body: QuotaCheckBody, service: MeteringService) -> float:
    """Explicit cost, else priced token estimate, else the fallback estimate."""
    if body.estimated_cost:
        return body.estimated_cost
    if body.estimated_tokens:
        cost = service.cost_model.estimate_tokens_cost(
            body.provider, body.model, body.estimated_tokens
        )
        if cost > 0:
            return cost
    return float(service.cost_model.default_cost)


def _header_value(value: Optional[float]) -> str:
    return "unlimited" if value is None else str(value)


def build_response_body(result: QuotaCheckResult) -> Dict[str, Any]:
    """Flatten a check result into the wire format."""
    headline = result.headline
    body: Dict[str, Any] = {
        "allowed": result.allowed,
        "quota_limit": headline.limit if headline else None,
        "current_usage": headline.current if headline else None,
        "remaining": headline.remaining if headline else None,
        "quota_type": headline.quota_type if headline else None,
        "quotas": [status.to_dict() for status in result.all_quota_statuses],
    }
    if headline is None:
        body["message"] = "No quotas defined, access allowed"
    elif not result.allowed:
        body["message"] = (
            f"Quota exceeded for {headline.quota_type} limit. "
            f"Current usage: ${headline.current:.2f} / ${headline.limit:.2f}"
        )
    return body


@router.post("/quota-check")
def quota_check(
    body: QuotaCheckBody,
    identity: Identity = Depends(require_identity),
    service: MeteringService = Depends(get_service),
) -> JSONResponse:
    """Pre-execution quota validation for one provider call."""
    try:
        estimated_cost = resolve_estimated_cost(body, service)
        result = service.evaluator.check(QuotaCheckRequest(
            organization_id=body.organization_id,
            provider=body.provider,
            model=body.model,
            estimated_cost=estimated_cost,
            user_id=body.user_id or identity.user_id,
        ))
    except ValidationError as e:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": str(e)},
        )
    except Exception as e:
        log.error(
            "quota_check_failed",
            organization_id=body.organization_id,
            provider=body.provider,
            model=body.model,
            error=str(e),
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "details": str(e)},
        )

    payload = build_response_body(result)
    return JSONResponse(
        status_code=200 if result.allowed else 429,
        content=payload,
        headers={
            "X-RateLimit-Limit": _header_value(payload["quota_limit"]),
            "X-RateLimit-Remaining": _header_value(payload["remaining"]),
        },
    )
