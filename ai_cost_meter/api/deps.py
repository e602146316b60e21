"""FastAPI dependency injection: shared service and caller identity."""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request

from ai_cost_meter.core.errors import AuthenticationError
from ai_cost_meter.core.service import MeteringService


@dataclass(frozen=True)
class Identity:
    """Trusted caller identity supplied by the identity provider."""
    user_id: str
    organization_id: Optional[str] = None


# Resolves a bearer token to an identity, or None when the token is not valid
Authenticator = Callable[[str], Optional[Identity]]


def get_service(request: Request) -> MeteringService:
    """Provide the metering service attached to the app."""
    return request.app.state.service


def require_identity(request: Request) -> Identity:
    """Authenticate the caller from the Authorization header.

    Runs before any quota logic.

    Raises:
        AuthenticationError: If the token is missing or not recognized
    """
    auth_header = request.headers.get("authorization", "")
    token = auth_header[7:].strip() if auth_header.startswith("Bearer ") else ""
    if not token:
        raise AuthenticationError("Not authenticated")

    authenticator: Authenticator = request.app.state.authenticator
    identity = authenticator(token)
    if identity is None:
        raise AuthenticationError("Invalid or expired token")
    return identity
