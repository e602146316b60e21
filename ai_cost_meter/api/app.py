"""FastAPI application factory."""

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ai_cost_meter.core.errors import AuthenticationError
from ai_cost_meter.core.service import MeteringService

from . import quota_check, usage
from .deps import Authenticator


def create_app(service: MeteringService, authenticator: Authenticator) -> FastAPI:
    """Build the HTTP app around an already wired metering service.

    Args:
        service: Metering components shared by all requests
        authenticator: Resolves bearer tokens to caller identities
    """
    app = FastAPI(title="AI Cost Meter")
    app.state.service = service
    app.state.authenticator = authenticator

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        # Missing or malformed fields are client errors, reported as 400
        missing = [".".join(str(p) for p in err["loc"][1:]) for err in exc.errors()]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request", "fields": [m for m in missing if m]},
        )

    @app.exception_handler(AuthenticationError)
    async def _authentication_error(request: Request, exc: AuthenticationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": str(exc)},
            headers={"WWW-Authenticate": "Bearer"},
        )

    app.include_router(quota_check.router)
    app.include_router(usage.router)
    return app
