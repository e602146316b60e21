"""
Error types for the metering engine.

Admission-path errors propagate to the caller. Recording-path errors are
converted to values and logged, never raised out of the middleware.
"""


class MeteringError(Exception):
    """Base class for all metering errors."""


class ValidationError(MeteringError):
    """Raised when a request is missing required fields or is malformed."""


class AuthenticationError(MeteringError):
    """Raised when the caller identity cannot be established."""


class RateNotFoundError(MeteringError):
    """Raised when no pricing record exists for a provider/model pair."""

    def __init__(self, provider: str, model: str):
        super().__init__(f"No pricing found for {provider}/{model}")
        self.provider = provider
        self.model = model


class PersistenceError(MeteringError):
    """Raised when the store fails to persist usage or audit data."""


class UnknownProviderError(MeteringError):
    """Raised internally when no token extractor is registered for a provider."""

    def __init__(self, provider: str):
        super().__init__(f"No token extractor registered for provider: {provider}")
        self.provider = provider


def require_fields(**fields: object) -> None:
    """Raise ValidationError naming every field that is missing or blank."""
    missing = [
        name for name, value in fields.items()
        if not isinstance(value, str) or not value.strip()
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
