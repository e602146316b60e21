"""
Provider-specific token extraction.

Each provider reports usage under different field names. Extraction
functions are registered per provider tag; adding a provider is a
registration, not a new branch.
"""

from typing import Any, Callable, Dict, List, Optional

from ai_cost_meter.logging_config import get_logger

from .errors import UnknownProviderError
from .token_counter import TokenUsage

log = get_logger(__name__)

Extractor = Callable[[Any], TokenUsage]


def _field(obj: Any, name: str) -> Any:
    """Read a field from a dict response or an SDK response object."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(int(value), 0)


def usage_fields(container: str, input_field: str, output_field: str) -> Extractor:
    """Build an extractor reading ``response.<container>.<field>`` pairs."""
    def extract(response: Any) -> TokenUsage:
        usage = _field(response, container)
        return TokenUsage(
            input_tokens=_count(_field(usage, input_field)),
            output_tokens=_count(_field(usage, output_field)),
        )
    return extract


class TokenExtractorRegistry:
    """Maps provider tags to pure token extraction functions."""

    def __init__(self) -> None:
        self._extractors: Dict[str, Extractor] = {}

    def register(self, provider: str, extractor: Extractor) -> None:
        """Register (or replace) the extractor for a provider tag."""
        self._extractors[provider] = extractor

    def providers(self) -> List[str]:
        return sorted(self._extractors)

    def get(self, provider: str) -> Extractor:
        """Return the extractor for a provider.

        Raises:
            UnknownProviderError: If no extractor is registered
        """
        try:
            return self._extractors[provider]
        except KeyError:
            raise UnknownProviderError(provider) from None

    def extract(self, provider: str, response: Optional[Any]) -> TokenUsage:
        """Extract measured token counts from a provider response.

        An unknown provider yields zero tokens with a warning. An accounting
        gap must not fail an otherwise successful call.
        """
        try:
            extractor = self.get(provider)
        except UnknownProviderError:
            log.warning("unknown_provider_tokens_zeroed", provider=provider)
            return TokenUsage(input_tokens=0, output_tokens=0)
        return extractor(response)


def default_registry() -> TokenExtractorRegistry:
    """Registry preloaded with the supported providers."""
    registry = TokenExtractorRegistry()
    registry.register("openai", usage_fields("usage", "prompt_tokens", "completion_tokens"))
    registry.register("anthropic", usage_fields("usage", "input_tokens", "output_tokens"))
    registry.register(
        "google", usage_fields("usageMetadata", "promptTokenCount", "candidatesTokenCount")
    )
    # xAI speaks the OpenAI response format
    registry.register("xai", usage_fields("usage", "prompt_tokens", "completion_tokens"))
    return registry
