"""
Metered OpenAI client wrapper.

Checks quotas before each chat completion and records usage after it,
without changing the response.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.metering import MeteredResult
from ..core.recorder import UsageTrackingOptions
from ..core.service import MeteringService


class MeteredOpenAI:
    """OpenAI client wrapper that meters every chat completion.

    Quota denials come back as a result value; OpenAI API errors are
    propagated without modification; usage recording never fails a call.
    """

    provider = "openai"

    def __init__(
        self,
        service: MeteringService,
        model: str,
        user_id: str,
        organization_id: str,
        client: Optional[OpenAI] = None,
    ):
        """Initialize metered OpenAI client.

        Args:
            service: Wired metering components
            model: OpenAI model name (required)
            user_id: Caller identifier (required)
            organization_id: Organization billed for the calls (required)
            client: Preconfigured OpenAI client; a default one is created otherwise

        Raises:
            ValueError: If model, user_id or organization_id is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        if not organization_id or not organization_id.strip():
            raise ValueError("organization_id is required and cannot be empty")

        self.service = service
        self.model = model
        self.user_id = user_id
        self.organization_id = organization_id
        self.client = client or OpenAI()

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        session_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs: Any
    ) -> MeteredResult:
        """Create a chat completion if quotas allow it.

        The pre-call estimate prices the messages with the token heuristic
        and ``max_tokens`` (or the configured default) as output.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            session_id: Optional session the call belongs to
            workflow_id: Optional workflow the call belongs to
            **kwargs: Additional OpenAI parameters

        Returns:
            MeteredResult wrapping the unchanged OpenAI response

        Raises:
            ValueError: If messages is empty
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        options = UsageTrackingOptions(
            user_id=self.user_id,
            organization_id=self.organization_id,
            provider=self.provider,
            model=self.model,
            session_id=session_id,
            workflow_id=workflow_id,
            request_data={"message_count": len(messages), "max_tokens": max_tokens},
        )
        estimated_cost = self.service.cost_model.estimate_messages_cost(
            self.provider,
            self.model,
            messages,
            max_output_tokens=max_tokens or self.service.max_output_tokens,
        )

        def call() -> Any:
            return self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )

        return self.service.middleware.wrap(options, call, estimated_cost=estimated_cost)
