from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
)

from scopechat.logging import get_logger

logger = get_logger(__name__)


class GatewayError(Exception):
    """Base class for upstream provider failures; never shown to clients."""


class GatewayTransportError(GatewayError):
    """No usable response was received from the provider."""


class GatewayTimeoutError(GatewayTransportError):
    """The provider did not answer before the client deadline."""


class GatewayProviderError(GatewayError):
    """The provider answered, but with an error or an unusable body."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class Completion:
    text: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)


def _usage_dict(usage: Any) -> Dict[str, int]:
    if usage is None:
        return {}
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
        "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
        "total_tokens": getattr(usage, "total_tokens", 0) or 0,
    }


class LLMGateway:
    """Stateless adapter over an OpenAI-compatible chat completion endpoint.

    The client is built with ``max_retries=0``: one ``complete`` call is
    exactly one upstream attempt.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: float = 0.7,
        timeout: float = 60.0,
        client: Any = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.client = client
        if self.client is None and api_key:
            self.client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout,
                max_retries=0,
            )

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    async def complete(self, messages: List[dict]) -> Completion:
        """Submit ``messages`` and return the first choice's text.

        Raises:
            GatewayTimeoutError: the request timed out
            GatewayTransportError: no response (connection failure, no credential)
            GatewayProviderError: error status, error payload, or empty completion
        """
        if self.client is None:
            raise GatewayTransportError("provider credential is not configured")
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
            )
        except APITimeoutError as exc:
            raise GatewayTimeoutError("provider request timed out") from exc
        except APIConnectionError as exc:
            raise GatewayTransportError(f"provider connection failed: {exc}") from exc
        except APIStatusError as exc:
            raise GatewayProviderError(
                f"provider returned status {exc.status_code}: {exc.message}",
                status_code=exc.status_code,
            ) from exc
        except APIError as exc:
            raise GatewayProviderError(f"provider error: {exc.message}") from exc

        # Some compatible endpoints answer 200 with an error object
        error_payload = getattr(completion, "error", None)
        if error_payload:
            raise GatewayProviderError(f"provider error payload: {error_payload}")
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            raise GatewayProviderError("provider returned no choices")
        message = getattr(first_choice, "message", None)
        content = getattr(message, "content", None)
        if not isinstance(content, str):
            raise GatewayProviderError("provider returned no message content")
        result = Completion(
            text=content,
            model=getattr(completion, "model", None) or self.model,
            usage=_usage_dict(getattr(completion, "usage", None)),
        )
        logger.info(
            "llm_completion_received",
            model=result.model,
            completion_tokens=result.usage.get("completion_tokens", 0),
        )
        return result
