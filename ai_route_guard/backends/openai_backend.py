"""
Premium backend on the OpenAI chat completions API.

Maps SDK exceptions onto the normalized BackendError kinds and reports
token usage so the ledger can price the call exactly.
"""

from typing import Any, Dict, Optional

import openai
import structlog
from openai import OpenAI

from ai_route_guard.core.pricing import TokenUsage

from .base import BackendError, BackendErrorKind, BackendResult, Completion

log = structlog.get_logger(__name__)


class OpenAIBackend:
    """Chat-completions backend used for the premium tier.

    Also works for any OpenAI-compatible gateway by pointing ``base_url``
    at it.
    """

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[OpenAI] = None,
    ):
        """Initialize the backend.

        Args:
            model: Model name (required)
            api_key: API key; falls back to OPENAI_API_KEY when omitted
            base_url: Optional API base URL
            client: Optional preconfigured client (used by tests)

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.client = client or OpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    def close(self) -> None:
        self.client.close()

    def invoke(self, prompt: str, options: Dict[str, Any], timeout: float) -> BackendResult:
        """Create a chat completion for a single user prompt.

        Args:
            prompt: Prompt text
            options: Optional ``temperature``, ``max_tokens`` and ``system``
            timeout: Per-attempt timeout in seconds

        Returns:
            Completion on success, BackendError otherwise
        """
        messages = []
        if options.get("system"):
            messages.append({"role": "system", "content": options["system"]})
        messages.append({"role": "user", "content": prompt})

        params: Dict[str, Any] = {
            "model": options.get("model", self.model),
            "messages": messages,
            "temperature": options.get("temperature", 0.7),
            "timeout": timeout,
        }
        if options.get("max_tokens") is not None:
            params["max_tokens"] = options["max_tokens"]

        try:
            response = self.client.chat.completions.create(**params)
        except openai.APITimeoutError as e:
            return BackendError(BackendErrorKind.TIMEOUT, str(e))
        except openai.RateLimitError as e:
            return BackendError(BackendErrorKind.RATE_LIMITED, str(e))
        except (openai.APIStatusError, openai.APIConnectionError) as e:
            return BackendError(BackendErrorKind.UNAVAILABLE, str(e))

        if not response.choices:
            return BackendError(BackendErrorKind.MALFORMED_RESPONSE, "response has no choices")

        content = response.choices[0].message.content
        if not isinstance(content, str) or not content.strip():
            return BackendError(BackendErrorKind.MALFORMED_RESPONSE, "response content is empty")

        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
            )

        log.debug("openai_backend.completed", model=self.model, request_id=response.id)
        return Completion(content=content, usage=usage)
