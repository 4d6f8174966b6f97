"""
HTTP backends for self-hosted and low-cost inference servers.

- OllamaBackend: ``POST /api/generate``
- OpenAICompatibleBackend: ``POST /chat/completions`` (DeepSeek and friends)
- CustomHttpBackend: ``POST /generate`` returning ``response`` or ``text``
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from ai_route_guard.core.pricing import TokenUsage

from .base import BackendError, BackendErrorKind, BackendResult, Completion

log = structlog.get_logger(__name__)


class HttpBackend:
    """Base class: request building and error normalization over httpx."""

    path = "/"

    def __init__(
        self,
        endpoint: str,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        if not endpoint:
            raise ValueError("endpoint is required and cannot be empty")

        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.endpoint = endpoint
        self.model = model
        self.client = client or httpx.Client(base_url=endpoint, headers=headers)

    def close(self) -> None:
        self.client.close()

    def build_body(self, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def parse_body(self, data: Any) -> Completion:
        """Extract a completion; raise KeyError/TypeError/ValueError when malformed."""
        raise NotImplementedError

    def invoke(self, prompt: str, options: Dict[str, Any], timeout: float) -> BackendResult:
        try:
            response = self.client.post(
                self.path,
                json=self.build_body(prompt, options),
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            return BackendError(BackendErrorKind.TIMEOUT, str(e) or "request timed out")
        except httpx.HTTPError as e:
            return BackendError(BackendErrorKind.UNAVAILABLE, str(e) or type(e).__name__)

        if response.status_code == 429:
            return BackendError(BackendErrorKind.RATE_LIMITED, "HTTP 429")
        if not 200 <= response.status_code < 300:
            return BackendError(
                BackendErrorKind.UNAVAILABLE, f"HTTP {response.status_code}"
            )

        try:
            completion = self.parse_body(response.json())
        except (KeyError, IndexError, TypeError, ValueError) as e:
            log.debug("http_backend.malformed_response", endpoint=self.endpoint, error=str(e))
            return BackendError(BackendErrorKind.MALFORMED_RESPONSE, f"malformed response: {e}")

        if not completion.content.strip():
            return BackendError(BackendErrorKind.MALFORMED_RESPONSE, "response content is empty")
        return completion


class OllamaBackend(HttpBackend):
    """Local Ollama server."""

    path = "/api/generate"

    def build_body(self, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "model": options.get("model", self.model or "mistral"),
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": options.get("temperature", 0.7)},
        }

    def parse_body(self, data: Any) -> Completion:
        usage = None
        if "prompt_eval_count" in data and "eval_count" in data:
            usage = TokenUsage(int(data["prompt_eval_count"]), int(data["eval_count"]))
        return Completion(content=str(data["response"]), usage=usage)


class OpenAICompatibleBackend(HttpBackend):
    """Low-cost hosted API speaking the chat completions wire format."""

    path = "/chat/completions"

    def build_body(self, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "model": options.get("model", self.model or "deepseek-chat"),
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.get("temperature", 0.7),
            "max_tokens": options.get("max_tokens", 1000),
        }

    def parse_body(self, data: Any) -> Completion:
        content = data["choices"][0]["message"]["content"]
        if not isinstance(content, str):
            raise TypeError("message content is not a string")
        usage = None
        if data.get("usage"):
            usage = TokenUsage(
                int(data["usage"]["prompt_tokens"]),
                int(data["usage"]["completion_tokens"]),
            )
        return Completion(content=content, usage=usage)


class CustomHttpBackend(HttpBackend):
    """Custom generation server."""

    path = "/generate"

    def build_body(self, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        body = {"prompt": prompt}
        body.update(options)
        return body

    def parse_body(self, data: Any) -> Completion:
        content = data.get("response") or data.get("text")
        if not isinstance(content, str):
            raise ValueError("neither 'response' nor 'text' present")
        return Completion(content=content)
