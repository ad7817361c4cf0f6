"""Anthropic Messages API client used as the pipeline completion service."""
import time
from typing import Any, Callable, Optional

import httpx

from prompt_chain.config import Settings, get_settings
from prompt_chain.errors import CompletionError, ConfigurationError
from prompt_chain.observability import get_logger

logger = get_logger(__name__)


class AnthropicCompletionClient:
    """
    Completion client for the Anthropic Messages API.

    Retries rate limits (429) and server errors (5xx) with exponential
    backoff; client errors are raised immediately.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.anthropic.com",
        api_version: str = "2023-06-01",
        timeout_s: float = 120.0,
        max_tokens_cap: int = 8192,
        max_retries: int = 2,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout_s = timeout_s
        self.max_tokens_cap = max_tokens_cap
        self.max_retries = max_retries
        self._transport = transport
        self._sleep = sleep

    def complete(
        self,
        prompt: str,
        model: str,
        max_tokens: int,
        temperature: Optional[float] = None,
    ) -> str:
        """Send ``prompt`` as a single user message and return the reply text."""
        if max_tokens > self.max_tokens_cap:
            raise CompletionError(
                f"max_tokens {max_tokens} exceeds cap {self.max_tokens_cap}"
            )

        request_body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if temperature is not None:
            request_body["temperature"] = temperature

        extra = {"model": model, "max_tokens": max_tokens}
        logger.debug("completion_start", extra=extra)
        response_data = self._post(request_body, extra)
        text = self._parse_response(response_data)
        logger.debug(
            "completion_end",
            extra={**extra, "usage": response_data.get("usage", {})},
        )
        return text

    def _post(self, request_body: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "content-type": "application/json",
        }
        timeout = httpx.Timeout(connect=5.0, read=self.timeout_s, write=5.0, pool=5.0)
        url = f"{self.base_url}/v1/messages"

        for attempt in range(self.max_retries + 1):
            wait_time = 0.5 * (2**attempt)
            try:
                with httpx.Client(timeout=timeout, transport=self._transport) as client:
                    response = client.post(url, json=request_body, headers=headers)
            except httpx.TimeoutException as e:
                if attempt < self.max_retries:
                    logger.warning(f"Request timeout, retrying in {wait_time}s", extra=extra)
                    self._sleep(wait_time)
                    continue
                raise CompletionError(f"Request timeout: {e}") from e
            except httpx.HTTPError as e:
                raise CompletionError(f"HTTP error: {e}") from e

            status = response.status_code
            if status == 429 or 500 <= status < 600:
                if attempt < self.max_retries:
                    logger.warning(
                        f"Completion request returned {status}, retrying in {wait_time}s",
                        extra=extra,
                    )
                    self._sleep(wait_time)
                    continue
            if status >= 400:
                raise CompletionError(
                    f"Completion request failed with status {status}: {_error_message(response)}",
                    status_code=status,
                )

            try:
                return response.json()
            except ValueError as e:
                raise CompletionError(f"Invalid JSON in completion response: {e}") from e

        raise CompletionError("Max retries exceeded")

    @staticmethod
    def _parse_response(response_data: dict[str, Any]) -> str:
        """Join the text blocks of a Messages API response."""
        content_blocks = response_data.get("content")
        if not isinstance(content_blocks, list):
            raise CompletionError("Unexpected response from completion API: no content")
        text_parts = [
            block.get("text", "")
            for block in content_blocks
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        if not text_parts:
            raise CompletionError("Unexpected response type from completion API")
        return "".join(text_parts)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.text[:200]


def create_completion_client(settings: Optional[Settings] = None) -> AnthropicCompletionClient:
    """
    Build the Anthropic client from settings.

    Raises:
        ConfigurationError: If no API key is configured
    """
    settings = settings or get_settings()
    if settings.anthropic_api_key is None:
        raise ConfigurationError(
            "ANTHROPIC_API_KEY environment variable is required.\n"
            "Set it with: export ANTHROPIC_API_KEY=your-api-key"
        )
    return AnthropicCompletionClient(
        api_key=settings.anthropic_api_key.get_secret_value(),
        base_url=settings.anthropic_base_url,
        api_version=settings.anthropic_version,
        timeout_s=settings.request_timeout_s,
        max_tokens_cap=settings.max_tokens_cap,
    )
