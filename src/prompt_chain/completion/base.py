"""Completion Service boundary."""
from typing import Optional, Protocol


class CompletionClient(Protocol):
    """Anything that turns a prompt into completion text."""

    def complete(
        self,
        prompt: str,
        model: str,
        max_tokens: int,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Return the completion text for ``prompt``.

        Raises:
            CompletionError: On network, rate-limit, timeout or API errors
        """
        ...
