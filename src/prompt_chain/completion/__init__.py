"""
Completion package - the boundary to the language-model service.

The engine only depends on ``CompletionClient``; ``AnthropicCompletionClient``
is the production implementation.
"""

from .anthropic_client import AnthropicCompletionClient, create_completion_client
from .base import CompletionClient

__all__ = [
    "AnthropicCompletionClient",
    "CompletionClient",
    "create_completion_client",
]
