"""Convenience exports for completion client implementations."""

from .anthropic import AnthropicClient
from .completion import CompletionClient, StaticCompletionClient

__all__ = [
    "AnthropicClient",
    "CompletionClient",
    "StaticCompletionClient",
]
