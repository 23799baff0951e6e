"""Completion clients used by ai_processing steps."""

from .anthropic_client import AnthropicCompletionClient

__all__ = ["AnthropicCompletionClient"]
