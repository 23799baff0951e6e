"""Completion client backed by the Anthropic Messages API."""

import os
from typing import Dict, List, Optional

import anthropic

from ..core.exceptions import ConfigurationError
from ..core.interfaces import CompletionClient
from ..core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MODEL = "claude-3-haiku-20240307"
DEFAULT_SYSTEM_PROMPT = "You are a helpful business assistant."


class AnthropicCompletionClient(CompletionClient):
    """CompletionClient calling Claude through the anthropic SDK."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 2000,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        client: Optional[anthropic.Anthropic] = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt

        if client is not None:
            self._client = client
            return

        api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            raise ConfigurationError(
                "Anthropic API key is not configured. Set BIZFLOW_ANTHROPIC_API_KEY or ANTHROPIC_API_KEY.",
                config_key="anthropic_api_key",
            )
        self._client = anthropic.Anthropic(api_key=api_key)

    def complete(self, prompt: str, history: List[Dict[str, str]], **options) -> str:
        """Send ``history`` followed by ``prompt`` as a user turn and return the reply text.

        Supported options: ``temperature``, ``max_tokens``, ``model``, ``system``.
        """
        messages = [
            {"role": message["role"], "content": message["content"]}
            for message in history
        ]
        messages.append({"role": "user", "content": prompt})

        kwargs = {
            "model": options.get("model", self.model),
            "max_tokens": options.get("max_tokens", self.max_tokens),
            "system": options.get("system", self.system_prompt),
            "messages": messages,
        }
        if options.get("temperature") is not None:
            kwargs["temperature"] = options["temperature"]

        logger.debug(f"Requesting completion from {kwargs['model']} ({len(messages)} messages)")
        response = self._client.messages.create(**kwargs)

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        logger.debug(
            f"Completion received: {response.usage.input_tokens} input / {response.usage.output_tokens} output tokens"
        )
        return text
