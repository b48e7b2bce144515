"""Model backend: "generate text from a prompt" over LangChain chat models.

The engine only needs ``generate(prompt) -> str``. ``ChatModelBackend``
adapts any LangChain chat model to that contract; the Anthropic factory
builds the default one from ``ModelSettings``.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any, Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage

from aigent.errors import ModelError

if TYPE_CHECKING:
    from langchain_core.language_models.chat_models import BaseChatModel

    from aigent.config import ModelSettings

logger = logging.getLogger(__name__)


class ModelBackend(Protocol):
    async def generate(self, prompt: str) -> str: ...


def extract_content(content: Any) -> str:
    """Normalize message content. Anthropic can return a list of blocks or a string."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Extract text from content blocks: [{"type": "text", "text": "..."}]
        parts = []
        for block in content:
            if isinstance(block, dict):
                parts.append(block.get("text", str(block)))
            else:
                parts.append(str(block))
        return "\n".join(parts)
    return str(content)


class ChatModelBackend:
    """Wraps a LangChain chat model; every failure surfaces as ModelError."""

    def __init__(self, name: str, llm: BaseChatModel) -> None:
        self.name = name
        self._llm = llm

    async def generate(self, prompt: str) -> str:
        logger.debug(f"Model '{self.name}' prompt: {prompt[:500]}")
        try:
            response = await self._llm.ainvoke([HumanMessage(content=prompt)])
        except Exception as e:
            raise ModelError(f"Model '{self.name}' generation failed: {e}") from e

        text = extract_content(response.content).strip()
        if not text:
            raise ModelError(f"Model '{self.name}' returned an empty response")
        logger.debug(f"Model '{self.name}' response: {text[:500]}")
        return text


def anthropic_factory(settings: ModelSettings) -> ChatModelBackend:
    """Create an Anthropic-backed model from settings."""
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        raise RuntimeError("ANTHROPIC_API_KEY environment variable is not set")
    llm = ChatAnthropic(
        model=settings.model_id,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
        timeout=settings.timeout_seconds,
        api_key=api_key,
    )
    return ChatModelBackend(settings.name, llm)
