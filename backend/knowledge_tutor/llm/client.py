"""Client for the hosted, OpenAI-compatible generation API."""

from __future__ import annotations

import threading
from typing import Any, AsyncIterator, Sequence

import openai

from knowledge_tutor.core.config import Settings
from knowledge_tutor.core.errors import GenerationError
from knowledge_tutor.core.logging import get_logger

logger = get_logger(__name__)

ChatMessage = dict[str, str]


class GenerationClient:
    """Blocking completions for the worker, async streaming for chat.

    SDK clients are built on first use so a missing API key only fails the
    calls that need it.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._lock = threading.Lock()
        self._sync_client: openai.OpenAI | None = None
        self._async_client: openai.AsyncOpenAI | None = None

    def complete(
        self,
        messages: Sequence[ChatMessage],
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 300,
    ) -> str:
        model_name = model or self.settings.synthesis_model
        try:
            response = self._sync().chat.completions.create(
                model=model_name,
                messages=list(messages),
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as exc:
            raise GenerationError(f"Completion with {model_name} failed: {exc}") from exc
        if not response.choices or response.choices[0].message.content is None:
            raise GenerationError(f"{model_name} returned an empty completion")
        logger.debug(
            "Completion from %s used %s tokens",
            model_name,
            response.usage.total_tokens if response.usage else None,
        )
        return response.choices[0].message.content

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield content fragments as the API produces them."""
        model_name = model or self.settings.default_model
        try:
            response = await self._async().chat.completions.create(
                model=model_name,
                messages=list(messages),
                temperature=self.settings.chat_temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.settings.chat_max_tokens,
                stream=True,
            )
        except openai.OpenAIError as exc:
            raise GenerationError(f"Streaming from {model_name} failed to start: {exc}") from exc
        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except openai.OpenAIError as exc:
            raise GenerationError(f"Stream from {model_name} interrupted: {exc}") from exc
        finally:
            await response.close()

    def _client_kwargs(self) -> dict[str, Any]:
        return {
            "api_key": self.settings.llm_api_key,
            "base_url": self.settings.llm_base_url,
            "timeout": openai.Timeout(self.settings.llm_timeout_seconds, connect=5.0),
            "default_headers": {"X-Title": "Knowledge Tutor"},
        }

    def _sync(self) -> openai.OpenAI:
        with self._lock:
            if self._sync_client is None:
                try:
                    self._sync_client = openai.OpenAI(**self._client_kwargs())
                except openai.OpenAIError as exc:
                    raise GenerationError(f"Generation client unavailable: {exc}") from exc
            return self._sync_client

    def _async(self) -> openai.AsyncOpenAI:
        with self._lock:
            if self._async_client is None:
                try:
                    self._async_client = openai.AsyncOpenAI(**self._client_kwargs())
                except openai.OpenAIError as exc:
                    raise GenerationError(f"Generation client unavailable: {exc}") from exc
            return self._async_client


__all__ = ["GenerationClient", "ChatMessage"]
