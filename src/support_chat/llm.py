"""Chat model client — thin async wrapper over ``ollama.AsyncClient``."""

import logging
from typing import AsyncIterator

import ollama

from support_chat.config import LLMConfig
from support_chat.embeddings import UPSTREAM_ERRORS
from support_chat.errors import GenerationError

logger = logging.getLogger(__name__)

Messages = list[dict[str, str]]


def build_ollama_client(config: LLMConfig | None = None) -> ollama.AsyncClient:
    """Return an Ollama async client for the configured host."""
    cfg = config or LLMConfig()
    headers = {}
    if cfg.api_key is not None:
        headers["Authorization"] = f"Bearer {cfg.api_key.get_secret_value()}"
    return ollama.AsyncClient(host=cfg.host, headers=headers or None)


class ChatModel:
    """Completion and streaming calls against one chat model."""

    def __init__(
        self,
        client: ollama.AsyncClient,
        config: LLMConfig | None = None,
    ) -> None:
        self._client = client
        self._config = config or LLMConfig()

    async def ping(self) -> bool:
        """Return True if the model server answers."""
        try:
            await self._client.list()
        except UPSTREAM_ERRORS as exc:
            logger.warning("Model server unreachable: %s", exc)
            return False
        return True

    def _options(self, temperature: float | None) -> dict:
        return {
            "temperature": (
                self._config.temperature if temperature is None else temperature
            ),
            "num_predict": self._config.max_tokens,
        }

    async def complete(
        self, messages: Messages, temperature: float | None = None
    ) -> str:
        """Return the full completion text for ``messages``.

        Raises:
            GenerationError: If the model call fails.
        """
        try:
            response = await self._client.chat(
                model=self._config.model,
                messages=messages,
                options=self._options(temperature),
            )
        except UPSTREAM_ERRORS as exc:
            raise GenerationError(str(exc)) from exc
        return (response["message"]["content"] or "").strip()

    async def open_stream(
        self, messages: Messages, temperature: float | None = None
    ) -> AsyncIterator[str]:
        """Start a streamed completion and return its text fragments.

        The first fragment is fetched before returning, so a model that
        cannot be reached fails here rather than mid-stream.

        Raises:
            GenerationError: If the stream cannot be opened.
        """
        try:
            parts = await self._client.chat(
                model=self._config.model,
                messages=messages,
                stream=True,
                options=self._options(temperature),
            )
        except UPSTREAM_ERRORS as exc:
            raise GenerationError(str(exc)) from exc

        fragments = self._fragments(parts)
        try:
            first = await anext(fragments)
        except StopAsyncIteration:
            logger.warning("Model stream ended before producing any text")
            first = None
        return self._prepend(first, fragments)

    async def _fragments(self, parts) -> AsyncIterator[str]:
        try:
            async for part in parts:
                text = part["message"]["content"]
                if text:
                    yield text
        except UPSTREAM_ERRORS as exc:
            raise GenerationError(str(exc)) from exc

    @staticmethod
    async def _prepend(
        first: str | None, rest: AsyncIterator[str]
    ) -> AsyncIterator[str]:
        if first is not None:
            yield first
        async for text in rest:
            yield text
