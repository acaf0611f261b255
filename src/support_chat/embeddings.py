"""Embedding client backed by Ollama."""

import logging

import httpx
import ollama

from support_chat.config import EmbeddingConfig
from support_chat.errors import EmbeddingFailure

logger = logging.getLogger(__name__)

# Errors the Ollama client raises for provider-side failures.
UPSTREAM_ERRORS = (
    ollama.ResponseError,
    ollama.RequestError,
    httpx.HTTPError,
    ConnectionError,
)


class EmbeddingClient:
    """Wrap an embedding model call.

    No retries happen here; callers decide what a failure means.
    """

    def __init__(
        self,
        client: ollama.AsyncClient,
        config: EmbeddingConfig | None = None,
    ) -> None:
        self._client = client
        self._config = config or EmbeddingConfig()

    async def embed(self, text: str) -> list[float]:
        """Embed a single piece of text.

        Args:
            text: Non-empty query text. Input longer than
                ``EmbeddingConfig.max_chars`` is truncated.

        Returns:
            The embedding vector.

        Raises:
            ValueError: If ``text`` is blank.
            EmbeddingFailure: If the provider call fails or returns nothing.
        """
        if not text or not text.strip():
            raise ValueError("text to embed must be non-empty")

        if len(text) > self._config.max_chars:
            logger.info(
                "Truncating embedding input from %d to %d chars",
                len(text),
                self._config.max_chars,
            )
            text = text[: self._config.max_chars]

        try:
            response = await self._client.embed(model=self._config.model, input=text)
        except UPSTREAM_ERRORS as exc:
            logger.error("Embedding request failed: %s", exc)
            raise EmbeddingFailure(str(exc)) from exc

        embeddings = response["embeddings"] if response else None
        if not embeddings or not embeddings[0]:
            raise EmbeddingFailure("embedding provider returned no vector")

        vector = [float(v) for v in embeddings[0]]
        logger.debug("Generated %d-dimensional embedding", len(vector))
        return vector
