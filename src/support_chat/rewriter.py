"""Rewrite raw user questions into search-friendly queries."""

import json
import logging

from support_chat.errors import DegradedFeatureFailure
from support_chat.llm import ChatModel
from support_chat.models import ChatMessage

logger = logging.getLogger(__name__)

_REWRITE_PROMPT = (
    "You are Connect America's internal support assistant. Rewrite this "
    "query to be more specific and searchable, taking into account the chat "
    "history if provided. Only return the rewritten query without "
    "explanations."
)


def history_payload(history: list[ChatMessage], turns: int) -> str:
    """Serialize the last ``turns`` messages for inclusion in a prompt."""
    recent = history[-turns:] if turns > 0 else []
    return json.dumps(
        [{"role": m.role, "content": m.content} for m in recent],
        ensure_ascii=False,
    )


class QueryRewriter:
    """Rewrite queries with a language model.

    Rewriting is an optimization: ``rewrite`` never raises and falls back
    to the original query on any failure.
    """

    def __init__(self, model: ChatModel, history_turns: int = 5) -> None:
        self._model = model
        self._history_turns = history_turns

    async def rewrite(self, query: str, history: list[ChatMessage]) -> str:
        try:
            rewritten = await self._model.complete(
                [
                    {"role": "system", "content": _REWRITE_PROMPT},
                    {
                        "role": "user",
                        "content": (
                            f"Original query: {query}\n"
                            f"Chat history: "
                            f"{history_payload(history, self._history_turns)}"
                        ),
                    },
                ]
            )
            if not rewritten:
                raise DegradedFeatureFailure("rewriter returned an empty query")
        except Exception as exc:
            logger.warning("Query rewriting failed, using original query: %s", exc)
            return query

        logger.info("Rewrote query %r -> %r", query, rewritten)
        return rewritten
