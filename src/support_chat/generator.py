"""Answer generator — persona prompts and streamed completions."""

import json
import logging
from typing import AsyncIterator

from support_chat.citations import TAG_OPEN
from support_chat.llm import ChatModel
from support_chat.models import ChatMessage, DocumentChunk, Persona, RelevanceCategory
from support_chat.rewriter import history_payload

logger = logging.getLogger(__name__)

_CITATION_RULE = (
    "When you directly use information from a context document, mark it "
    f"inline with {TAG_OPEN}<s3_url of that document>}}}}. Only use URLs that "
    "appear in the context."
)

SYSTEM_INSTRUCTIONS_DEFAULT = (
    "You are an AI assistant for Connect America's internal support team. "
    "Your role is to:\n"
    "1. Analyze support documents and provide clear, professional responses\n"
    "2. Convert technical content into easy-to-understand explanations\n"
    "3. Focus on explaining processes and solutions rather than quoting directly\n"
    "4. Maintain a professional, helpful tone\n"
    "5. If information isn't available in the provided context, clearly state "
    "that and DO NOT provide generic responses\n"
    "6. Always respond in English, regardless of the input language\n"
    f"7. {_CITATION_RULE}"
)

SYSTEM_INSTRUCTIONS_ADVICE = (
    "You are an AI advisor for Connect America's internal support team. "
    "Your role is to:\n"
    "1. Provide guidance and recommendations in a supportive, advisory tone\n"
    "2. Offer best practices and suggestions based ONLY on the documentation\n"
    '3. Use phrases like "I recommend", "Consider", "It\'s advisable to"\n'
    "4. Include practical tips and potential pitfalls to watch out for\n"
    "5. If information isn't available, clearly state that and DO NOT provide "
    "generic best practices\n"
    "6. Always respond in English\n"
    f"7. {_CITATION_RULE}\n\n"
    "Response Structure:\n"
    "### Overview\n"
    "Brief summary of the advice\n\n"
    "### Recommendations\n"
    "• Key recommendation points\n"
    "  - Supporting details\n"
    "  - Implementation tips\n\n"
    "### Best Practices\n"
    "1. First practice\n"
    "2. Second practice\n"
    "   - Important considerations\n"
    "   - Potential pitfalls\n\n"
    "### Note\n"
    "Important warnings or special considerations"
)

PERSONA_INSTRUCTIONS = {
    Persona.DEFAULT: SYSTEM_INSTRUCTIONS_DEFAULT,
    Persona.ADVICE: SYSTEM_INSTRUCTIONS_ADVICE,
}

CANNED_INSTRUCTIONS = {
    RelevanceCategory.GREETING: (
        "You are Connect America's support assistant. Provide a friendly and "
        "engaging greeting response. Mention that you're here to help with "
        "internal support topics."
    ),
    RelevanceCategory.INAPPROPRIATE: (
        "Provide a professional response that maintains a polite and firm tone, "
        "explains that you can only assist with appropriate work-related "
        "queries, and encourages asking a different question related to "
        "Connect America's internal support."
    ),
    RelevanceCategory.NOT_RELEVANT: (
        "Provide a response that politely acknowledges the question, explains "
        "your specialization in Connect America's internal support topics, and "
        "encourages rephrasing the question to relate to internal support "
        "matters."
    ),
}

_NO_CONTEXT_NOTE = (
    "No support documents matched this question. Say that the documentation "
    "does not cover it and suggest how the user could rephrase."
)


def build_context(documents: list[DocumentChunk]) -> str:
    """Serialize retrieved documents for the generation prompt."""
    if not documents:
        return _NO_CONTEXT_NOTE
    return json.dumps([d.to_context() for d in documents], ensure_ascii=False)


class AnswerGenerator:
    """Produce streamed answers for retrieved context or canned replies."""

    def __init__(self, model: ChatModel, history_turns: int = 5) -> None:
        self._model = model
        self._history_turns = history_turns

    async def generate(
        self,
        persona: Persona,
        history: list[ChatMessage],
        documents: list[DocumentChunk],
        query: str,
    ) -> AsyncIterator[str]:
        """Open a one-shot stream answering ``query`` from ``documents``.

        Fragments may contain citation tags; the caller strips them before
        display.
        """
        user_prompt = (
            f"Chat History:\n{history_payload(history, self._history_turns)}\n\n"
            f"Context:\n{build_context(documents)}\n\n"
            f"Question: {query}"
        )
        logger.info(
            "Generating %s answer from %d documents", persona.value, len(documents)
        )
        return await self._model.open_stream(
            [
                {"role": "system", "content": PERSONA_INSTRUCTIONS[persona]},
                {"role": "user", "content": user_prompt},
            ]
        )

    async def canned_reply(
        self, category: RelevanceCategory, message: str
    ) -> AsyncIterator[str]:
        """Open a stream for a short-circuit category; no retrieval involved."""
        instructions = CANNED_INSTRUCTIONS.get(category)
        if instructions is None:
            raise ValueError(f"no canned reply for {category.value}")
        return await self._model.open_stream(
            [
                {"role": "system", "content": instructions},
                {"role": "user", "content": message},
            ]
        )
