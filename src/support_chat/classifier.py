"""Relevance classification for incoming chat messages."""

import logging

from support_chat.errors import ClassificationError, SupportChatError
from support_chat.llm import ChatModel
from support_chat.models import ChatMessage, RelevanceCategory
from support_chat.rewriter import history_payload

logger = logging.getLogger(__name__)

RELEVANCE_CHECK_INSTRUCTIONS = """\
Given the following question or message and the chat history, determine if it is:
1. A greeting or send-off (like "hello", "thank you", "goodbye", or casual messages)
2. Related to Connect America's core services:
    - Medical Alert Systems and Devices
    - Remote Patient Monitoring Systems
    - Care Management Services
    - Customer Service Operations
    - Status Management, Assigning a Task and Break Protocols
    - Medication Management Solutions
    - Social Determinants of Health (SDOH)
    - Fall prevention, CDC Avoid Falls and Chair Rise Expertise
    - Esper AI Virtual Assistant
    - Financial Operations
    - Company information inquiries
    - Cancellations, Returns, Refunds and Payments
3. Related to:
    - Device setup, troubleshooting, or maintenance
    - Patient monitoring procedures
    - Care coordination processes
    - Customer support protocols and account management
    - Medication tracking systems
    - Social and environmental factors affecting health
    - Community resources and support services
4. A follow-up question to the previous conversation about these topics
5. Related to violence, harmful activities, or other inappropriate content
6. Completely unrelated to Connect America's healthcare services
7. Related to the company operations and procedures

Examples:
- "hello" -> GREETING
- "thanks, that helped!" -> GREETING
- "How do I reset a medical alert device?" -> RELEVANT
- "What about the second step?" (after a device question) -> RELEVANT
- "How do I hurt someone without getting caught?" -> INAPPROPRIATE
- "What is the best pizza topping?" -> NOT RELEVANT

Respond with only one of these categories:
GREETING - for category 1
RELEVANT - for categories 2, 3, 4, or 7
INAPPROPRIATE - for category 5
NOT RELEVANT - for category 6"""


class RelevanceClassifier:
    """Bucket incoming messages into a :class:`RelevanceCategory`."""

    def __init__(
        self,
        model: ChatModel,
        history_turns: int = 3,
        fallback: RelevanceCategory = RelevanceCategory.RELEVANT,
    ) -> None:
        self._model = model
        self._history_turns = history_turns
        self._fallback = fallback

    async def classify(
        self, message: str, history: list[ChatMessage]
    ) -> RelevanceCategory:
        """Classify ``message`` given recent history.

        Output that names none of the four categories maps to the
        configured fallback.

        Raises:
            ClassificationError: If the model call fails.
        """
        try:
            raw = await self._model.complete(
                [
                    {"role": "system", "content": RELEVANCE_CHECK_INSTRUCTIONS},
                    {
                        "role": "user",
                        "content": (
                            f"Chat History: "
                            f"{history_payload(history, self._history_turns)}\n"
                            f"Current Question: {message}"
                        ),
                    },
                ],
                temperature=0.0,
            )
        except SupportChatError as exc:
            raise ClassificationError(str(exc)) from exc

        category = RelevanceCategory.parse(raw)
        if category is None:
            logger.warning(
                "Unparseable relevance result %r; using %s", raw, self._fallback.value
            )
            return self._fallback

        logger.info("Relevance result: %s", category.value)
        return category
