"""Citation extraction — attributes an answer to the documents it used.

Extraction is a two-phase exchange. ``prime`` records the query and the
retrieved documents under a correlation id; ``extract`` later receives
the finished answer, asks the model which sources it drew on, and keeps
only URLs that were actually retrieved.

Citations are best-effort: every failure path yields an empty list.
"""

import json
import logging
import re
import threading
import time

from support_chat.errors import SupportChatError
from support_chat.llm import ChatModel
from support_chat.models import Citation, DocumentChunk, PendingCitationContext

logger = logging.getLogger(__name__)

# Canonical in-text citation tag, shared by the generator and the extractor.
TAG_PATTERN = re.compile(r"\{\{url:(.*?)\}\}")
TAG_OPEN = "{{url:"

DEFAULT_CORRELATION_ID = "default"

# Longest unterminated tag the stream filter will hold back.
_MAX_PENDING_TAG = 2048

CITATION_INSTRUCTIONS = """\
You are an AI assistant for Connect America's internal support team. Your role is to:
1. Compare the AI's answer with the provided context documents
2. Only extract URLs of documents whose content is directly referenced or used in the answer
3. Return ONLY the URLs in {{url:}} format for documents that contributed to the answer
4. Do not add any additional text or explanations
5. If no content from the documents was used in the answer, return an empty string
6. Do not give generic or modified URLs, only the ones from the context
Example output format:
{{url:https://connect-america-files.s3.us-east-1.amazonaws.com/Connect+America+Test/example1.pdf}}
{{url:https://connect-america-files.s3.us-east-1.amazonaws.com/Connect+America+Test/example2.pdf}}"""


def extract_tags(text: str) -> list[str]:
    """Return the non-empty URLs of all citation tags in ``text``, in order."""
    return [m.strip() for m in TAG_PATTERN.findall(text or "") if m.strip()]


def strip_tags(text: str) -> str:
    """Remove every citation tag from ``text``."""
    return TAG_PATTERN.sub("", text or "")


def _partial_tag_start(text: str) -> int | None:
    """Index where an unfinished citation tag begins at the end of ``text``."""
    index = text.find("{")
    while index != -1:
        tail = text[index:]
        if TAG_OPEN.startswith(tail) or tail.startswith(TAG_OPEN):
            return index
        index = text.find("{", index + 1)
    return None


class TagStripper:
    """Remove citation tags from a stream of text fragments.

    A tag can be split across fragments, so text that might start a tag
    is held back until it is either completed (and dropped) or proven
    not to be a tag.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, fragment: str) -> str:
        text = strip_tags(self._pending + fragment)
        start = _partial_tag_start(text)
        if start is None or len(text) - start > _MAX_PENDING_TAG:
            self._pending = ""
            return text
        self._pending = text[start:]
        return text[:start]

    def flush(self) -> str:
        rest, self._pending = self._pending, ""
        return rest


class PendingCitationStore:
    """Correlation-id keyed holding area for primed citation contexts.

    Entries are single-use and expire after ``ttl_s`` seconds.
    """

    def __init__(self, ttl_s: float = 300.0) -> None:
        self._ttl_s = ttl_s
        self._items: dict[str, PendingCitationContext] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items

    def put(self, key: str, context: PendingCitationContext) -> None:
        with self._lock:
            self._items[key] = context

    def pop(self, key: str) -> PendingCitationContext | None:
        with self._lock:
            context = self._items.pop(key, None)
        if context is not None and context.expired(self._ttl_s):
            logger.info("Discarding expired citation context %s", key)
            return None
        return context

    def purge_expired(self, now: float | None = None) -> int:
        current = time.monotonic() if now is None else now
        with self._lock:
            stale = [k for k, v in self._items.items() if v.expired(self._ttl_s, current)]
            for key in stale:
                del self._items[key]
        return len(stale)


class CitationExtractor:
    """Second-pass model call that verifies which sources an answer used."""

    def __init__(
        self,
        model: ChatModel,
        store: PendingCitationStore | None = None,
        temperature: float = 0.1,
    ) -> None:
        self._model = model
        self._store = store if store is not None else PendingCitationStore()
        self._temperature = temperature

    @property
    def store(self) -> PendingCitationStore:
        return self._store

    def prime(
        self,
        correlation_id: str,
        query: str,
        documents: list[DocumentChunk],
    ) -> dict:
        """Record the query and context an answer will be checked against."""
        purged = self._store.purge_expired()
        if purged:
            logger.info("Purged %d expired citation contexts", purged)
        self._store.put(
            correlation_id,
            PendingCitationContext(query=query, documents=tuple(documents)),
        )
        logger.info(
            "Primed citation context %s with %d documents", correlation_id, len(documents)
        )
        return {"status": "waiting_for_answer", "hasContext": True}

    async def extract(self, correlation_id: str, answer: str) -> list[Citation]:
        """Return verified citations for ``answer``.

        The primed context is consumed whether or not extraction succeeds.
        """
        pending = self._store.pop(correlation_id)
        if pending is None:
            logger.info("No primed citation context for %s", correlation_id)
            return []
        if not answer or not answer.strip() or not pending.documents:
            return []

        context = [d.to_context() for d in pending.documents]
        try:
            raw = await self._model.complete(
                [
                    {"role": "system", "content": CITATION_INSTRUCTIONS},
                    {
                        "role": "user",
                        "content": (
                            f"Context:\n{json.dumps(context, ensure_ascii=False)}\n\n"
                            f"Original Question: {pending.query}\n\n"
                            f"AI Answer: {answer}\n\n"
                            "Extract relevant URLs:"
                        ),
                    },
                ],
                temperature=self._temperature,
            )
        except SupportChatError as exc:
            logger.warning("Citation extraction failed for %s: %s", correlation_id, exc)
            return []

        # Tags the answer already carries count as well.
        return self.verify(extract_tags(raw) + extract_tags(answer), pending.documents)

    @staticmethod
    def verify(urls: list[str], documents: tuple[DocumentChunk, ...]) -> list[Citation]:
        """Keep URLs present in ``documents``, deduplicated, first-seen order."""
        known = {}
        for doc in documents:
            if doc.source_url and doc.source_url not in known:
                known[doc.source_url] = doc

        citations: list[Citation] = []
        seen: set[str] = set()
        for url in urls:
            if url in seen:
                continue
            doc = known.get(url)
            if doc is None:
                logger.info("Dropping citation not in retrieved context: %s", url)
                continue
            seen.add(url)
            citations.append(Citation(url=url, content=doc.content))

        logger.info("Verified %d citations", len(citations))
        return citations
