"""Domain models for the support chat pipeline."""

import enum
import re
import time
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Literal

Role = Literal["user", "assistant"]

_NOT_RELEVANT_RE = re.compile(r"\bNOT\s+RELEVANT\b")


class RelevanceCategory(str, enum.Enum):
    """Bucket assigned to an incoming message before retrieval."""

    GREETING = "GREETING"
    RELEVANT = "RELEVANT"
    INAPPROPRIATE = "INAPPROPRIATE"
    NOT_RELEVANT = "NOT_RELEVANT"

    @classmethod
    def parse(cls, text: str | None) -> "RelevanceCategory | None":
        """Map free-form model output to a category, or None if unparseable.

        Tokens match on word boundaries, so ``IRRELEVANT`` names nothing.
        ``NOT RELEVANT`` is matched and masked out before ``RELEVANT`` is
        looked for. Output naming no category, or more than one, is None.
        """
        if not text:
            return None
        upper = text.upper().replace("-", " ").replace("_", " ")

        found = set()
        if _NOT_RELEVANT_RE.search(upper):
            found.add(cls.NOT_RELEVANT)
            upper = _NOT_RELEVANT_RE.sub(" ", upper)
        for category in (cls.GREETING, cls.INAPPROPRIATE, cls.RELEVANT):
            if re.search(rf"\b{category.value}\b", upper):
                found.add(category)

        if len(found) != 1:
            return None
        return found.pop()


class Persona(str, enum.Enum):
    """System-instruction variant controlling answer tone."""

    DEFAULT = "default"
    ADVICE = "advice"


@dataclass(frozen=True)
class Citation:
    """A verified source URL and the text snippet it contributed."""

    url: str
    content: str = ""

    def to_dict(self) -> dict:
        return {"url": self.url, "content": self.content}


@dataclass(frozen=True)
class ChatMessage:
    """One turn of a conversation."""

    role: Role
    content: str
    urls: tuple[Citation, ...] = ()

    def with_citations(self, citations: list[Citation]) -> "ChatMessage":
        """Return a copy of this message carrying ``citations``."""
        return replace(self, urls=tuple(citations))

    def to_dict(self) -> dict:
        data: dict = {"role": self.role, "content": self.content}
        if self.urls:
            data["urls"] = [c.to_dict() for c in self.urls]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        urls = tuple(
            Citation(url=u.get("url", ""), content=u.get("content", ""))
            for u in data.get("urls") or []
        )
        return cls(role=data["role"], content=data.get("content", ""), urls=urls)


def attach_citations(
    history: list[ChatMessage], citations: list[Citation]
) -> list[ChatMessage]:
    """Attach citations to the most recent assistant message in place.

    This is the only change ever made to a delivered message. Histories
    without an assistant message are left untouched.

    Args:
        history: Conversation, oldest first.
        citations: Verified citations for the latest answer.

    Returns:
        The same list, for chaining.
    """
    for index in range(len(history) - 1, -1, -1):
        if history[index].role == "assistant":
            history[index] = history[index].with_citations(citations)
            break
    return history


@dataclass(frozen=True)
class DocumentChunk:
    """A persisted chunk of a source document."""

    id: str
    content: str
    title: str = ""
    chunk_id: str = ""
    source_url: str = ""
    embedding: list[float] | None = None

    def to_context(self) -> dict:
        """Serializable form sent to the model and the citation endpoint."""
        return {
            "pageContent": self.content,
            "metadata": {"title": self.title, "s3_url": self.source_url},
        }

    @classmethod
    def from_context(cls, data: dict) -> "DocumentChunk":
        """Inverse of :meth:`to_context`; tolerates flat row dicts too."""
        meta = data.get("metadata") or {}
        return cls(
            id=str(data.get("id", "")),
            content=data.get("pageContent") or data.get("contents") or "",
            title=meta.get("title") or data.get("title") or "",
            chunk_id=str(data.get("chunk_id", "")),
            source_url=meta.get("s3_url") or data.get("s3_url") or "",
        )


@dataclass(frozen=True)
class SearchResult:
    """A chunk plus its cosine similarity to the query vector."""

    chunk: DocumentChunk
    similarity: float

    @property
    def source_url(self) -> str:
        return self.chunk.source_url

    @property
    def title(self) -> str:
        return self.chunk.title


@dataclass(frozen=True)
class PendingCitationContext:
    """Query and documents held until the final answer arrives."""

    query: str
    documents: tuple[DocumentChunk, ...]
    created_at: float = field(default_factory=time.monotonic)

    def expired(self, ttl_s: float, now: float | None = None) -> bool:
        current = time.monotonic() if now is None else now
        return current - self.created_at > ttl_s


@dataclass
class ChatReply:
    """Result of handling one chat message.

    ``stream`` is one-shot: iterate it exactly once. The pipeline attaches
    it before returning the reply, since the stream writes back into the
    reply. ``message`` is filled in when the stream has been consumed to
    the end.
    """

    category: RelevanceCategory
    correlation_id: str
    stream: AsyncIterator[str] | None = None
    message: ChatMessage | None = None
    citations: list[Citation] = field(default_factory=list)
