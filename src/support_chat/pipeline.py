"""Pipeline orchestrator — sequences classification, retrieval and generation.

One :class:`ChatPipeline` serves every request. Per-request state lives in
local variables, an :class:`AbortSignal` and the returned
:class:`~support_chat.models.ChatReply`; the only shared state is the
correlation-keyed citation store.
"""

import asyncio
import enum
import logging
import time
import uuid
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import ollama

from support_chat.citations import CitationExtractor, PendingCitationStore, TagStripper, strip_tags
from support_chat.classifier import RelevanceClassifier
from support_chat.config import AppConfig, PipelineConfig
from support_chat.embeddings import EmbeddingClient
from support_chat.errors import InvalidRequestError, SupportChatError, UpstreamTimeout
from support_chat.generator import AnswerGenerator
from support_chat.llm import ChatModel, build_ollama_client
from support_chat.models import (
    ChatMessage,
    ChatReply,
    Citation,
    DocumentChunk,
    Persona,
    RelevanceCategory,
)
from support_chat.rewriter import QueryRewriter
from support_chat.vector_store import VectorStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Stage(str, enum.Enum):
    RECEIVED = "RECEIVED"
    CLASSIFYING = "CLASSIFYING"
    SHORT_CIRCUIT_REPLY = "SHORT_CIRCUIT_REPLY"
    REWRITING = "REWRITING"
    EMBEDDING = "EMBEDDING"
    SEARCHING = "SEARCHING"
    GENERATING = "GENERATING"
    EXTRACTING_CITATIONS = "EXTRACTING_CITATIONS"
    DONE = "DONE"
    ERROR = "ERROR"


class AbortSignal:
    """Per-request deadline shared by every non-streaming stage.

    ``abort`` is idempotent. Once aborted, further bounded calls fail
    immediately with :class:`UpstreamTimeout`.
    """

    def __init__(
        self, timeout_s: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._clock = clock
        self._deadline = clock() + timeout_s
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def remaining(self) -> float:
        return max(0.0, self._deadline - self._clock())

    def abort(self) -> None:
        self._aborted = True

    async def bounded(self, awaitable: Awaitable[T]) -> T:
        remaining = self.remaining()
        if self._aborted or remaining <= 0:
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            self.abort()
            raise UpstreamTimeout("request deadline exceeded")
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError:
            self.abort()
            raise UpstreamTimeout("request deadline exceeded") from None


class ChatPipeline:
    """Answer one chat message at a time; safe to share across requests."""

    def __init__(
        self,
        classifier: RelevanceClassifier,
        rewriter: QueryRewriter,
        embedder: EmbeddingClient,
        store: VectorStore,
        generator: AnswerGenerator,
        citations: CitationExtractor,
        config: PipelineConfig | None = None,
    ) -> None:
        self.classifier = classifier
        self.rewriter = rewriter
        self.embedder = embedder
        self.store = store
        self.generator = generator
        self.citations = citations
        self._config = config or PipelineConfig()
        self._background: set[asyncio.Task] = set()

    @staticmethod
    def _enter(stage: Stage, correlation_id: str) -> Stage:
        logger.info("[%s] %s", correlation_id, stage.value)
        return stage

    async def handle(
        self,
        message: str,
        history: list[ChatMessage] | None = None,
        persona: Persona = Persona.DEFAULT,
        correlation_id: str | None = None,
    ) -> ChatReply:
        """Run every stage up to the start of streaming.

        Args:
            message: The user's message.
            history: Prior turns, oldest first.
            persona: Answer tone for in-scope questions.
            correlation_id: Key for the citation exchange. Generated if
                not provided.

        Returns:
            A reply whose ``stream`` must be consumed to finish the request.

        Raises:
            InvalidRequestError: If ``message`` is blank.
            UpstreamTimeout: If the request deadline passes.
            SupportChatError: If a mandatory stage fails.
        """
        history = list(history or [])
        cid = correlation_id or uuid.uuid4().hex
        signal = AbortSignal(self._config.timeout_s)
        stage = self._enter(Stage.RECEIVED, cid)
        handed_off = False

        try:
            if not message or not message.strip():
                raise InvalidRequestError("message is required")

            stage = self._enter(Stage.CLASSIFYING, cid)
            category = await signal.bounded(self.classifier.classify(message, history))

            if category is not RelevanceCategory.RELEVANT:
                stage = self._enter(Stage.SHORT_CIRCUIT_REPLY, cid)
                fragments = await signal.bounded(
                    self.generator.canned_reply(category, message)
                )
                reply = ChatReply(category=category, correlation_id=cid)
                reply.stream = self._deliver(reply, fragments, signal, None)
                handed_off = True
                return reply

            stage = self._enter(Stage.REWRITING, cid)
            query = await signal.bounded(self.rewriter.rewrite(message, history))

            stage = self._enter(Stage.EMBEDDING, cid)
            vector = await signal.bounded(self.embedder.embed(query))

            stage = self._enter(Stage.SEARCHING, cid)
            results = await signal.bounded(self.store.search(vector))
            documents = [r.chunk for r in results]

            primed = self._prime(cid, query, documents) if documents else None

            stage = self._enter(Stage.GENERATING, cid)
            fragments = await signal.bounded(
                self.generator.generate(persona, history, documents, query)
            )
            reply = ChatReply(category=category, correlation_id=cid)
            reply.stream = self._deliver(reply, fragments, signal, primed)
            handed_off = True
            return reply
        except SupportChatError as exc:
            logger.error("[%s] %s failed: %s", cid, stage.value, exc)
            self._enter(Stage.ERROR, cid)
            raise
        except Exception:
            logger.exception("[%s] %s failed", cid, stage.value)
            self._enter(Stage.ERROR, cid)
            raise
        finally:
            if not handed_off:
                signal.abort()

    def _prime(
        self, cid: str, query: str, documents: list[DocumentChunk]
    ) -> asyncio.Task:
        """Hand the query and documents to the extractor without waiting."""

        async def run() -> None:
            try:
                self.citations.prime(cid, query, documents)
            except Exception as exc:
                logger.warning("[%s] Priming citations failed: %s", cid, exc)

        task = asyncio.create_task(run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _deliver(
        self,
        reply: ChatReply,
        fragments: AsyncIterator[str],
        signal: AbortSignal,
        primed: asyncio.Task | None,
    ) -> AsyncIterator[str]:
        cid = reply.correlation_id
        stripper = TagStripper()
        raw: list[str] = []
        try:
            async for fragment in fragments:
                raw.append(fragment)
                text = stripper.feed(fragment)
                if text:
                    yield text
            tail = stripper.flush()
            if tail:
                yield tail

            answer = "".join(raw)
            reply.message = ChatMessage(role="assistant", content=strip_tags(answer).strip())

            if reply.category is RelevanceCategory.RELEVANT:
                self._enter(Stage.EXTRACTING_CITATIONS, cid)
                reply.citations = await self._extract(cid, answer, signal, primed)
                reply.message = reply.message.with_citations(reply.citations)
            self._enter(Stage.DONE, cid)
        except GeneratorExit:
            logger.info("[%s] Client stopped reading the stream early", cid)
            raise
        except Exception:
            logger.exception("[%s] %s failed", cid, Stage.GENERATING.value)
            self._enter(Stage.ERROR, cid)
            raise
        finally:
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                await aclose()
            signal.abort()

    async def _extract(
        self,
        cid: str,
        answer: str,
        signal: AbortSignal,
        primed: asyncio.Task | None,
    ) -> list[Citation]:
        if primed is None:
            return []
        await primed
        try:
            return await signal.bounded(self.citations.extract(cid, answer))
        except UpstreamTimeout:
            logger.warning("[%s] Citation extraction timed out", cid)
            return []


def build_pipeline(
    config: AppConfig | None = None, client: ollama.AsyncClient | None = None
) -> ChatPipeline:
    """Construct a pipeline with real Ollama and ChromaDB clients."""
    cfg = config or AppConfig()
    client = client or build_ollama_client(cfg.llm)
    model = ChatModel(client, cfg.llm)
    return ChatPipeline(
        classifier=RelevanceClassifier(
            model,
            history_turns=cfg.pipeline.classifier_history,
            fallback=cfg.pipeline.unparseable_category,
        ),
        rewriter=QueryRewriter(model, history_turns=cfg.pipeline.rewrite_history),
        embedder=EmbeddingClient(client, cfg.embedding),
        store=VectorStore.from_config(cfg.vector_store),
        generator=AnswerGenerator(model, history_turns=cfg.pipeline.generation_history),
        citations=CitationExtractor(
            model,
            PendingCitationStore(ttl_s=cfg.pipeline.citation_ttl_s),
            temperature=cfg.llm.citation_temperature,
        ),
        config=cfg.pipeline,
    )
