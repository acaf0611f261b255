"""Shared fixtures and fakes for the test suite."""

import pytest

from support_chat import vector_store as vs
from support_chat.citations import CITATION_INSTRUCTIONS, CitationExtractor, extract_tags
from support_chat.classifier import RELEVANCE_CHECK_INSTRUCTIONS, RelevanceClassifier
from support_chat.config import PipelineConfig, VectorStoreConfig
from support_chat.embeddings import EmbeddingClient
from support_chat.generator import CANNED_INSTRUCTIONS, PERSONA_INSTRUCTIONS, AnswerGenerator
from support_chat.llm import ChatModel
from support_chat.models import DocumentChunk
from support_chat.pipeline import ChatPipeline
from support_chat.rewriter import QueryRewriter

DOC1_URL = "https://x/doc1.pdf"
FAKE_URL = "https://evil.example/made-up.pdf"

# Keyword dimensions for the fake embedding model; the last one is a bias
# so that no vector is all zeros.
VOCAB = ["reset", "device", "billing", "refund", "fall"]


def keyword_vector(text: str) -> list[float]:
    lower = text.lower()
    return [1.0 if word in lower else 0.0 for word in VOCAB] + [0.1]


def _split(text: str, size: int = 7) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


def default_responder(messages: list[dict]) -> str:
    """Play every model role the pipeline uses, keyed on the system prompt."""
    system = messages[0]["content"]
    user = messages[-1]["content"]

    if system == RELEVANCE_CHECK_INSTRUCTIONS:
        question = user.split("Current Question:", 1)[1].strip().lower()
        if question in {"hello", "hi", "thanks", "goodbye"}:
            return "GREETING"
        if any(w in question for w in ("kill", "hurt", "attack", "stab")):
            return "INAPPROPRIATE"
        if "pizza" in question or "weather" in question:
            return "NOT RELEVANT"
        return "RELEVANT"

    if system.startswith("You are Connect America's internal support assistant. Rewrite"):
        return user.split("Original query:", 1)[1].split("\n", 1)[0].strip()

    if system == CITATION_INSTRUCTIONS:
        answer = user.split("AI Answer:", 1)[1]
        tags = [f"{{{{url:{u}}}}}" for u in extract_tags(answer)]
        tags.append(f"{{{{url:{FAKE_URL}}}}}")
        return "\n".join(tags)

    if system in PERSONA_INSTRUCTIONS.values():
        if DOC1_URL in user:
            return (
                "To reset the device, hold the power button for ten seconds "
                f"{{{{url:{DOC1_URL}}}}} and wait for the light to blink."
            )
        return "The support documentation does not cover this question."

    if system in CANNED_INSTRUCTIONS.values():
        return "Hello! I'm here to help with internal support topics."

    raise AssertionError(f"unexpected prompt: {system[:60]!r}")


class FakeOllama:
    """Stand-in for ``ollama.AsyncClient`` driven by a responder function."""

    def __init__(self, responder=default_responder, embedder=keyword_vector) -> None:
        self.responder = responder
        self.embedder = embedder
        self.chat_calls: list[dict] = []
        self.embed_calls: list[str] = []

    async def chat(self, model, messages, stream=False, options=None):
        self.chat_calls.append(
            {"model": model, "messages": messages, "stream": stream, "options": options}
        )
        text = self.responder(messages)
        if not stream:
            return {"message": {"content": text}}
        return self._stream(text)

    async def _stream(self, text):
        for piece in _split(text):
            yield {"message": {"content": piece}}

    async def embed(self, model, input):
        self.embed_calls.append(input)
        return {"embeddings": [self.embedder(input)]}

    async def list(self):
        return {"models": []}


@pytest.fixture
def fake_ollama() -> FakeOllama:
    return FakeOllama()


@pytest.fixture
def chat_model(fake_ollama) -> ChatModel:
    return ChatModel(fake_ollama)


@pytest.fixture
def store_config(tmp_path) -> VectorStoreConfig:
    """Config pointing at a temporary ChromaDB directory."""
    return VectorStoreConfig(
        db_path=str(tmp_path / "chroma_db"),
        collection_name="test_amac",
        retry_delay_s=0.0,
    )


@pytest.fixture
def doc1_chunk() -> DocumentChunk:
    content = "Reset the device by holding the power button for ten seconds."
    return DocumentChunk(
        id="1",
        content=content,
        title="Device Reset Guide",
        chunk_id="0",
        source_url=DOC1_URL,
        embedding=keyword_vector(content),
    )


@pytest.fixture
def billing_chunk() -> DocumentChunk:
    content = "Billing questions and refund requests go to the finance desk."
    return DocumentChunk(
        id="2",
        content=content,
        title="Billing FAQ",
        chunk_id="0",
        source_url="https://x/billing.pdf",
        embedding=keyword_vector(content),
    )


@pytest.fixture
def seeded_store(store_config, doc1_chunk, billing_chunk) -> vs.VectorStore:
    client = vs.get_client(store_config)
    collection = vs.get_or_create_collection(client, store_config.collection_name)
    vs.add_chunks(collection, [doc1_chunk, billing_chunk])
    return vs.VectorStore.from_config(store_config)


@pytest.fixture
def empty_store(store_config) -> vs.VectorStore:
    return vs.VectorStore.from_config(store_config)


@pytest.fixture
def make_pipeline(fake_ollama):
    """Build a pipeline around the fake model and a given store."""

    def _make(store, config: PipelineConfig | None = None, client=None) -> ChatPipeline:
        model = ChatModel(client or fake_ollama)
        return ChatPipeline(
            classifier=RelevanceClassifier(model),
            rewriter=QueryRewriter(model),
            embedder=EmbeddingClient(client or fake_ollama),
            store=store,
            generator=AnswerGenerator(model),
            citations=CitationExtractor(model),
            config=config,
        )

    return _make
