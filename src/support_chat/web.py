"""FastAPI web interface for the support chat service."""

import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Literal

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, field_validator

from support_chat.citations import DEFAULT_CORRELATION_ID
from support_chat.config import AppConfig
from support_chat.errors import (
    GENERIC_APOLOGY,
    InvalidRequestError,
    StoreUnavailable,
    SupportChatError,
)
from support_chat.llm import ChatModel, build_ollama_client
from support_chat.models import (
    ChatMessage,
    ChatReply,
    DocumentChunk,
    Persona,
    RelevanceCategory,
)
from support_chat.pipeline import ChatPipeline, build_pipeline

logger = logging.getLogger(__name__)

_config = AppConfig()


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Construct the model, store and pipeline clients on startup."""
    client = build_ollama_client(_config.llm)
    application.state.chat_model = ChatModel(client, _config.llm)
    application.state.pipeline = build_pipeline(_config, client)
    logger.info(
        "Support chat ready (model=%s, collection=%s)",
        _config.llm.model,
        _config.vector_store.collection_name,
    )
    yield


app = FastAPI(
    title="Support Chat",
    lifespan=lifespan,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
)

router = APIRouter(prefix="/api/v1")


def get_pipeline(request: Request) -> ChatPipeline:
    """FastAPI dependency — return the pipeline from app state."""
    return request.app.state.pipeline


def get_chat_model(request: Request) -> ChatModel | None:
    """FastAPI dependency — return the chat model from app state."""
    return getattr(request.app.state, "chat_model", None)


class CitationBody(BaseModel):
    url: str
    content: str = ""


class ChatMessageBody(BaseModel):
    role: Literal["user", "assistant"]
    content: str = ""
    urls: list[CitationBody] = Field(default_factory=list)

    def to_model(self) -> ChatMessage:
        return ChatMessage.from_dict(self.model_dump())


class ChatRequest(BaseModel):
    message: str | None = None
    chat_history: list[ChatMessageBody] = Field(default_factory=list)
    persona: Persona = Persona.DEFAULT
    correlation_id: str | None = None

    @field_validator("persona", mode="before")
    @classmethod
    def _default_persona(cls, v: object) -> object:
        """Any value other than a known persona means the default one."""
        if v in [p.value for p in Persona]:
            return v
        return Persona.DEFAULT


class CitationRequest(BaseModel):
    message: str | None = None
    context: list[dict] | None = None
    answer: str | None = None
    correlation_id: str | None = None


class HealthResponse(BaseModel):
    status: str
    model_connected: bool
    documents: int


def _error_response(exc: SupportChatError) -> JSONResponse:
    return JSONResponse(
        {"role": "assistant", "content": exc.public_message},
        status_code=exc.status_code,
    )


@app.exception_handler(RequestValidationError)
async def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(
        "Rejected malformed body for %s: %d error(s)", request.url.path, len(exc.errors())
    )
    return _error_response(
        InvalidRequestError("malformed request body", public_message="Invalid request")
    )


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def _event_stream(reply: ChatReply) -> AsyncIterator[str]:
    """Frame a reply as server-sent events.

    ``token`` events carry text, ``citations`` follows a completed
    in-scope answer, and ``done`` (or ``error``) ends the stream.
    """
    try:
        async for text in reply.stream:
            yield _sse("token", {"text": text})
    except SupportChatError as exc:
        yield _sse("error", {"role": "assistant", "content": exc.public_message})
        return
    except Exception:
        logger.exception("[%s] Stream failed", reply.correlation_id)
        yield _sse("error", {"role": "assistant", "content": GENERIC_APOLOGY})
        return
    finally:
        await reply.stream.aclose()

    if reply.category is RelevanceCategory.RELEVANT:
        yield _sse(
            "citations",
            {
                "urls": [{"url": c.url} for c in reply.citations],
                "correlation_id": reply.correlation_id,
            },
        )
    yield _sse("done", {"category": reply.category.value})


@router.post("/chat")
async def api_chat(body: ChatRequest, pipeline: ChatPipeline = Depends(get_pipeline)):
    try:
        _config.require_credentials()
        reply = await pipeline.handle(
            body.message or "",
            [m.to_model() for m in body.chat_history],
            persona=body.persona,
            correlation_id=body.correlation_id,
        )
    except SupportChatError as exc:
        return _error_response(exc)
    except Exception:
        logger.exception("Chat request failed")
        return JSONResponse(
            {"role": "assistant", "content": GENERIC_APOLOGY}, status_code=500
        )

    return StreamingResponse(
        _event_stream(reply),
        media_type="text/event-stream",
        headers={"X-Correlation-Id": reply.correlation_id, "Cache-Control": "no-cache"},
    )


@router.post("/citations")
async def api_citations(
    body: CitationRequest, pipeline: ChatPipeline = Depends(get_pipeline)
):
    try:
        _config.require_credentials()
    except SupportChatError as exc:
        return _error_response(exc)

    cid = body.correlation_id or DEFAULT_CORRELATION_ID
    try:
        if body.message and body.context is not None:
            documents = [DocumentChunk.from_context(d) for d in body.context]
            return pipeline.citations.prime(cid, body.message, documents)

        if body.answer:
            citations = await pipeline.citations.extract(cid, body.answer)
            return {"urls": [{"url": c.url} for c in citations], "status": "success"}
    except Exception:
        logger.exception("Citation request failed")
        return JSONResponse(
            {"status": "error", "message": "Internal server error"}, status_code=500
        )

    return {"status": "success", "hasContext": False}


@router.get("/documents")
async def api_documents(pipeline: ChatPipeline = Depends(get_pipeline)):
    try:
        return await pipeline.store.documents()
    except StoreUnavailable:
        return JSONResponse({"error": "Failed to fetch documents"}, status_code=500)


@router.get("/health", response_model=HealthResponse)
async def api_health(
    pipeline: ChatPipeline = Depends(get_pipeline),
    model: ChatModel | None = Depends(get_chat_model),
):
    connected = await model.ping() if model is not None else False
    try:
        documents = await pipeline.store.count()
    except Exception as exc:
        logger.warning("Health check could not count documents: %s", exc)
        documents = 0

    return HealthResponse(
        status="healthy" if connected else "degraded",
        model_connected=connected,
        documents=documents,
    )


app.include_router(router)
