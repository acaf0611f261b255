"""CLI interface for the support chat service."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from support_chat import vector_store as vs
from support_chat.config import AppConfig
from support_chat.embeddings import EmbeddingClient
from support_chat.errors import SupportChatError
from support_chat.llm import build_ollama_client
from support_chat.models import ChatMessage, DocumentChunk, Persona, attach_citations
from support_chat.pipeline import ChatPipeline, build_pipeline

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def load_chunk_records(path: str) -> list[DocumentChunk]:
    """Read chunk records from a JSON Lines file.

    Each line holds ``id``, ``contents``, ``title``, ``chunk_id`` and
    ``s3_url``. Blank lines are skipped.

    Raises:
        ValueError: If a line is not valid JSON or lacks ``id``/``contents``.
    """
    chunks: list[DocumentChunk] = []
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    for lineno, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ValueError(f"{path}:{lineno}: invalid JSON ({exc})") from exc
        if not row.get("id") or not row.get("contents"):
            raise ValueError(f"{path}:{lineno}: 'id' and 'contents' are required")
        chunks.append(
            DocumentChunk(
                id=str(row["id"]),
                content=row["contents"],
                title=row.get("title", ""),
                chunk_id=str(row.get("chunk_id", "")),
                source_url=row.get("s3_url", ""),
            )
        )
    return chunks


async def _embed_chunks(
    embedder: EmbeddingClient, chunks: list[DocumentChunk]
) -> list[DocumentChunk]:
    embedded = []
    for chunk in chunks:
        vector = await embedder.embed(chunk.content)
        embedded.append(
            DocumentChunk(
                id=chunk.id,
                content=chunk.content,
                title=chunk.title,
                chunk_id=chunk.chunk_id,
                source_url=chunk.source_url,
                embedding=vector,
            )
        )
    return embedded


def ingest(file_path: str, config: AppConfig | None = None) -> int:
    """Embed chunk records from ``file_path`` and store them.

    Args:
        file_path: JSON Lines file of chunk records.
        config: Application configuration. Uses defaults if not provided.

    Returns:
        Number of chunks stored.
    """
    cfg = config or AppConfig()

    print(f"\n📂 Loading chunk records from: {file_path}")
    chunks = load_chunk_records(file_path)
    if not chunks:
        print("No chunk records found.")
        return 0

    print(f"\n🔢 Embedding {len(chunks)} chunk(s) with {cfg.embedding.model}...")
    embedder = EmbeddingClient(build_ollama_client(cfg.llm), cfg.embedding)
    embedded = asyncio.run(_embed_chunks(embedder, chunks))

    print("\n💾 Storing in ChromaDB...")
    client = vs.get_client(cfg.vector_store)
    collection = vs.get_or_create_collection(client, cfg.vector_store.collection_name)
    added = vs.add_chunks(collection, embedded, cfg.vector_store.batch_size)

    print(f"\n✅ Ingestion complete! ({added} chunks stored)")
    return added


async def _ask(
    pipeline: ChatPipeline,
    query: str,
    history: list[ChatMessage],
    persona: Persona,
) -> None:
    history.append(ChatMessage(role="user", content=query))
    reply = await pipeline.handle(query, history[:-1], persona=persona)

    print("\nAssistant:")
    async for text in reply.stream:
        print(text, end="", flush=True)
    print("\n")

    if reply.message is not None:
        history.append(ChatMessage(role="assistant", content=reply.message.content))
        attach_citations(history, reply.citations)
    for citation in reply.citations:
        print(f"  📎 {citation.url}")


def chat(persona: Persona = Persona.DEFAULT, config: AppConfig | None = None) -> None:
    """Start an interactive chat session.

    Each message runs through the full pipeline; answers are streamed to
    stdout and verified references are listed after each answer. Exits on
    'quit', 'exit', 'q', EOF, or KeyboardInterrupt.

    Args:
        persona: Answer tone for in-scope questions.
        config: Application configuration. Uses defaults if not provided.
    """
    cfg = config or AppConfig()
    cfg.require_credentials()
    pipeline = build_pipeline(cfg)
    history: list[ChatMessage] = []

    print(f"\n💬 Support Chat ({persona.value} persona)")
    print(f"🤖 Using Ollama model: {cfg.llm.model}")
    print("\nType your question (or 'quit' to exit):\n")

    loop = asyncio.new_event_loop()
    try:
        while True:
            try:
                query = input("You: ").strip()
            except (EOFError, KeyboardInterrupt):
                print("\nGoodbye!")
                break

            if not query:
                continue
            if query.lower() in ("quit", "exit", "q"):
                print("Goodbye!")
                break

            try:
                loop.run_until_complete(_ask(pipeline, query, history, persona))
            except SupportChatError as exc:
                logger.error("Chat turn failed: %s", exc)
                history.pop()
                print(f"\nAssistant:\n{exc.public_message}\n")
    finally:
        loop.close()


def serve(host: str = "127.0.0.1", port: int = 8000) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    uvicorn.run("support_chat.web:app", host=host, port=port)


def main() -> None:
    """CLI entry point — parse arguments and dispatch to a subcommand."""
    parser = argparse.ArgumentParser(
        description="Support Chat — retrieval-augmented answers over support documents",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve
    serve_p = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
    serve_p.add_argument("--port", type=int, default=8000, help="Bind port")

    # ingest
    ingest_p = subparsers.add_parser("ingest", help="Embed and store chunk records")
    ingest_p.add_argument(
        "--file", type=str, required=True, help="JSON Lines file of chunk records"
    )

    # chat
    chat_p = subparsers.add_parser("chat", help="Start interactive chat")
    chat_p.add_argument(
        "--persona",
        type=str,
        choices=[p.value for p in Persona],
        default=Persona.DEFAULT.value,
        help="Answer persona",
    )

    args = parser.parse_args()
    _setup_logging(args.verbose)

    if args.command == "serve":
        serve(args.host, args.port)
    elif args.command == "ingest":
        ingest(args.file)
    elif args.command == "chat":
        chat(Persona(args.persona))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
