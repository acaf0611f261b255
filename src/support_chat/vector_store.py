"""ChromaDB access: pooled clients, ingestion helpers and similarity search."""

import asyncio
import logging
import queue
import threading
from contextlib import contextmanager
from typing import Callable, Iterator

import chromadb

from support_chat.config import VectorStoreConfig
from support_chat.errors import StoreUnavailable
from support_chat.models import DocumentChunk, SearchResult

logger = logging.getLogger(__name__)


def get_client(config: VectorStoreConfig | None = None):
    """Return a ChromaDB client.

    An HTTP client is used when ``config.host`` is set, otherwise a
    persistent client on ``config.db_path``.

    Args:
        config: Vector store settings. Uses defaults if not provided.

    Returns:
        A connected ChromaDB client.
    """
    cfg = config or VectorStoreConfig()
    if cfg.host:
        return chromadb.HttpClient(host=cfg.host, port=cfg.port)
    return chromadb.PersistentClient(path=cfg.db_path)


def get_or_create_collection(client, name: str) -> chromadb.Collection:
    """Get or create a collection with cosine distance.

    Vectors are precomputed by the embedding client, so the collection
    carries no embedding function of its own.
    """
    return client.get_or_create_collection(
        name=name,
        embedding_function=None,
        metadata={"hnsw:space": "cosine"},
    )


def add_chunks(
    collection: chromadb.Collection,
    chunks: list[DocumentChunk],
    batch_size: int = 100,
) -> int:
    """Add embedded chunks to the collection in batches.

    Args:
        collection: The target ChromaDB collection.
        chunks: Chunks to add; each must carry an embedding.
        batch_size: Maximum number of chunks per ChromaDB call.

    Returns:
        Number of chunks added (0 if the list is empty).

    Raises:
        ValueError: If a chunk has no embedding.
    """
    if not chunks:
        return 0

    missing = [c.id for c in chunks if not c.embedding]
    if missing:
        raise ValueError(f"chunks without embeddings: {missing[:5]}")

    for start in range(0, len(chunks), batch_size):
        batch = chunks[start : start + batch_size]
        collection.upsert(
            ids=[c.id for c in batch],
            embeddings=[list(c.embedding) for c in batch],
            documents=[c.content for c in batch],
            metadatas=[
                {"title": c.title, "chunk_id": c.chunk_id, "s3_url": c.source_url}
                for c in batch
            ],
        )

    logger.info("Added %d chunks to '%s'.", len(chunks), collection.name)
    return len(chunks)


def _parse_results(results: dict, top_k: int) -> list[SearchResult]:
    """Convert a raw ChromaDB query result into ranked SearchResults.

    Cosine distances become similarities (1 - distance). Rows without an
    embedding are dropped. The sort is stable, so ties keep store order.
    """
    ids = (results.get("ids") or [[]])[0]
    documents = (results.get("documents") or [[]])[0]
    metadatas = (results.get("metadatas") or [[]])[0]
    distances = (results.get("distances") or [[]])[0]
    raw_embeddings = results.get("embeddings")
    embeddings = raw_embeddings[0] if raw_embeddings is not None else [None] * len(ids)

    found: list[SearchResult] = []
    for chunk_id, doc, meta, dist, emb in zip(
        ids, documents, metadatas, distances, embeddings
    ):
        if emb is None or len(emb) == 0:
            continue
        meta = meta or {}
        chunk = DocumentChunk(
            id=chunk_id,
            content=doc or "",
            title=meta.get("title", ""),
            chunk_id=str(meta.get("chunk_id", "")),
            source_url=meta.get("s3_url", ""),
            embedding=[float(v) for v in emb],
        )
        found.append(SearchResult(chunk=chunk, similarity=round(1 - float(dist), 6)))

    found.sort(key=lambda r: r.similarity, reverse=True)
    return found[:top_k]


class ConnectionPool:
    """Bounded pool of vector store clients.

    ``acquire`` always releases its slot, on success and on error. A client
    that raised while checked out is discarded instead of being reused.
    """

    def __init__(
        self,
        factory: Callable[[], object],
        size: int = 4,
        acquire_timeout_s: float = 30.0,
    ) -> None:
        self._factory = factory
        self._idle: queue.LifoQueue = queue.LifoQueue()
        self._slots = threading.BoundedSemaphore(size)
        self._acquire_timeout_s = acquire_timeout_s
        self._lock = threading.Lock()
        self._in_use = 0

    @property
    def in_use(self) -> int:
        return self._in_use

    @contextmanager
    def acquire(self) -> Iterator[object]:
        if not self._slots.acquire(timeout=self._acquire_timeout_s):
            raise StoreUnavailable("timed out waiting for a store connection")
        with self._lock:
            self._in_use += 1
        conn = None
        healthy = False
        try:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                conn = self._factory()
            yield conn
            healthy = True
        finally:
            if conn is not None and healthy:
                self._idle.put(conn)
            with self._lock:
                self._in_use -= 1
            self._slots.release()


class VectorStore:
    """Similarity search over a named chunk collection, with retries."""

    def __init__(
        self,
        pool: ConnectionPool,
        config: VectorStoreConfig | None = None,
    ) -> None:
        self._pool = pool
        self._config = config or VectorStoreConfig()

    @classmethod
    def from_config(cls, config: VectorStoreConfig) -> "VectorStore":
        pool = ConnectionPool(lambda: get_client(config), size=config.pool_size)
        return cls(pool, config)

    def _query_once(
        self, collection: str, query_vector: list[float], top_k: int
    ) -> list[SearchResult]:
        with self._pool.acquire() as client:
            coll = get_or_create_collection(client, collection)
            results = coll.query(
                query_embeddings=[query_vector],
                n_results=top_k,
                include=["documents", "metadatas", "distances", "embeddings"],
            )
        return _parse_results(results, top_k)

    async def search(
        self,
        query_vector: list[float],
        collection: str | None = None,
        top_k: int | None = None,
    ) -> list[SearchResult]:
        """Return at most ``top_k`` chunks ordered by descending similarity.

        Args:
            query_vector: Embedding of the (rewritten) query.
            collection: Collection name. Defaults to the configured one.
            top_k: Result limit. Defaults to ``VectorStoreConfig.top_k``.

        Raises:
            ValueError: If ``top_k`` is below 1.
            StoreUnavailable: After ``max_retries`` failed attempts.
        """
        name = collection or self._config.collection_name
        limit = top_k if top_k is not None else self._config.top_k
        if limit < 1:
            raise ValueError(f"top_k must be at least 1, got {limit}")
        attempts = self._config.max_retries
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                results = await asyncio.to_thread(
                    self._query_once, name, query_vector, limit
                )
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Vector search attempt %d/%d on '%s' failed: %s",
                    attempt,
                    attempts,
                    name,
                    exc,
                )
                if attempt < attempts:
                    await asyncio.sleep(self._config.retry_delay_s)
                continue

            logger.info(
                "Found %d documents in '%s': %s",
                len(results),
                name,
                [r.title for r in results],
            )
            return results

        logger.error("All %d vector search attempts failed", attempts)
        raise StoreUnavailable(
            f"vector store unavailable after {attempts} attempts"
        ) from last_error

    def _documents_once(self, collection: str) -> list[dict]:
        with self._pool.acquire() as client:
            coll = get_or_create_collection(client, collection)
            result = coll.get(include=["metadatas"])
        return list_documents(result)

    async def documents(self, collection: str | None = None) -> list[dict]:
        """List the distinct source documents in a collection."""
        name = collection or self._config.collection_name
        try:
            return await asyncio.to_thread(self._documents_once, name)
        except StoreUnavailable:
            raise
        except Exception as exc:
            logger.error("Listing documents in '%s' failed: %s", name, exc)
            raise StoreUnavailable(str(exc)) from exc

    def _count_once(self, collection: str) -> int:
        with self._pool.acquire() as client:
            return get_or_create_collection(client, collection).count()

    async def count(self, collection: str | None = None) -> int:
        name = collection or self._config.collection_name
        return await asyncio.to_thread(self._count_once, name)


def list_documents(result: dict) -> list[dict]:
    """Group a ``collection.get`` result by source URL.

    Chunks without a source URL are skipped. Order follows first
    appearance in the store.
    """
    documents: dict[str, dict] = {}
    for doc_id, meta in zip(result.get("ids") or [], result.get("metadatas") or []):
        meta = meta or {}
        url = meta.get("s3_url") or ""
        if not url:
            continue
        entry = documents.setdefault(
            url,
            {"id": doc_id, "name": meta.get("title") or "Untitled", "url": url, "chunk_count": 0},
        )
        entry["chunk_count"] += 1
    return list(documents.values())
