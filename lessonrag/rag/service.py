"""Retrieval service: document ingestion and query-time search.

Orchestrates:
- Text chunking
- Embedding generation
- Chunk and vector storage
- Similarity search and content resolution
- Context formatting for a downstream prompt
"""
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from lessonrag import config
from lessonrag.db import ChunkStore, SQLiteChunkStore
from lessonrag.errors import ErrorKind, IngestResult, LoadResult
from lessonrag.rag.chunker import TextChunker
from lessonrag.rag.embedder import EmbeddingGenerator, HashingEmbedder
from lessonrag.rag.snapshot import FileSnapshotStorage
from lessonrag.rag.store_vectors import EmbeddingEntry, EmbeddingIndex

logger = structlog.get_logger()

CONTEXT_SEPARATOR = "\n\n"


@dataclass
class RetrievalResult:
    """A single retrieved chunk with provenance."""

    chunk_id: str
    content: str
    source_file: str
    chunk_index: int
    score: float

    @property
    def source(self) -> str:
        """Get a formatted source string for display."""
        return f"{self.source_file}#{self.chunk_index}"


class RetrievalService:
    """Ingests documents and answers top-k similarity queries."""

    def __init__(
        self,
        chunker: TextChunker,
        embedder: EmbeddingGenerator,
        chunk_store: ChunkStore,
        index: EmbeddingIndex,
    ):
        self.chunker = chunker
        self.embedder = embedder
        self.chunk_store = chunk_store
        self.index = index

        logger.info(
            "retrieval_service_initialized",
            chunk_size=chunker.chunk_size,
            embedding_dimension=embedder.dimension,
        )

    @classmethod
    def from_config(
        cls,
        data_dir: Optional[Path] = None,
        strict: Optional[bool] = None,
    ) -> "RetrievalService":
        """Build a service on SQLite and a snapshot file under data_dir.

        Args:
            data_dir: Directory for persisted data (default from config)
            strict: Fail load() on a malformed snapshot (default from config)
        """
        data_dir = Path(data_dir) if data_dir is not None else config.DATA_DIR
        embedder = HashingEmbedder()

        return cls(
            chunker=TextChunker(),
            embedder=embedder,
            chunk_store=SQLiteChunkStore(data_dir / config.DB_FILENAME),
            index=EmbeddingIndex(
                FileSnapshotStorage(data_dir / config.EMBEDDINGS_FILENAME),
                dimension=embedder.dimension,
                strict=strict,
            ),
        )

    def load(self) -> LoadResult:
        """Load the embedding index; must run before ingest or search."""
        result = self.index.load()
        if result.recovered:
            logger.warning(
                "chunks_unsearchable_until_reingested",
                chunk_count=self.chunk_store.count(),
            )
        return result

    def ingest(self, document_text: str, source_file: str) -> IngestResult:
        """Split, embed and store a document, then persist the index once.

        Args:
            document_text: Plain text extracted from the document
            source_file: Name of the document

        Returns:
            IngestResult; on failure its error carries the ErrorKind

        Raises:
            IndexNotReadyError: If load() has not completed
        """
        if not document_text or not document_text.strip():
            logger.warning("empty_document_rejected", source_file=source_file)
            return IngestResult(
                success=False,
                source_file=source_file,
                error=ErrorKind.EMPTY_DOCUMENT,
                message="Document contains no extractable text",
            )

        self.index.require_ready()

        logger.info(
            "ingesting_document",
            source_file=source_file,
            text_length=len(document_text),
        )

        chunks = self.chunker.split(document_text, source_file)
        total = len(chunks)

        chunk_ids: List[str] = []
        store_error = None

        for processed, chunk in enumerate(chunks, 1):
            vector = self.embedder.embed(chunk.content)
            try:
                self.chunk_store.insert(chunk)
            except (sqlite3.Error, OSError) as e:
                logger.error(
                    "chunk_store_failed",
                    source_file=source_file,
                    chunk_index=chunk.chunk_index,
                    chunks_created=len(chunk_ids),
                    error=str(e),
                )
                store_error = f"Failed to store chunk {chunk.chunk_index}: {e}"
                break

            self.index.append([EmbeddingEntry(chunk_id=chunk.id, vector=vector)])
            chunk_ids.append(chunk.id)

            if processed == 1 or processed % 10 == 0:
                logger.debug(
                    "chunk_processed",
                    source_file=source_file,
                    current=processed,
                    total=total,
                )

        created = len(chunk_ids)

        # Chunks stored before a store failure are still persisted.
        try:
            self.index.persist()
        except OSError as e:
            logger.error(
                "snapshot_write_failed",
                source_file=source_file,
                chunks_created=created,
                error=str(e),
            )
            if store_error is None:
                return IngestResult(
                    success=False,
                    source_file=source_file,
                    chunks_created=created,
                    chunk_ids=chunk_ids,
                    error=ErrorKind.SNAPSHOT_WRITE_FAILED,
                    message=f"Failed to persist embeddings: {e}",
                )

        if store_error is not None:
            return IngestResult(
                success=False,
                source_file=source_file,
                chunks_created=created,
                chunk_ids=chunk_ids,
                error=ErrorKind.CHUNK_STORE_FAILED,
                message=store_error,
            )

        logger.info("document_ingested", source_file=source_file, chunks_created=created)

        return IngestResult(
            success=True,
            source_file=source_file,
            chunks_created=created,
            chunk_ids=chunk_ids,
        )

    def retrieve(
        self, query: str, top_k: Optional[int] = None
    ) -> List[RetrievalResult]:
        """Retrieve the most similar chunks for a query.

        Args:
            query: User query text
            top_k: Number of results to return (default from config)

        Returns:
            List of RetrievalResult objects, best first
        """
        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return []

        top_k = config.RETRIEVAL_TOP_K if top_k is None else top_k

        query_vector = self.embedder.embed(query)
        hits = self.index.search_scored(query_vector, top_k)

        results = []
        for chunk_id, score in hits:
            chunk = self.chunk_store.get_by_id(chunk_id)
            if chunk is None:
                logger.warning("indexed_chunk_not_found", chunk_id=chunk_id)
                continue

            results.append(
                RetrievalResult(
                    chunk_id=chunk.id,
                    content=chunk.content,
                    source_file=chunk.source_file,
                    chunk_index=chunk.chunk_index,
                    score=score,
                )
            )

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            top_k=top_k,
            results_returned=len(results),
            top_score=results[0].score if results else None,
        )

        return results

    def search(self, query: str, top_k: int = 3) -> List[str]:
        """Return the contents of the top_k chunks most similar to query."""
        query_vector = self.embedder.embed(query)
        contents = []
        for chunk_id in self.index.search(query_vector, top_k):
            chunk = self.chunk_store.get_by_id(chunk_id)
            if chunk is None:
                logger.warning("indexed_chunk_not_found", chunk_id=chunk_id)
                continue
            contents.append(chunk.content)
        return contents

    def retrieve_context(
        self,
        query: str,
        top_k: Optional[int] = None,
        max_chars: Optional[int] = None,
    ) -> str:
        """Retrieve chunks and join them into a prompt-ready context block.

        Args:
            query: User query text
            top_k: Number of chunks to retrieve (default from config)
            max_chars: Maximum length of the returned string (default from config)

        Returns:
            Chunk contents separated by blank lines, or "" if nothing matched
        """
        max_chars = config.MAX_CONTEXT_CHARS if max_chars is None else max_chars
        results = self.retrieve(query, top_k=top_k)

        parts: List[str] = []
        total = 0

        for result in results:
            extra = (len(CONTEXT_SEPARATOR) if parts else 0) + len(result.content)
            if total + extra > max_chars:
                # Truncate the last chunk to the remaining budget
                remaining = max_chars - total - (len(CONTEXT_SEPARATOR) if parts else 0)
                if remaining > 0:
                    parts.append(result.content[:remaining])
                break
            parts.append(result.content)
            total += extra

        context = CONTEXT_SEPARATOR.join(parts)

        logger.debug("context_formatted", num_chunks=len(parts), total_chars=len(context))

        return context

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the index and chunk store."""
        stats = self.index.get_stats()
        stats["chunk_count"] = self.chunk_store.count()
        return stats
