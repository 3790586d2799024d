"""Text chunking for the retrieval pipeline.

Implements character-based chunking to avoid tokenizer dependencies. Chunks
are contiguous, non-overlapping windows that preferentially end at a sentence
or paragraph boundary.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import structlog

from lessonrag import config

logger = structlog.get_logger()

BOUNDARY_CHARS = frozenset(".\n!?")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TextChunk:
    """A trimmed slice of a document, the unit of retrieval."""

    content: str
    source_file: str
    chunk_index: int
    char_start: int = 0
    char_end: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=_utcnow)


def normalize_newlines(text: str) -> str:
    """Collapse CRLF and lone CR line endings to LF."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


class TextChunker:
    """Character-based text chunker that cuts at sentence boundaries."""

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        boundary_lookback: Optional[int] = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Window size in characters (default from config)
            boundary_lookback: How far back from the window end to look for a
                boundary character (default from config)
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.boundary_lookback = (
            config.CHUNK_BOUNDARY_LOOKBACK
            if boundary_lookback is None
            else boundary_lookback
        )

        # Validate parameters
        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.boundary_lookback < 0:
            raise ValueError(
                f"Boundary lookback must not be negative, got {self.boundary_lookback}"
            )

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            boundary_lookback=self.boundary_lookback,
        )

    def split(self, text: str, source_file: str) -> List[TextChunk]:
        """Split text into trimmed, non-empty chunks.

        Args:
            text: Document text
            source_file: Name of the document the text came from

        Returns:
            List of TextChunk objects with chunk_index 0..n-1
        """
        if not text or not text.strip():
            return []

        clean = normalize_newlines(text)
        text_length = len(clean)

        chunks: List[TextChunk] = []
        position = 0

        while position < text_length:
            end = min(position + self.chunk_size, text_length)

            # Only adjust when the window stops short of the end of the text
            if end < text_length:
                end = self._find_cut(clean, position, end)

            # Guarantee forward progress whatever the content
            if end <= position:
                end = position + 1

            content = clean[position:end].strip()
            if content:
                chunks.append(
                    TextChunk(
                        content=content,
                        source_file=source_file,
                        chunk_index=len(chunks),
                        char_start=position,
                        char_end=end,
                    )
                )

            position = end

        logger.info(
            "text_chunked",
            source_file=source_file,
            text_length=text_length,
            chunk_count=len(chunks),
        )

        return chunks

    def _find_cut(self, text: str, start: int, end: int) -> int:
        """Return the cut point for the window text[start:end].

        Scans backward over at most boundary_lookback characters ending at
        end - 1. A boundary at an index greater than start moves the cut to
        just after it; otherwise the window end is kept.
        """
        search_length = min(self.boundary_lookback, end - start)
        floor = end - search_length

        for i in range(end - 1, floor - 1, -1):
            if text[i] in BOUNDARY_CHARS:
                if i > start:
                    return i + 1
                break

        return end

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of TextChunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
        }


# Singleton instance for convenience
_chunker_instance: Optional[TextChunker] = None


def get_chunker() -> TextChunker:
    """Get a singleton text chunker instance configured from config."""
    global _chunker_instance
    if _chunker_instance is None:
        _chunker_instance = TextChunker()
    return _chunker_instance


def split_text(text: str, source_file: str) -> List[TextChunk]:
    """Split text using the default chunker (convenience function)."""
    return get_chunker().split(text, source_file)
