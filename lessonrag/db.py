"""Chunk storage for the retrieval core.

SQLite database for storing text chunks keyed by chunk id. Records are
insert-only: there is no update and no delete. Every insert is committed with
synchronous=FULL before returning, so a chunk survives a crash right after the
call.
"""
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Protocol

import structlog

from lessonrag import config
from lessonrag.rag.chunker import TextChunk

logger = structlog.get_logger()


class ChunkStore(Protocol):
    """Durable keyed store of chunk records."""

    def insert(self, chunk: TextChunk) -> None:
        ...

    def get_by_id(self, chunk_id: str) -> Optional[TextChunk]:
        ...

    def count(self) -> int:
        ...


def _row_to_chunk(row: sqlite3.Row) -> TextChunk:
    return TextChunk(
        id=row["id"],
        content=row["content"],
        source_file=row["source_file"],
        chunk_index=row["chunk_index"],
        char_start=row["char_start"],
        char_end=row["char_end"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class SQLiteChunkStore:
    """Chunk store backed by a SQLite file."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the store and create its schema if needed.

        Args:
            db_path: Path to the SQLite file (default from config)
        """
        self.db_path = Path(db_path) if db_path is not None else config.DB_PATH
        self.init_schema()

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection to the SQLite database.

        Returns:
            sqlite3.Connection with row_factory set to sqlite3.Row
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=FULL")
        return conn

    def init_schema(self) -> None:
        """Create the chunks table if it doesn't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS chunks (
                    id TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    source_file TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    char_start INTEGER NOT NULL,
                    char_end INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            conn.commit()
            logger.info("chunk_store_initialized", db_path=str(self.db_path))

        except Exception as e:
            conn.rollback()
            logger.error("chunk_store_init_failed", error=str(e))
            raise
        finally:
            conn.close()

    def insert(self, chunk: TextChunk) -> None:
        """Insert a chunk and commit it.

        Args:
            chunk: The chunk to store

        Raises:
            sqlite3.IntegrityError: If a chunk with the same id already exists
        """
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                INSERT INTO chunks (
                    id, content, source_file, chunk_index,
                    char_start, char_end, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                chunk.id,
                chunk.content,
                chunk.source_file,
                chunk.chunk_index,
                chunk.char_start,
                chunk.char_end,
                chunk.created_at.isoformat(),
            ))

            conn.commit()

        except Exception as e:
            conn.rollback()
            logger.error(
                "chunk_insert_failed",
                error=str(e),
                chunk_id=chunk.id,
                source_file=chunk.source_file,
            )
            raise
        finally:
            conn.close()

    def get_by_id(self, chunk_id: str) -> Optional[TextChunk]:
        """Look up a chunk by id.

        Returns:
            The chunk, or None if no chunk has that id
        """
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                SELECT
                    id, content, source_file, chunk_index,
                    char_start, char_end, created_at
                FROM chunks
                WHERE id = ?
            """, (chunk_id,))

            row = cursor.fetchone()
            return _row_to_chunk(row) if row else None

        except Exception as e:
            logger.error("chunk_retrieval_failed", error=str(e), chunk_id=chunk_id)
            raise
        finally:
            conn.close()

    def count(self) -> int:
        """Get the total number of stored chunks."""
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("SELECT COUNT(*) FROM chunks")
            return cursor.fetchone()[0]

        except Exception as e:
            logger.error("chunk_count_failed", error=str(e))
            raise
        finally:
            conn.close()


class InMemoryChunkStore:
    """Dictionary-backed chunk store for tests."""

    def __init__(self):
        self._chunks: Dict[str, TextChunk] = {}
        self._lock = threading.Lock()

    def insert(self, chunk: TextChunk) -> None:
        with self._lock:
            if chunk.id in self._chunks:
                raise KeyError(f"Chunk {chunk.id} already exists")
            self._chunks[chunk.id] = chunk

    def get_by_id(self, chunk_id: str) -> Optional[TextChunk]:
        with self._lock:
            return self._chunks.get(chunk_id)

    def count(self) -> int:
        with self._lock:
            return len(self._chunks)
