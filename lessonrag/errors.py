"""Error kinds and result values for the retrieval core.

Ingestion and index loading report failures as result values carrying an
ErrorKind, so the owning service decides what to surface. Exceptions are
reserved for misuse (calling into an index that is not loaded) and for the
strict startup mode.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    """Failure categories reported by the retrieval core."""

    EMPTY_DOCUMENT = "empty_document"
    CORRUPT_INDEX_SNAPSHOT = "corrupt_index_snapshot"
    DIMENSION_MISMATCH = "dimension_mismatch"
    SNAPSHOT_WRITE_FAILED = "snapshot_write_failed"
    CHUNK_STORE_FAILED = "chunk_store_failed"


@dataclass
class IngestResult:
    """Outcome of ingesting one document."""

    success: bool
    source_file: str
    chunks_created: int = 0
    chunk_ids: List[str] = field(default_factory=list)
    error: Optional[ErrorKind] = None
    message: Optional[str] = None


@dataclass
class LoadResult:
    """Outcome of loading the embeddings snapshot."""

    vector_count: int
    snapshot_found: bool
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @property
    def recovered(self) -> bool:
        """True when a malformed snapshot was discarded."""
        return self.error is ErrorKind.CORRUPT_INDEX_SNAPSHOT


class LessonRagError(Exception):
    """Base class for retrieval core exceptions."""


class IndexNotReadyError(LessonRagError, RuntimeError):
    """Raised when the embedding index is used before load() completed."""


class CorruptIndexSnapshotError(LessonRagError):
    """Raised in strict mode when the persisted snapshot cannot be read."""
