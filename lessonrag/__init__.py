"""Lesson retrieval core: chunk, embed, store and search ingested documents."""
from lessonrag.errors import (
    CorruptIndexSnapshotError,
    ErrorKind,
    IndexNotReadyError,
    IngestResult,
    LessonRagError,
    LoadResult,
)
from lessonrag.rag.service import RetrievalResult, RetrievalService

__version__ = "0.1.0"

__all__ = [
    "CorruptIndexSnapshotError",
    "ErrorKind",
    "IndexNotReadyError",
    "IngestResult",
    "LessonRagError",
    "LoadResult",
    "RetrievalResult",
    "RetrievalService",
]
