"""Pytest configuration and fixtures for unit tests."""
import pytest

from lessonrag.db import InMemoryChunkStore, SQLiteChunkStore
from lessonrag.rag.chunker import TextChunker
from lessonrag.rag.embedder import HashingEmbedder
from lessonrag.rag.snapshot import FileSnapshotStorage, InMemorySnapshotStorage
from lessonrag.rag.service import RetrievalService
from lessonrag.rag.store_vectors import EmbeddingIndex


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def chunker():
    return TextChunker(chunk_size=500, boundary_lookback=100)


@pytest.fixture
def memory_storage():
    return InMemorySnapshotStorage()


@pytest.fixture
def ready_index(memory_storage):
    """An empty, loaded index backed by memory."""
    index = EmbeddingIndex(memory_storage, strict=False)
    index.load()
    return index


@pytest.fixture
def memory_service(chunker, embedder, ready_index):
    """A loaded service that never touches disk."""
    return RetrievalService(
        chunker=chunker,
        embedder=embedder,
        chunk_store=InMemoryChunkStore(),
        index=ready_index,
    )


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def make_disk_service():
    """Factory building a service on SQLite and a snapshot file, as the CLI does."""

    def _make(data_dir, strict=False):
        embedder = HashingEmbedder()
        return RetrievalService(
            chunker=TextChunker(chunk_size=500, boundary_lookback=100),
            embedder=embedder,
            chunk_store=SQLiteChunkStore(data_dir / "chunks.sqlite"),
            index=EmbeddingIndex(
                FileSnapshotStorage(data_dir / "embeddings.json"),
                dimension=embedder.dimension,
                strict=strict,
            ),
        )

    return _make


@pytest.fixture
def disk_service(data_dir, make_disk_service):
    service = make_disk_service(data_dir)
    service.load()
    return service
