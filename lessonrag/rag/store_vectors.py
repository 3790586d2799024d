"""In-memory embedding index with a persisted snapshot.

Handles:
- Snapshot loading with corrupt-file fallback (or strict failure)
- Append-only entry collection
- Whole-snapshot persistence under a lock
- Exact cosine-similarity top-k search with stable tie-breaking
"""
import json
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Optional, Tuple

import numpy as np
import structlog
from pydantic import BaseModel, Field

from lessonrag import config
from lessonrag.errors import (
    CorruptIndexSnapshotError,
    ErrorKind,
    IndexNotReadyError,
    LoadResult,
)
from lessonrag.rag.embedder import EMBEDDING_DIMENSION
from lessonrag.rag.snapshot import SnapshotStorage

logger = structlog.get_logger()

FLOAT32_MAX = float(np.finfo(np.float32).max)


class IndexState(str, Enum):
    """Lifecycle of the embedding index."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"


@dataclass(frozen=True, eq=False)
class EmbeddingEntry:
    """Vector for one stored chunk."""

    chunk_id: str
    vector: np.ndarray


class EmbeddingRecord(BaseModel):
    """On-disk shape of one snapshot entry."""

    chunk_id: str = Field(min_length=1)
    vector: List[Annotated[float, Field(allow_inf_nan=False)]]


class EmbeddingIndex:
    """Append-only collection of chunk vectors searched by cosine similarity."""

    def __init__(
        self,
        storage: SnapshotStorage,
        dimension: int = EMBEDDING_DIMENSION,
        strict: Optional[bool] = None,
    ):
        """Initialize the index.

        Args:
            storage: Snapshot backend used by load() and persist()
            dimension: Expected vector dimension
            strict: Raise on a malformed snapshot instead of starting empty
                (default from config)
        """
        self.storage = storage
        self.dimension = dimension
        self.strict = config.STRICT_INDEX_LOAD if strict is None else strict

        self._state = IndexState.UNLOADED
        self._chunk_ids: List[str] = []
        self._vectors: List[np.ndarray] = []

        # Rows of _matrix mirror the first _matrix.shape[0] entries
        self._matrix: Optional[np.ndarray] = None
        self._norms: Optional[np.ndarray] = None

        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()

    @property
    def state(self) -> IndexState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is IndexState.READY

    def __len__(self) -> int:
        return len(self._chunk_ids)

    def require_ready(self) -> None:
        if self._state is not IndexState.READY:
            raise IndexNotReadyError(
                f"Embedding index is {self._state.value}. Call load() first."
            )

    def load(self) -> LoadResult:
        """Load the persisted snapshot into memory.

        A missing snapshot yields an empty index. A malformed one is discarded
        with a warning (chunks already in the chunk store become unsearchable
        until re-ingested), unless the index is strict.

        Returns:
            LoadResult describing what was loaded

        Raises:
            CorruptIndexSnapshotError: In strict mode, if the snapshot is
                unreadable or malformed
        """
        self._state = IndexState.LOADING

        try:
            data = self.storage.read()
        except OSError as e:
            return self._recover_from_corrupt(e, snapshot_found=True)

        if data is None:
            self._reset([])
            self._state = IndexState.READY
            logger.info("no_snapshot_found_initializing_empty")
            return LoadResult(vector_count=0, snapshot_found=False)

        try:
            entries = self._decode(data)
        except ValueError as e:
            return self._recover_from_corrupt(e, snapshot_found=True)

        self._reset(entries)
        self._state = IndexState.READY

        logger.info("embedding_index_loaded", vector_count=len(entries))
        return LoadResult(vector_count=len(entries), snapshot_found=True)

    def _recover_from_corrupt(self, error: Exception, snapshot_found: bool) -> LoadResult:
        if self.strict:
            self._state = IndexState.UNLOADED
            logger.error("embedding_snapshot_corrupt", error=str(error), strict=True)
            raise CorruptIndexSnapshotError(
                f"Embeddings snapshot is unreadable: {error}"
            ) from error

        logger.warning(
            "embedding_snapshot_corrupt_starting_empty",
            error=str(error),
            error_type=type(error).__name__,
        )
        self._reset([])
        self._state = IndexState.READY
        return LoadResult(
            vector_count=0,
            snapshot_found=snapshot_found,
            error=ErrorKind.CORRUPT_INDEX_SNAPSHOT,
            message=str(error),
        )

    def _decode(self, data: bytes) -> List[EmbeddingEntry]:
        """Parse snapshot bytes into entries.

        Raises:
            ValueError: If the payload is not a list of valid records of the
                expected dimension
        """
        payload = json.loads(data.decode("utf-8"))
        if not isinstance(payload, list):
            raise ValueError(
                f"Snapshot must be a list of records, got {type(payload).__name__}"
            )

        entries = []
        for position, item in enumerate(payload):
            record = EmbeddingRecord.model_validate(item)
            if len(record.vector) != self.dimension:
                raise ValueError(
                    f"Record {position} ({record.chunk_id}) has dimension "
                    f"{len(record.vector)}, expected {self.dimension}"
                )
            values = np.asarray(record.vector, dtype=np.float64)
            if values.size and np.abs(values).max() > FLOAT32_MAX:
                raise ValueError(
                    f"Record {position} ({record.chunk_id}) overflows float32"
                )
            entries.append(
                EmbeddingEntry(
                    chunk_id=record.chunk_id,
                    vector=values.astype(np.float32),
                )
            )
        return entries

    def _encode(self, chunk_ids: List[str], vectors: List[np.ndarray]) -> bytes:
        records = [
            {"chunk_id": chunk_id, "vector": vector.tolist()}
            for chunk_id, vector in zip(chunk_ids, vectors)
        ]
        return json.dumps(records).encode("utf-8")

    def _reset(self, entries: List[EmbeddingEntry]) -> None:
        with self._lock:
            self._chunk_ids = [e.chunk_id for e in entries]
            self._vectors = [e.vector for e in entries]
            self._matrix = None
            self._norms = None

    def append(self, entries: Iterable[EmbeddingEntry]) -> None:
        """Add entries to the in-memory collection. Does not persist.

        Raises:
            IndexNotReadyError: If load() has not completed
            ValueError: If a vector has the wrong dimension
        """
        self.require_ready()

        pending = []
        for entry in entries:
            vector = np.asarray(entry.vector, dtype=np.float32)
            if vector.shape != (self.dimension,):
                raise ValueError(
                    f"Embedding dimension mismatch: expected {self.dimension}, "
                    f"got {vector.shape}"
                )
            pending.append((entry.chunk_id, vector))

        with self._lock:
            for chunk_id, vector in pending:
                self._chunk_ids.append(chunk_id)
                self._vectors.append(vector)

        logger.debug("vectors_appended", count=len(pending), total_vectors=len(self))

    def persist(self) -> None:
        """Write every entry to the snapshot storage.

        Concurrent callers are serialized; each write contains at least the
        entries appended before the call.

        Raises:
            IndexNotReadyError: If load() has not completed
            OSError: If the storage backend fails to write
        """
        self.require_ready()

        with self._persist_lock:
            with self._lock:
                chunk_ids = list(self._chunk_ids)
                vectors = list(self._vectors)

            self.storage.write(self._encode(chunk_ids, vectors))

        logger.info("embedding_index_persisted", vector_count=len(chunk_ids))

    def _view(self) -> Tuple[np.ndarray, np.ndarray]:
        """Return (matrix, row norms) covering every entry appended so far."""
        with self._lock:
            count = len(self._vectors)
            if self._matrix is None or self._matrix.shape[0] != count:
                if count:
                    self._matrix = np.vstack(self._vectors).astype(np.float64)
                else:
                    self._matrix = np.zeros((0, self.dimension), dtype=np.float64)
                self._norms = np.linalg.norm(self._matrix, axis=1)
            return self._matrix, self._norms

    def search_scored(
        self, query_vector: np.ndarray, top_k: int
    ) -> List[Tuple[str, float]]:
        """Rank stored vectors against a query vector.

        Args:
            query_vector: Query embedding
            top_k: Maximum number of results

        Returns:
            (chunk_id, similarity) pairs, best first; ties keep insertion order

        Raises:
            IndexNotReadyError: If load() has not completed
        """
        self.require_ready()

        if top_k <= 0:
            return []

        matrix, norms = self._view()
        if matrix.shape[0] == 0:
            return []

        query = np.asarray(query_vector, dtype=np.float64).ravel()

        if query.shape[0] != self.dimension:
            logger.warning(
                "query_dimension_mismatch",
                expected=self.dimension,
                got=int(query.shape[0]),
                error_kind=ErrorKind.DIMENSION_MISMATCH.value,
            )
            scores = np.zeros(matrix.shape[0], dtype=np.float64)
        else:
            denominators = norms * float(np.linalg.norm(query))
            dots = matrix @ query
            scores = np.divide(
                dots,
                denominators,
                out=np.zeros_like(dots),
                where=denominators != 0,
            )

        order = np.argsort(-scores, kind="stable")[:top_k]
        results = [(self._chunk_ids[i], float(scores[i])) for i in order]

        logger.debug(
            "vector_search_completed",
            top_k=top_k,
            candidates=int(matrix.shape[0]),
            results_found=len(results),
        )

        return results

    def search(self, query_vector: np.ndarray, top_k: int) -> List[str]:
        """Return the chunk ids of the top_k most similar vectors."""
        return [chunk_id for chunk_id, _ in self.search_scored(query_vector, top_k)]

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the index."""
        return {
            "state": self._state.value,
            "vector_count": len(self),
            "dimension": self.dimension,
            "strict": self.strict,
        }
