"""Feature-hashing embeddings for chunks and queries.

No learned model is involved: tokens and their character bigrams are hashed
into a fixed number of signed buckets and the result is L2-normalized. The
hash, bucket count and sign rules are a persistence contract. Vectors written
to the snapshot must stay comparable to freshly embedded queries, so any change
here requires re-ingesting the corpus.
"""
import math
import re
from typing import List, Optional, Protocol, Sequence

import numpy as np
import structlog

logger = structlog.get_logger()

EMBEDDING_DIMENSION = 256

SIGN_SUFFIX = "_sign"
UNIGRAM_WEIGHT = 1.0
BIGRAM_WEIGHT = 0.5

_SEPARATORS = " \t\n\r.,!?;:\"'()[]{}"
_SPLIT_RE = re.compile("[" + re.escape(_SEPARATORS) + "]+")

_HASH_SEED = 17
_HASH_MULTIPLIER = 31
_UINT32_MASK = 0xFFFFFFFF


class EmbeddingGenerator(Protocol):
    """Anything that maps text to a fixed-length vector."""

    dimension: int

    def embed(self, text: str) -> np.ndarray:
        ...


def tokenize(text: str) -> List[str]:
    """Lowercase text and split it on whitespace and punctuation."""
    return [t for t in _SPLIT_RE.split(text.lower()) if t]


def _code_units(s: str) -> List[int]:
    """Return the UTF-16 code units of s (surrogate pairs stay split)."""
    data = s.encode("utf-16-le", "surrogatepass")
    return np.frombuffer(data, dtype="<u2").tolist()


def stable_hash(units: Sequence[int]) -> int:
    """Polynomial string hash with signed 32-bit wraparound.

    Starts at 17 and folds each code unit in as acc * 31 + unit.
    """
    acc = _HASH_SEED
    for unit in units:
        acc = (acc * _HASH_MULTIPLIER + unit) & _UINT32_MASK
    if acc >= 0x80000000:
        acc -= 0x100000000
    return acc


def hash_text(s: str) -> int:
    """stable_hash over the UTF-16 code units of a string."""
    return stable_hash(_code_units(s))


class HashingEmbedder:
    """Deterministic bag-of-features embedder using the hashing trick."""

    def __init__(self, dimension: int = EMBEDDING_DIMENSION):
        if dimension <= 0:
            raise ValueError(f"Embedding dimension must be positive, got {dimension}")
        self.dimension = dimension
        self._sign_units = _code_units(SIGN_SUFFIX)

    def _add_feature(self, vector: np.ndarray, units: List[int], weight: float) -> None:
        bucket = abs(stable_hash(units)) % self.dimension
        sign_hash = stable_hash(units + self._sign_units)
        vector[bucket] += weight if sign_hash % 2 == 0 else -weight

    def embed(self, text: str) -> np.ndarray:
        """Embed text into an L2-normalized float32 vector.

        Args:
            text: Chunk or query text

        Returns:
            Array of shape (dimension,); all zeros when no tokens were found
        """
        vector = np.zeros(self.dimension, dtype=np.float32)

        for token in tokenize(text):
            units = _code_units(token)
            self._add_feature(vector, units, UNIGRAM_WEIGHT)

            # Character bigrams add subword signal for longer tokens
            if len(units) > 2:
                for i in range(len(units) - 1):
                    self._add_feature(vector, units[i : i + 2], BIGRAM_WEIGHT)

        # Squares summed in double, magnitude rounded to float32 before dividing
        sum_sq = np.float32(np.sum(vector.astype(np.float64) ** 2))
        magnitude = np.float32(math.sqrt(float(sum_sq)))
        if magnitude > 0:
            vector /= magnitude

        return vector


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two vectors.

    Returns 0.0 when either vector is empty or has zero magnitude, and when
    the dimensions differ.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)

    if a.size == 0 or b.size == 0:
        return 0.0

    if a.shape != b.shape:
        logger.debug("dimension_mismatch", left=a.shape, right=b.shape)
        return 0.0

    denominator = math.sqrt(float(np.dot(a, a))) * math.sqrt(float(np.dot(b, b)))
    if denominator == 0:
        return 0.0

    return float(np.dot(a, b)) / denominator


# Singleton instance for convenience
_embedder_instance: Optional[HashingEmbedder] = None


def get_embedder() -> HashingEmbedder:
    """Get a singleton hashing embedder."""
    global _embedder_instance
    if _embedder_instance is None:
        _embedder_instance = HashingEmbedder()
    return _embedder_instance
