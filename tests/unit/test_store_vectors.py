"""Unit tests for the embedding index and its snapshot storage."""
import json
import os
import threading

import numpy as np
import pytest

from lessonrag import config
from lessonrag.errors import CorruptIndexSnapshotError, ErrorKind, IndexNotReadyError
from lessonrag.rag.snapshot import FileSnapshotStorage, InMemorySnapshotStorage
from lessonrag.rag.store_vectors import EmbeddingEntry, EmbeddingIndex, IndexState


def _entry(chunk_id, values):
    return EmbeddingEntry(chunk_id=chunk_id, vector=np.array(values, dtype=np.float32))


@pytest.fixture
def small_index():
    index = EmbeddingIndex(InMemorySnapshotStorage(), dimension=4, strict=False)
    index.load()
    return index


class TestLifecycle:
    def test_starts_unloaded(self):
        index = EmbeddingIndex(InMemorySnapshotStorage(), dimension=4)

        assert index.state is IndexState.UNLOADED

    @pytest.mark.parametrize("call", [
        lambda idx: idx.search(np.zeros(4), 1),
        lambda idx: idx.append([_entry("a", [1, 0, 0, 0])]),
        lambda idx: idx.persist(),
    ])
    def test_use_before_load_raises(self, call):
        index = EmbeddingIndex(InMemorySnapshotStorage(), dimension=4)

        with pytest.raises(IndexNotReadyError):
            call(index)

    def test_load_without_snapshot_is_empty_and_ready(self):
        index = EmbeddingIndex(InMemorySnapshotStorage(), dimension=4)

        result = index.load()

        assert index.state is IndexState.READY
        assert result.snapshot_found is False
        assert result.error is None
        assert len(index) == 0


class TestSearch:
    def test_empty_index_returns_empty(self, small_index):
        assert small_index.search(np.array([1.0, 0, 0, 0]), 3) == []

    def test_ranks_by_cosine_similarity(self, small_index):
        small_index.append([
            _entry("far", [0, 0, 1, 0]),
            _entry("near", [1, 0.1, 0, 0]),
            _entry("middle", [1, 1, 0, 0]),
        ])

        results = small_index.search_scored(np.array([1.0, 0, 0, 0]), 3)

        assert [chunk_id for chunk_id, _ in results] == ["near", "middle", "far"]
        scores = [score for _, score in results]
        assert scores == sorted(scores, reverse=True)
        assert scores[1] == pytest.approx(1 / np.sqrt(2))

    def test_ties_keep_insertion_order(self, small_index):
        small_index.append([
            _entry("first", [0, 1, 0, 0]),
            _entry("second", [0, 2, 0, 0]),
            _entry("third", [0, 0.5, 0, 0]),
        ])

        assert small_index.search(np.array([0, 1.0, 0, 0]), 3) == [
            "first", "second", "third",
        ]

    def test_top_k_limits_results(self, small_index):
        small_index.append([_entry(str(i), [1, i, 0, 0]) for i in range(10)])

        assert len(small_index.search(np.array([1.0, 0, 0, 0]), 3)) == 3

    def test_fewer_entries_than_top_k(self, small_index):
        small_index.append([_entry("only", [1, 0, 0, 0])])

        assert small_index.search(np.array([1.0, 0, 0, 0]), 5) == ["only"]

    def test_non_positive_top_k(self, small_index):
        small_index.append([_entry("only", [1, 0, 0, 0])])

        assert small_index.search(np.array([1.0, 0, 0, 0]), 0) == []

    def test_zero_vectors_score_zero(self, small_index):
        small_index.append([_entry("zero", [0, 0, 0, 0]), _entry("one", [1, 0, 0, 0])])

        results = dict(small_index.search_scored(np.array([1.0, 0, 0, 0]), 2))

        assert results["zero"] == 0.0
        assert results["one"] == pytest.approx(1.0)

    def test_zero_query_scores_zero(self, small_index):
        small_index.append([_entry("a", [1, 0, 0, 0]), _entry("b", [0, 1, 0, 0])])

        assert small_index.search_scored(np.zeros(4), 2) == [("a", 0.0), ("b", 0.0)]

    def test_query_dimension_mismatch_scores_zero(self, small_index):
        small_index.append([_entry("a", [1, 0, 0, 0]), _entry("b", [0, 1, 0, 0])])

        results = small_index.search_scored(np.ones(7), 2)

        assert results == [("a", 0.0), ("b", 0.0)]

    def test_sees_entries_appended_after_previous_search(self, small_index):
        small_index.append([_entry("a", [0, 1, 0, 0])])
        small_index.search(np.array([1.0, 0, 0, 0]), 1)

        small_index.append([_entry("b", [1, 0, 0, 0])])

        assert small_index.search(np.array([1.0, 0, 0, 0]), 1) == ["b"]


class TestAppend:
    def test_rejects_wrong_dimension(self, small_index):
        with pytest.raises(ValueError):
            small_index.append([_entry("bad", [1, 0, 0])])

        assert len(small_index) == 0

    def test_append_does_not_persist(self):
        storage = InMemorySnapshotStorage()
        index = EmbeddingIndex(storage, dimension=4)
        index.load()

        index.append([_entry("a", [1, 0, 0, 0])])

        assert storage.read() is None


class TestPersistence:
    def test_round_trip_preserves_results(self, tmp_path, embedder):
        storage = FileSnapshotStorage(tmp_path / "embeddings.json")
        index = EmbeddingIndex(storage)
        index.load()
        texts = {
            "plants": "Plants convert sunlight into chemical energy.",
            "rocks": "Igneous rocks form from cooled magma.",
            "water": "The water cycle moves water through evaporation and rain.",
        }
        index.append([EmbeddingEntry(k, embedder.embed(v)) for k, v in texts.items()])
        index.persist()

        reloaded = EmbeddingIndex(FileSnapshotStorage(tmp_path / "embeddings.json"))
        result = reloaded.load()

        assert result.vector_count == 3
        assert result.snapshot_found is True
        for query in ("sunlight energy", "magma", "rain evaporation", "nothing"):
            q = embedder.embed(query)
            assert reloaded.search_scored(q, 3) == index.search_scored(q, 3)

    def test_snapshot_format(self, memory_storage):
        index = EmbeddingIndex(memory_storage, dimension=4)
        index.load()
        index.append([_entry("a", [0.5, 0.5, 0.5, 0.5])])

        index.persist()

        assert json.loads(memory_storage.read()) == [
            {"chunk_id": "a", "vector": [0.5, 0.5, 0.5, 0.5]}
        ]

    def test_vectors_survive_bit_identical(self, memory_storage, embedder):
        vector = embedder.embed("Ribosomes assemble proteins from amino acids.")
        index = EmbeddingIndex(memory_storage)
        index.load()
        index.append([EmbeddingEntry("r", vector)])
        index.persist()

        reloaded = EmbeddingIndex(memory_storage)
        reloaded.load()

        assert reloaded._vectors[0].tobytes() == vector.tobytes()

    @pytest.mark.parametrize("payload", [
        b"not json at all",
        b'{"chunk_id": "a"}',
        b'[{"chunk_id": "a"}]',
        b'[{"chunk_id": "a", "vector": [1, 0, 0]}]',
        b'[{"chunk_id": "", "vector": [1, 0, 0, 0]}]',
        b'[{"chunk_id": "a", "vector": ["x", 0, 0, 0]}]',
        b'[{"chunk_id": "a", "vector": [NaN, NaN, NaN, NaN]}, {"chunk_id": "b", "vector": [1, 0, 0, 0]}]',
        b'[{"chunk_id": "a", "vector": [Infinity, 0, 0, 0]}]',
        b'[{"chunk_id": "a", "vector": [1e300, 0, 0, 0]}]',
        b"[1, 2, 3]",
        b"\xff\xfe\x00",
    ])
    def test_corrupt_snapshot_falls_back_to_empty(self, payload):
        index = EmbeddingIndex(InMemorySnapshotStorage(payload), dimension=4, strict=False)

        result = index.load()

        assert index.state is IndexState.READY
        assert len(index) == 0
        assert result.error is ErrorKind.CORRUPT_INDEX_SNAPSHOT
        assert result.recovered is True
        assert index.search(np.ones(4), 3) == []

    def test_strict_mode_raises_on_corrupt_snapshot(self):
        index = EmbeddingIndex(InMemorySnapshotStorage(b"garbage"), dimension=4, strict=True)

        with pytest.raises(CorruptIndexSnapshotError):
            index.load()

        assert index.state is IndexState.UNLOADED

    def test_strict_mode_rejects_non_finite_vector(self):
        payload = b'[{"chunk_id": "a", "vector": [NaN, 0, 0, 0]}]'
        index = EmbeddingIndex(InMemorySnapshotStorage(payload), dimension=4, strict=True)

        with pytest.raises(CorruptIndexSnapshotError):
            index.load()

    def test_strict_mode_accepts_valid_snapshot(self):
        payload = json.dumps([{"chunk_id": "a", "vector": [1, 0, 0, 0]}]).encode()
        index = EmbeddingIndex(InMemorySnapshotStorage(payload), dimension=4, strict=True)

        assert index.load().vector_count == 1

    def test_concurrent_persists_include_all_entries(self, memory_storage):
        index = EmbeddingIndex(memory_storage, dimension=4)
        index.load()

        def worker(n):
            for i in range(20):
                index.append([_entry(f"{n}-{i}", [1, n, i, 0])])
            index.persist()

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        index.persist()
        records = json.loads(memory_storage.read())
        assert len(records) == 160
        assert len({r["chunk_id"] for r in records}) == 160


class TestFileSnapshotStorage:
    def test_default_path_from_config(self):
        assert FileSnapshotStorage().path == config.EMBEDDINGS_PATH

    def test_missing_file_reads_none(self, tmp_path):
        assert FileSnapshotStorage(tmp_path / "nope.json").read() is None

    def test_write_creates_parent_and_replaces(self, tmp_path):
        storage = FileSnapshotStorage(tmp_path / "nested" / "snap.json")

        storage.write(b"first")
        storage.write(b"second")

        assert storage.read() == b"second"
        assert not list(tmp_path.glob("**/*.tmp"))

    def test_failed_replace_keeps_previous_snapshot(self, tmp_path, monkeypatch):
        storage = FileSnapshotStorage(tmp_path / "snap.json")
        storage.write(b"good")

        def boom(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", boom)

        with pytest.raises(OSError):
            storage.write(b"partial")

        assert storage.read() == b"good"
        assert not list(tmp_path.glob("*.tmp"))
