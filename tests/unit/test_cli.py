"""Smoke tests for the lessonrag command line."""
import json

from lessonrag.cli import main


def test_ingest_query_and_stats(tmp_path, capsys):
    lesson = tmp_path / "lesson.txt"
    lesson.write_text("The water cycle includes evaporation and condensation.", encoding="utf-8")
    data_dir = str(tmp_path / "data")

    assert main(["--data-dir", data_dir, "ingest", str(lesson)]) == 0
    assert "lesson.txt" in capsys.readouterr().out

    assert main(["--data-dir", data_dir, "query", "evaporation", "--top-k", "1"]) == 0
    assert "evaporation and condensation" in capsys.readouterr().out

    assert main(["--data-dir", data_dir, "query", "evaporation", "--scores"]) == 0
    assert "lesson.txt#0 score=" in capsys.readouterr().out

    assert main(["--data-dir", data_dir, "stats"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["vector_count"] == 1
    assert stats["chunk_count"] == 1


def test_ingest_empty_file_fails(tmp_path, capsys):
    empty = tmp_path / "empty.txt"
    empty.write_text("   \n", encoding="utf-8")

    assert main(["--data-dir", str(tmp_path / "data"), "ingest", str(empty)]) == 1
    assert "empty_document" in capsys.readouterr().out


def test_missing_file_fails(tmp_path):
    assert main(["--data-dir", str(tmp_path / "data"), "ingest", str(tmp_path / "nope.txt")]) == 1


def test_strict_mode_rejects_corrupt_snapshot(tmp_path, capsys):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "embeddings.json").write_text("oops", encoding="utf-8")

    assert main(["--data-dir", str(data_dir), "--strict", "stats"]) == 1
    assert main(["--data-dir", str(data_dir), "stats"]) == 0
