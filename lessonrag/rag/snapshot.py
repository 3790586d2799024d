"""Storage backends for the embeddings snapshot.

The index only needs to read the whole snapshot at startup and replace it
wholesale after each ingestion, so the capability is two methods. Tests use
the in-memory backend to avoid touching disk.
"""
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Protocol

import structlog

from lessonrag import config

logger = structlog.get_logger()


class SnapshotStorage(Protocol):
    """Whole-blob storage for the serialized embedding entries."""

    def read(self) -> Optional[bytes]:
        """Return the stored snapshot, or None if nothing was ever written."""
        ...

    def write(self, data: bytes) -> None:
        """Replace the stored snapshot with data, atomically."""
        ...


class FileSnapshotStorage:
    """Snapshot kept in a single file, replaced via write-new-then-rename."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else config.EMBEDDINGS_PATH

    def read(self) -> Optional[bytes]:
        if not self.path.exists():
            return None
        return self.path.read_bytes()

    def write(self, data: bytes) -> None:
        """Write data to a temp file beside the snapshot, then replace it.

        A crash mid-write leaves either the old snapshot or the new one, never
        a truncated file.

        Raises:
            OSError: If the temp file cannot be written or renamed
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=self.path.name + ".", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            # Clean up partial temp file on failure
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        self._fsync_directory()

        logger.debug("snapshot_written", path=str(self.path), size_bytes=len(data))

    def _fsync_directory(self) -> None:
        # Persist the rename itself; not supported on every platform
        try:
            dir_fd = os.open(self.path.parent, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)


class InMemorySnapshotStorage:
    """Snapshot held in memory, for tests and throwaway indexes."""

    def __init__(self, data: Optional[bytes] = None):
        self._data = data
        self._lock = threading.Lock()
        self.write_count = 0

    def read(self) -> Optional[bytes]:
        with self._lock:
            return self._data

    def write(self, data: bytes) -> None:
        with self._lock:
            self._data = bytes(data)
            self.write_count += 1
