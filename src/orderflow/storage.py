"""Locked, atomically-written JSON files used by the orderflow stores."""

import copy
import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .config import SCHEMA_VERSION
from .errors import InvalidSchemaVersionError


class JsonFile:
    """A single JSON document on disk with an exclusive lock for read-modify-write."""

    def __init__(self, path: Path, empty: dict[str, Any]):
        """
        Initialize JsonFile.

        Args:
            path: Location of the JSON document.
            empty: Document returned by load() when the file doesn't exist yet.
        """
        self.path = path
        self.dir = path.parent
        self._empty = empty
        self._lock_path = self.dir / f".{path.stem}.lock"

    def _ensure_dir(self) -> None:
        self.dir.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        return self.path.exists()

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Acquire an exclusive lock on the document for read-modify-write operations."""
        self._ensure_dir()
        with open(self._lock_path, "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def load(self) -> dict[str, Any]:
        """
        Load the document from disk.

        Raises:
            InvalidSchemaVersionError: If the schema version is unsupported.
        """
        if not self.path.exists():
            return copy.deepcopy(self._empty)

        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        version = data.get("schema_version", 0)
        if version != SCHEMA_VERSION:
            raise InvalidSchemaVersionError(version, SCHEMA_VERSION)
        return data

    def save(self, data: dict[str, Any]) -> None:
        """
        Save the document to disk atomically.

        Uses write-to-temp-then-rename for atomicity.
        """
        self._ensure_dir()

        fd, temp_path = tempfile.mkstemp(
            dir=self.dir, prefix=f".{self.path.stem}_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")  # trailing newline
            os.replace(temp_path, self.path)
        except Exception:
            # Clean up temp file on failure (ignore errors if already removed)
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
