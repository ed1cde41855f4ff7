"""Cursor persistence between process restarts."""

import logging
import os
from pathlib import Path

from .datasource import CursorStore

logger = logging.getLogger(__name__)


class MemoryCursorStore(CursorStore):
    """Keeps the cursor in memory. Useful for tests and one-shot runs."""

    def __init__(self, cursor: str | None = None):
        self.cursor = cursor
        self.history: list[str] = []

    def load(self) -> str | None:
        return self.cursor

    def save(self, cursor: str) -> None:
        self.cursor = cursor
        self.history.append(cursor)


class FileCursorStore(CursorStore):
    """
    Stores the cursor as a single line in a text file.

    Writes go to a temporary file that then replaces the target, so a crash
    mid-write leaves the previous cursor intact.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> str | None:
        if not self.path.exists():
            return None

        cursor = self.path.read_text(encoding="utf-8").strip()
        if not cursor:
            logger.warning(f"Cursor file {self.path} is empty, ignoring it")
            return None
        return cursor

    def save(self, cursor: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp_path.write_text(cursor + "\n", encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save cursor to {self.path}: {e}")
            if tmp_path.exists():
                tmp_path.unlink()
            raise
