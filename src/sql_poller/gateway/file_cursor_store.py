"""Gateway: file-backed implementations of CursorStore."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import structlog

from sql_poller.domain.models import CursorValue
from sql_poller.domain.value_codec import decode_value, encode_value
from sql_poller.exceptions import StateCorruptionError

logger = structlog.get_logger(__name__)


class FileCursorStore:
    """Keeps the cursor in a single file, replaced atomically on every write."""

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path).expanduser()

    def read(self) -> CursorValue | None:
        """Return the persisted value, or None if nothing was ever written."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as e:
            raise StateCorruptionError(f"persisted cursor file {self.path} is not valid UTF-8") from e
        value = decode_value(text)
        logger.debug("Loaded persisted cursor value", path=str(self.path), value=repr(value))
        return value

    def write(self, value: CursorValue) -> None:
        """Persist value via a temp file in the same directory and an atomic rename."""
        payload = encode_value(value) + "\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def clear(self) -> None:
        """Delete the persisted value if present."""
        try:
            self.path.unlink()
            logger.info("Cleared persisted cursor value", path=str(self.path))
        except FileNotFoundError:
            pass


class NullCursorStore:
    """Store used when state recording is disabled; never remembers anything."""

    def read(self) -> CursorValue | None:
        return None

    def write(self, value: CursorValue) -> None:
        pass

    def clear(self) -> None:
        pass
