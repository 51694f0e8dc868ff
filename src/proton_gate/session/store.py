"""Owner-only file storage for the session record."""

import json
import os
import tempfile
from pathlib import Path
from typing import Optional

from loguru import logger

from ..config import Config
from ..errors import SessionStoreIOError
from .models import SessionRecord


class SessionStore:
    """
    Persist one SessionRecord as JSON.

    Writes go to a 0600 temp file in the same directory and are renamed
    into place, so readers see either the old record or the new one.
    Concurrent writers: last rename wins.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or Config.SESSION_FILE)

    def load(self) -> Optional[SessionRecord]:
        """
        Read the record.

        Returns:
            The record, or None if none exists

        Raises:
            SessionStoreIOError: If the file cannot be read or is malformed
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise SessionStoreIOError(f"Cannot read session record {self.path}: {e}") from e

        try:
            return SessionRecord.from_dict(data)
        except ValueError as e:
            raise SessionStoreIOError(f"Corrupt session record {self.path}: {e}") from e

    def save(self, record: SessionRecord) -> None:
        """
        Atomically replace the record.

        Raises:
            SessionStoreIOError: If the record cannot be written
        """
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            # mkstemp creates the file with mode 0600
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".session.")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
            raise SessionStoreIOError(f"Cannot write session record {self.path}: {e}") from e
        logger.debug(f"Session record written to {self.path}")

    def delete(self) -> None:
        """
        Remove the record. Idempotent.

        Raises:
            SessionStoreIOError: If an existing record cannot be removed
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise SessionStoreIOError(f"Cannot remove session record {self.path}: {e}") from e
