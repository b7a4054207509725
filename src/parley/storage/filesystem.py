import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from common.jsonio import atomic_write_json, read_json
from parley.errors import CorruptRecordError, NotFoundError, StorageIOError
from parley.models import Session
from parley.storage.backend import BaseBackend

logger = logging.getLogger(__name__)


class FilesystemBackend(BaseBackend):
    """One ``<id>.json`` file per session under ``base_dir``."""

    backend_type = "filesystem"

    def __init__(self, base_dir: str | Path, **options):
        self.base_dir = Path(base_dir)
        self.options = options
        self._closed = False
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Failed to create storage directory {self.base_dir}: {e}") from e
        logger.debug(f"Filesystem backend ready at {self.base_dir}")

    def _path(self, session_id: str, operation: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise NotFoundError("Session not found", operation=operation, session_id=session_id)
        return self.base_dir / f"{session_id}.json"

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise StorageIOError("Backend is closed", operation=operation)

    def save_session(self, session: Session) -> None:
        self._check_open("save")
        path = self._path(session.id, "save")
        previous = session.updated
        session.touch()
        try:
            atomic_write_json(path, session.model_dump(mode="json"))
        except (OSError, TypeError, ValueError) as e:
            session.updated = previous
            logger.error(f"Failed to save session {session.id}: {e}")
            raise StorageIOError(
                f"Failed to write session file: {e}", operation="save", session_id=session.id
            ) from e
        logger.debug(f"Saved session {session.id} to {path}")

    def load_session(self, session_id: str) -> Session:
        self._check_open("load")
        path = self._path(session_id, "load")
        try:
            data = read_json(path)
        except FileNotFoundError as e:
            raise NotFoundError("Session not found", operation="load", session_id=session_id) from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptRecordError(
                f"Invalid session file: {e}", operation="load", session_id=session_id
            ) from e
        except OSError as e:
            raise StorageIOError(
                f"Failed to read session file: {e}", operation="load", session_id=session_id
            ) from e
        try:
            session = Session.model_validate(data)
        except ValidationError as e:
            raise CorruptRecordError(
                f"Invalid session data: {e}", operation="load", session_id=session_id
            ) from e
        logger.debug(f"Loaded session {session_id}: {len(session.messages)} message(s)")
        return session

    def delete_session(self, session_id: str) -> None:
        self._check_open("delete")
        path = self._path(session_id, "delete")
        try:
            os.remove(path)
        except FileNotFoundError as e:
            logger.warning(f"Session {session_id} not found for deletion")
            raise NotFoundError("Session not found", operation="delete", session_id=session_id) from e
        except OSError as e:
            raise StorageIOError(
                f"Failed to delete session: {e}", operation="delete", session_id=session_id
            ) from e
        logger.info(f"Deleted session {session_id}")

    def _session_ids(self) -> list[str]:
        self._check_open("list")
        if not self.base_dir.exists():
            return []
        return sorted(p.stem for p in self.base_dir.glob("*.json") if p.is_file())

    def close(self) -> None:
        if not self._closed:
            logger.debug("Closing filesystem backend")
        self._closed = True
