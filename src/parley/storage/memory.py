import json
import logging
import threading

from pydantic import ValidationError

from parley.errors import CorruptRecordError, NotFoundError, StorageIOError
from parley.models import Session
from parley.storage.backend import BaseBackend

logger = logging.getLogger(__name__)


class MemoryBackend(BaseBackend):
    """Process-local backend; records are kept serialized so callers never share state."""

    backend_type = "memory"

    def __init__(self, **options):
        self.options = options
        self._records: dict[str, str] = {}
        self._lock = threading.Lock()
        self._closed = False

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise StorageIOError("Backend is closed", operation=operation)

    def save_session(self, session: Session) -> None:
        self._check_open("save")
        previous = session.updated
        session.touch()
        try:
            payload = json.dumps(session.model_dump(mode="json"))
        except (TypeError, ValueError) as e:
            session.updated = previous
            raise StorageIOError(
                f"Failed to serialize session: {e}", operation="save", session_id=session.id
            ) from e
        with self._lock:
            self._records[session.id] = payload

    def load_session(self, session_id: str) -> Session:
        self._check_open("load")
        with self._lock:
            payload = self._records.get(session_id)
        if payload is None:
            raise NotFoundError("Session not found", operation="load", session_id=session_id)
        try:
            return Session.model_validate_json(payload)
        except ValidationError as e:
            raise CorruptRecordError(
                f"Invalid session data: {e}", operation="load", session_id=session_id
            ) from e

    def delete_session(self, session_id: str) -> None:
        self._check_open("delete")
        with self._lock:
            if self._records.pop(session_id, None) is None:
                raise NotFoundError("Session not found", operation="delete", session_id=session_id)
        logger.info(f"Deleted session {session_id}")

    def _session_ids(self) -> list[str]:
        self._check_open("list")
        with self._lock:
            return sorted(self._records)

    def close(self) -> None:
        self._closed = True
