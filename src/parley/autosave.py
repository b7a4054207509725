import logging
import threading
from typing import Any, Callable

from parley.errors import ParleyError
from parley.models import Session

logger = logging.getLogger(__name__)


class AutoSaver:
    """Periodically persist the active session when it has changed.

    ``save`` performs the write and returns the session it wrote (the session
    manager passes its own locked save). ``session_provider`` returns the live
    session so its ``updated`` stamp can be compared with the one recorded at
    the last successful save.
    """

    def __init__(
        self,
        save: Callable[[], Any],
        session_provider: Callable[[], Session | None],
        interval: float,
    ):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._save = save
        self._session_provider = session_provider
        self.interval = interval
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()
        self._running = False
        self._last_saved: tuple[str, Any] | None = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        self._schedule()
        logger.info(f"Auto-save started (interval {self.interval}s)")

    def _schedule(self) -> None:
        with self._lock:
            if not self._running:
                return
            timer = threading.Timer(self.interval, self._tick)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _tick(self) -> None:
        try:
            self.save_now()
        finally:
            self._schedule()

    def mark_saved(self, session: Session) -> None:
        self._last_saved = (session.id, session.updated)

    def is_dirty(self, session: Session) -> bool:
        if self._last_saved is None:
            return True
        saved_id, saved_at = self._last_saved
        return session.id != saved_id or session.updated > saved_at

    def save_now(self) -> bool:
        """Save if the session changed since the last save; never raises."""
        session = self._session_provider()
        if session is None:
            return False
        if not self.is_dirty(session):
            logger.debug("No changes since last save, skipping auto-save")
            return False
        try:
            saved = self._save()
        except ParleyError as e:
            logger.warning(f"Auto-save failed for session {session.id}: {e}")
            return False
        self.mark_saved(saved if isinstance(saved, Session) else session)
        logger.debug(f"Auto-saved session {session.id}")
        return True

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        logger.debug("Auto-save stopped")
