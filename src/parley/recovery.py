"""Crash-recovery checkpoints for the active session.

While a chat runs, a timer snapshots the active session into
``<recovery_dir>/recovery.json`` every ``save_interval`` seconds, and an extra
checkpoint is written in the background after each message. A clean shutdown
deletes the checkpoint, so finding one at startup means the previous process
died before it could save.

States:

* ``IDLE``: no timer running, no unresolved checkpoint.
* ``ARMED``: the timer is writing checkpoints.
* ``RECOVERABLE``: a checkpoint from an earlier run was found and must be
  recovered or discarded before the timer may start again.
"""

import logging
import os
import shutil
import signal
import threading
from enum import Enum
from typing import Callable

from pydantic import ValidationError

from common.jsonio import atomic_write_json, read_json
from parley.config import APP_VERSION, AutoRecoveryConfig
from parley.errors import (
    CorruptRecordError,
    NotFoundError,
    ParleyError,
    RecoveryStaleError,
    StorageIOError,
)
from parley.models import RecoveryState, Session, utc_now
from parley.storage.backend import SessionBackend

logger = logging.getLogger(__name__)

SessionProvider = Callable[[], Session | None]


class RecoveryStatus(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    RECOVERABLE = "recoverable"


class RecoveryManager:
    def __init__(
        self,
        config: AutoRecoveryConfig,
        backend: SessionBackend,
        app_version: str = APP_VERSION,
    ):
        self.config = config
        self.backend = backend
        self.app_version = app_version
        self.status = RecoveryStatus.IDLE
        self.pending: RecoveryState | None = None
        self.last_save = None
        self.terminated = False

        self._session_provider: SessionProvider | None = None
        self._timer: threading.Timer | None = None
        self._timer_lock = threading.Lock()
        self._write_lock = threading.RLock()
        self._previous_handlers: dict[int, object] = {}

        if not config.enabled:
            logger.debug("Auto-recovery is disabled")
            return
        self.pending = self.check()
        if self.pending is not None:
            self.status = RecoveryStatus.RECOVERABLE
            logger.info(
                f"Found recovery checkpoint for session {self.pending.session_id} "
                f"from {self.pending.timestamp.isoformat()}"
            )

    @property
    def path(self):
        return self.config.recovery_path

    def check(self, strict: bool = False) -> RecoveryState | None:
        """Return the checkpoint on disk, if there is a usable one.

        An expired checkpoint is deleted, or reported with
        ``RecoveryStaleError`` when ``strict`` is set. An unreadable one is
        logged and treated as absent.
        """
        try:
            data = read_json(self.path)
            state = RecoveryState.model_validate(data)
        except FileNotFoundError:
            return None
        except (ValueError, ValidationError, OSError) as e:
            logger.warning(f"Ignoring unreadable recovery checkpoint {self.path}: {e}")
            return None

        age = (utc_now() - state.timestamp).total_seconds()
        if age > self.config.max_recovery_age:
            if strict:
                raise RecoveryStaleError(
                    f"Recovery checkpoint is {age:.0f}s old "
                    f"(max {self.config.max_recovery_age:.0f}s)",
                    operation="recover",
                    session_id=state.session_id,
                )
            logger.info(f"Deleting expired recovery checkpoint ({age:.0f}s old)")
            self.clear()
            return None
        return state

    def start(self, session_provider: SessionProvider) -> bool:
        """Arm the periodic checkpoint timer.

        ``session_provider`` must return a point-in-time copy of the active
        session (or None when there is none); it is called from timer threads.
        """
        if not self.config.enabled:
            return False
        if self.status == RecoveryStatus.RECOVERABLE:
            logger.warning(
                "Not starting auto-recovery: an unresolved checkpoint exists "
                "(recover or discard it first)"
            )
            return False
        if self.status == RecoveryStatus.ARMED:
            return True
        self._session_provider = session_provider
        self.terminated = False
        self.status = RecoveryStatus.ARMED
        self._schedule()
        logger.info(f"Auto-recovery started (interval {self.config.save_interval}s)")
        return True

    def _schedule(self) -> None:
        with self._timer_lock:
            if self.status != RecoveryStatus.ARMED:
                return
            timer = threading.Timer(self.config.save_interval, self._tick)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _tick(self) -> None:
        try:
            self.save_checkpoint(require_armed=True)
        except ParleyError as e:
            logger.warning(f"Recovery checkpoint failed: {e}")
        finally:
            self._schedule()

    def _cancel_timer(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def save_checkpoint(
        self, session: Session | None = None, require_armed: bool = False
    ) -> bool:
        """Write a checkpoint now. Returns False when there was nothing to write."""
        if self.status == RecoveryStatus.RECOVERABLE:
            logger.warning("Refusing to overwrite an unresolved recovery checkpoint")
            return False
        if session is None and self._session_provider is not None:
            session = self._session_provider()
        if session is None:
            logger.debug("No active session to checkpoint")
            return False

        state = RecoveryState(
            session_id=session.id,
            session_name=session.name,
            message_count=len(session.messages),
            session=session,
            storage_backend=getattr(self.backend, "backend_type", ""),
            app_version=self.app_version,
        )
        with self._write_lock:
            if require_armed and self.status != RecoveryStatus.ARMED:
                return False
            self._rotate_backups()
            try:
                atomic_write_json(self.path, state.model_dump(mode="json"))
            except OSError as e:
                raise StorageIOError(
                    f"Failed to write recovery checkpoint {self.path}: {e}",
                    operation="checkpoint",
                    session_id=session.id,
                ) from e
            self.last_save = state.timestamp
        logger.debug(f"Recovery checkpoint saved for session {session.id}")
        return True

    def checkpoint_async(self) -> threading.Thread | None:
        """Write a checkpoint on a background thread; failures are only logged."""
        if self.status != RecoveryStatus.ARMED:
            return None
        thread = threading.Thread(
            target=self._checkpoint_quietly, name="parley-checkpoint", daemon=True
        )
        thread.start()
        return thread

    def _checkpoint_quietly(self) -> None:
        try:
            self.save_checkpoint(require_armed=True)
        except ParleyError as e:
            logger.warning(f"Background recovery checkpoint failed: {e}")

    def _rotate_backups(self) -> None:
        if self.config.backup_count <= 0 or not self.path.exists():
            return
        base = str(self.path)
        for i in range(self.config.backup_count - 1, 0, -1):
            older = f"{base}.{i}"
            if os.path.exists(older):
                try:
                    os.replace(older, f"{base}.{i + 1}")
                except OSError as e:
                    logger.warning(f"Failed to rotate recovery backup {older}: {e}")
        # Copy rather than move so a readable checkpoint exists at every moment.
        try:
            shutil.copy2(base, f"{base}.1")
        except OSError as e:
            logger.warning(f"Failed to back up recovery checkpoint: {e}")

    def recover(self, state: RecoveryState | None = None) -> Session:
        """Rebuild the session described by a checkpoint and resolve it.

        The checkpoint snapshot and the stored copy are compared and the more
        complete one wins: more messages first, then the later ``updated``. A
        snapshot that wins is saved to the backend before the checkpoint is
        deleted, so a failed save leaves the checkpoint in place.
        """
        state = state or self.pending
        if state is None and self.status == RecoveryStatus.IDLE:
            state = self.check()
        if state is None:
            raise NotFoundError("No recovery checkpoint found", operation="recover")
        if state.session is None:
            raise CorruptRecordError(
                "Recovery checkpoint has no session snapshot",
                operation="recover",
                session_id=state.session_id,
            )
        backend_type = getattr(self.backend, "backend_type", "")
        if state.storage_backend and state.storage_backend != backend_type:
            logger.warning(
                f"Recovery checkpoint was written for the {state.storage_backend} "
                f"backend; recovering into {backend_type}"
            )

        try:
            stored = self.backend.load_session(state.session_id)
        except NotFoundError:
            stored = None
        except CorruptRecordError as e:
            logger.warning(f"Stored copy of {state.session_id} is unreadable: {e}")
            stored = None

        snapshot = state.session
        if stored is not None and (len(stored.messages), stored.updated) >= (
            len(snapshot.messages),
            snapshot.updated,
        ):
            logger.info(f"Stored copy of session {stored.id} is current; using it")
            session = stored
        else:
            logger.info(f"Recovering session {snapshot.id} from checkpoint")
            session = snapshot.model_copy(deep=True)
            self.backend.save_session(session)

        self.status = RecoveryStatus.IDLE
        self._cancel_timer()
        self.clear()
        self.pending = None
        return session

    def discard(self) -> None:
        self.status = RecoveryStatus.IDLE
        self._cancel_timer()
        self.clear()
        self.pending = None
        logger.info("Recovery checkpoint discarded")

    def clear(self) -> None:
        try:
            with self._write_lock:
                self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageIOError(
                f"Failed to remove recovery checkpoint {self.path}: {e}",
                operation="recover",
            ) from e
        logger.debug("Recovery checkpoint cleared")

    def stop(self, clean: bool = True) -> None:
        """Stop the timer and write a final checkpoint.

        On a clean shutdown the checkpoint is then deleted. A checkpoint that
        is still waiting to be resolved is never touched.
        """
        if self.status != RecoveryStatus.ARMED:
            self._cancel_timer()
            return
        self.status = RecoveryStatus.IDLE
        self._cancel_timer()
        try:
            self._write_final_checkpoint()
        except ParleyError as e:
            logger.warning(f"Final recovery checkpoint failed: {e}")
        if clean and not self.terminated:
            self.clear()
        logger.info("Auto-recovery stopped")

    def _write_final_checkpoint(self) -> None:
        if self._session_provider is None:
            return
        session = self._session_provider()
        if session is not None:
            self.save_checkpoint(session)

    def install_signal_handlers(self) -> None:
        """Checkpoint synchronously on SIGINT/SIGTERM before the default action."""
        if threading.current_thread() is not threading.main_thread():
            logger.warning("Signal handlers can only be installed from the main thread")
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_signal(self, signum, frame) -> None:
        if self.status == RecoveryStatus.ARMED:
            try:
                self.save_checkpoint()
            except ParleyError as e:
                logger.error(f"Failed to save recovery checkpoint on signal: {e}")
            else:
                logger.info("Recovery checkpoint saved on signal")
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        self.terminated = True
        raise SystemExit(128 + signum)
