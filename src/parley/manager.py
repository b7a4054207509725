import logging
import threading
from contextlib import contextmanager
from typing import Iterator, TextIO

from parley.attachments import (
    attachment_from_path,
    consume_pending,
    list_pending,
    remove_pending,
    stage_attachment,
)
from parley.autosave import AutoSaver
from parley.branching import create_branch, execute_merge, find_root
from parley.errors import NotFoundError, ParleyError, StorageIOError
from parley.export import render_session, write_export
from parley.models import (
    Attachment,
    BranchTree,
    MergeOptions,
    MergeResult,
    Message,
    Role,
    SearchResult,
    Session,
    SessionInfo,
)
from parley.recovery import RecoveryManager, RecoveryStatus
from parley.storage.backend import SessionBackend

logger = logging.getLogger(__name__)

DEFAULT_AUTOSAVE_INTERVAL = 300.0


@contextmanager
def _context(operation: str, session_id: str | None = None) -> Iterator[None]:
    try:
        yield
    except ParleyError as e:
        raise e.with_context(operation, session_id) from e


class SessionManager:
    """Owns the active session and routes every lifecycle operation.

    All reads and writes of the active session happen under one re-entrant
    lock. Background writers (auto-save, recovery checkpoints) only ever see
    a copy taken under that lock, or write while holding it.
    """

    def __init__(
        self,
        backend: SessionBackend,
        recovery: RecoveryManager | None = None,
        autosave_interval: float | None = None,
        model: str = "",
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        self.backend = backend
        self.recovery = recovery
        self.model = model
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.session: Session | None = None
        self._lock = threading.RLock()
        self.autosaver = AutoSaver(
            self._save_active,
            lambda: self.session,
            autosave_interval or DEFAULT_AUTOSAVE_INTERVAL,
        )
        self._autosave_enabled = autosave_interval is not None

    # Lifecycle

    def start(self, session_id: str | None = None, name: str | None = None) -> Session:
        """Open a session and arm the background writers."""
        if session_id:
            session = self.load(session_id)
        else:
            session = self.new_session(name, save_current=False)
        if self._autosave_enabled:
            self.autosaver.start()
        if self.recovery is not None:
            self.recovery.start(self.snapshot)
        return session

    def close(self, clean: bool = True) -> None:
        self.autosaver.stop()
        saved = True
        if self._autosave_enabled:
            saved = self._save_quietly() is None
        if self.recovery is not None:
            self.recovery.stop(clean=clean and saved)
        self.backend.close()
        logger.info("Session manager closed")

    @property
    def current(self) -> Session:
        session = self.session
        if session is None:
            raise NotFoundError("No active session")
        return session

    def snapshot(self) -> Session | None:
        with self._lock:
            if self.session is None:
                return None
            return self.session.model_copy(deep=True)

    def has_unsaved_changes(self) -> bool:
        with self._lock:
            return self.session is not None and self.autosaver.is_dirty(self.session)

    def _activate(self, session: Session, saved: bool) -> None:
        with self._lock:
            self.session = session
            if saved:
                self.autosaver.mark_saved(session)

    def _save_active(self) -> Session:
        with self._lock:
            session = self.current
            with _context("save", session.id):
                self.backend.save_session(session)
            self.autosaver.mark_saved(session)
            return session

    def autosave_now(self) -> bool:
        if not self._autosave_enabled:
            return False
        return self.autosaver.save_now()

    def _save_quietly(self) -> str | None:
        """Save the active session if it changed; return a warning on failure."""
        if not self.has_unsaved_changes():
            return None
        try:
            self._save_active()
        except ParleyError as e:
            logger.warning(f"Failed to save current session: {e}")
            return str(e)
        return None

    # Sessions

    def new_session(self, name: str | None = None, save_current: bool = True) -> Session:
        if save_current and self.session is not None:
            self._save_quietly()
        session = self.backend.new_session(name)
        if self.model:
            session.conversation.set_model(self.model)
        session.conversation.system_prompt = self.system_prompt
        session.conversation.set_parameters(self.temperature, self.max_tokens)
        self._activate(session, saved=False)
        return session

    def save(self, name: str | None = None) -> Session:
        with self._lock:
            if name:
                self.current.name = name
            return self._save_active()

    def load(self, session_id: str) -> Session:
        with _context("load", session_id):
            session = self.backend.load_session(session_id)
        self._activate(session, saved=True)
        logger.info(f"Loaded session {session.id} ({len(session.messages)} messages)")
        return session

    def switch(self, session_id: str) -> tuple[Session, str | None]:
        """Make another stored session active.

        The current session is saved first. A failed save does not block the
        switch; its message is returned as a warning.
        """
        with self._lock:
            if self.session is not None and self.session.id == session_id:
                # Already active: the in-memory copy is the newest one.
                return self.session, self._save_quietly()
        with _context("switch", session_id):
            target = self.backend.load_session(session_id)
        with self._lock:
            warning = self._save_quietly() if self.session is not None else None
            self._activate(target, saved=True)
        logger.info(f"Switched to session {target.id}")
        return target, warning

    def list_sessions(self) -> list[SessionInfo]:
        with _context("list"):
            return self.backend.list_sessions()

    def delete(self, session_id: str) -> None:
        if self.session is not None and self.session.id == session_id:
            raise ParleyError(
                "Cannot delete the active session; switch to another one first",
                operation="delete",
                session_id=session_id,
            )
        with _context("delete", session_id):
            self.backend.delete_session(session_id)
        logger.info(f"Deleted session {session_id}")

    def search(self, query: str) -> list[SearchResult]:
        with _context("search"):
            return self.backend.search_sessions(query)

    def export(
        self,
        fmt: str,
        destination: str | TextIO | None = None,
        session_id: str | None = None,
    ) -> str | None:
        """Export a session; returns the rendered text when no destination is given.

        Without ``session_id`` the active session is exported as it is in
        memory, including unsaved messages.
        """
        if session_id is not None:
            if destination is None:
                with _context("export", session_id):
                    return render_session(self.backend.load_session(session_id), fmt)
            with _context("export", session_id):
                self.backend.export_session(session_id, fmt, destination)
            return None

        session = self.snapshot()
        if session is None:
            raise NotFoundError("No active session", operation="export")
        with _context("export", session.id):
            if destination is None:
                return render_session(session, fmt)
            try:
                write_export(session, fmt, destination)
            except OSError as e:
                raise StorageIOError(f"Failed to write export: {e}") from e
        return None

    def tag(self, tag: str) -> bool:
        with self._lock:
            return self.current.add_tag(tag)

    def untag(self, tag: str) -> bool:
        with self._lock:
            return self.current.remove_tag(tag)

    # Messages and attachments

    def add_message(self, role: Role, content: str) -> Message:
        """Append a message; user messages pick up the pending attachments."""
        with self._lock:
            session = self.current
            pending = list_pending(session) if role == "user" else []
            message = Message(role=role, content=content, attachments=pending)
            session.conversation.add_message(message)
            if pending:
                consume_pending(session)
            session.touch()
        if self.recovery is not None:
            self.recovery.checkpoint_async()
        return message

    def attach(self, path: str) -> Attachment:
        with _context("attach"):
            attachment = attachment_from_path(path)
        with self._lock:
            stage_attachment(self.current, attachment)
        return attachment

    def pending_attachments(self) -> list[Attachment]:
        with self._lock:
            return list_pending(self.current)

    def detach(self, name: str) -> Attachment:
        with self._lock:
            return remove_pending(self.current, name)

    # Branching

    def branch(self, name: str, at_index: int | None = None) -> Session:
        """Fork the active session; the active session stays the parent."""
        with self._lock:
            parent = self.current.model_copy(deep=True)
            index = len(parent.messages) if at_index is None else at_index
            with _context("branch", parent.id):
                child = create_branch(parent, index, name)
                self.backend.save_session(child)
                try:
                    self.backend.save_session(parent)
                except ParleyError:
                    self._discard_branch(child.id)
                    raise
            self._activate(parent, saved=True)
        return child

    def _discard_branch(self, session_id: str) -> None:
        """Remove a child whose parent could not be updated to list it."""
        try:
            self.backend.delete_session(session_id)
        except ParleyError as e:
            logger.error(f"Failed to remove orphaned branch {session_id}: {e}")

    def branches(self) -> list[SessionInfo]:
        """Children of the active session, or its siblings when it is a branch."""
        session = self.current
        parent_id = session.parent_id or session.id
        with _context("branches", parent_id):
            return self.backend.get_children(parent_id)

    def tree(self) -> BranchTree:
        session = self.snapshot()
        if session is None:
            raise NotFoundError("No active session", operation="tree")
        root_id = find_root(self.backend.load_session, session)
        try:
            with _context("tree", root_id):
                return self.backend.get_branch_tree(root_id)
        except NotFoundError:
            # Active session has never been saved.
            return BranchTree(session=session.to_info())

    def merge(self, source_id: str, options: MergeOptions | None = None) -> MergeResult:
        """Merge a stored session into the active one.

        Works on copies and persists before swapping the active session, so
        a failure anywhere leaves the active session exactly as it was.
        """
        options = options or MergeOptions()
        with _context("merge", source_id):
            source = self.backend.load_session(source_id)
        with self._lock:
            target = self.current
            with _context("merge", target.id):
                merged, target_after, result = execute_merge(target, source, options)
                self.backend.save_session(merged)
                if merged is not target_after:
                    try:
                        self.backend.save_session(target_after)
                    except ParleyError:
                        self._discard_branch(merged.id)
                        raise
            self._activate(target_after, saved=True)
        return result

    # Recovery

    def recovery_status(self) -> RecoveryStatus | None:
        return self.recovery.status if self.recovery is not None else None

    def recover(self) -> tuple[Session, str | None]:
        """Restore the checkpointed session and make it active.

        Like ``switch``, the current session is saved first and a failed save
        comes back as a warning.
        """
        if self.recovery is None:
            raise NotFoundError("Auto-recovery is not enabled", operation="recover")
        with self._lock:
            warning = self._save_quietly() if self.session is not None else None
            with _context("recover"):
                session = self.recovery.recover()
            self._activate(session, saved=True)
        self.recovery.start(self.snapshot)
        return session, warning

    def discard_recovery(self) -> None:
        if self.recovery is None:
            raise NotFoundError("Auto-recovery is not enabled", operation="recover")
        with _context("recover"):
            self.recovery.discard()
        self.recovery.start(self.snapshot)

    def checkpoint(self) -> bool:
        if self.recovery is None:
            raise NotFoundError("Auto-recovery is not enabled", operation="checkpoint")
        with _context("checkpoint"):
            return self.recovery.save_checkpoint(self.snapshot())
