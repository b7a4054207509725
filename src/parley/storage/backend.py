import logging
from typing import Iterator, Protocol, TextIO, runtime_checkable

from common.ids import generate_session_id
from parley.branching import build_tree
from parley.errors import CorruptRecordError, NotFoundError, StorageIOError, UnsupportedFormatError
from parley.export import EXPORT_FORMATS, write_export
from parley.models import BranchTree, SearchResult, Session, SessionInfo
from parley.search import search_sessions

logger = logging.getLogger(__name__)


@runtime_checkable
class SessionBackend(Protocol):
    backend_type: str

    def new_session(self, name: str | None = None) -> Session: ...

    def save_session(self, session: Session) -> None:
        """Upsert by id and refresh ``session.updated``; all-or-nothing."""
        ...

    def load_session(self, session_id: str) -> Session: ...

    def list_sessions(self) -> list[SessionInfo]: ...

    def delete_session(self, session_id: str) -> None: ...

    def search_sessions(self, query: str) -> list[SearchResult]: ...

    def export_session(
        self, session_id: str, fmt: str, destination: str | TextIO
    ) -> None: ...

    def get_children(self, session_id: str) -> list[SessionInfo]: ...

    def get_branch_tree(self, session_id: str) -> BranchTree: ...

    def close(self) -> None: ...


class BaseBackend:
    """Behaviour shared by every backend; subclasses supply the medium."""

    backend_type = ""

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def new_session(self, name: str | None = None) -> Session:
        session = Session.create(generate_session_id(), name)
        logger.info(f"Created new session {session.id} ({session.name!r})")
        return session

    def save_session(self, session: Session) -> None:
        raise NotImplementedError

    def load_session(self, session_id: str) -> Session:
        raise NotImplementedError

    def delete_session(self, session_id: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def _session_ids(self) -> list[str]:
        raise NotImplementedError

    def iter_sessions(self) -> Iterator[Session]:
        """Yield every readable session, skipping records that fail to load."""
        for session_id in self._session_ids():
            try:
                yield self.load_session(session_id)
            except NotFoundError:
                continue
            except (CorruptRecordError, StorageIOError) as e:
                logger.debug(f"Skipping unreadable session {session_id}: {e}")
                continue

    def list_sessions(self) -> list[SessionInfo]:
        infos = [s.to_info() for s in self.iter_sessions()]
        infos.sort(key=lambda info: info.id)
        infos.sort(key=lambda info: info.updated, reverse=True)
        logger.debug(f"Listed {len(infos)} session(s) from {self.backend_type}")
        return infos

    def search_sessions(self, query: str) -> list[SearchResult]:
        return search_sessions(self.iter_sessions(), query)

    def export_session(self, session_id: str, fmt: str, destination: str | TextIO) -> None:
        if fmt not in EXPORT_FORMATS:
            raise UnsupportedFormatError(
                f"Unsupported export format: {fmt} (expected json or markdown)",
                operation="export",
                session_id=session_id,
            )
        session = self.load_session(session_id)
        try:
            write_export(session, fmt, destination)
        except OSError as e:
            raise StorageIOError(
                f"Failed to write export: {e}", operation="export", session_id=session_id
            ) from e

    def get_children(self, session_id: str) -> list[SessionInfo]:
        children = [s.to_info() for s in self.iter_sessions() if s.parent_id == session_id]
        children.sort(key=lambda info: (info.created, info.id))
        return children

    def get_branch_tree(self, session_id: str) -> BranchTree:
        root = self.load_session(session_id)
        by_parent: dict[str, list[SessionInfo]] = {}
        for session in self.iter_sessions():
            if session.parent_id:
                by_parent.setdefault(session.parent_id, []).append(session.to_info())
        for infos in by_parent.values():
            infos.sort(key=lambda info: (info.created, info.id))
        return build_tree(root.to_info(), lambda sid: by_parent.get(sid, []))
