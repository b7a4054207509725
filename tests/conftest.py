import pytest

from parley.config import AutoRecoveryConfig
from parley.models import Message, Session
from parley.storage import FilesystemBackend, MemoryBackend, SQLiteBackend


def _open_backend(kind: str, tmp_path):
    if kind == "filesystem":
        return FilesystemBackend(tmp_path / "sessions")
    if kind == "sqlite":
        return SQLiteBackend(tmp_path / "sessions.db")
    return MemoryBackend()


@pytest.fixture(params=["filesystem", "sqlite", "memory"])
def backend(request, tmp_path):
    backend = _open_backend(request.param, tmp_path)
    yield backend
    backend.close()


@pytest.fixture(params=["filesystem", "sqlite"])
def persistent_backend(request, tmp_path):
    backend = _open_backend(request.param, tmp_path)
    yield backend
    backend.close()


@pytest.fixture
def reopen(tmp_path):
    """Open a second backend over the same storage as ``persistent_backend``."""

    def _reopen(backend):
        return _open_backend(backend.backend_type, tmp_path)

    return _reopen


@pytest.fixture
def make_session():
    def _make(session_id: str = "20240101-120000-000000-deadbeef", name: str = "Test", messages=()):
        session = Session.create(session_id, name)
        session.conversation.set_model("openai/gpt-4o")
        for role, content in messages:
            session.conversation.add_message(Message(role=role, content=content))
        return session

    return _make


@pytest.fixture
def recovery_config(tmp_path):
    return AutoRecoveryConfig(
        enabled=True,
        save_interval=3600.0,
        max_recovery_age=3600.0,
        recovery_dir=str(tmp_path / "recovery"),
    )
