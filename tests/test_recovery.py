import json
import signal
import time
from datetime import timedelta

import pytest

from common.jsonio import atomic_write_json
from parley.errors import NotFoundError, RecoveryStaleError, StorageIOError
from parley.models import Message, RecoveryState, Session, utc_now
from parley.recovery import RecoveryManager, RecoveryStatus
from parley.storage import MemoryBackend


@pytest.fixture
def backend():
    backend = MemoryBackend()
    yield backend
    backend.close()


def _session(*contents: str, session_id: str = "20240101-120000-000000-abcdef12") -> Session:
    session = Session.create(session_id, "Crashy")
    for content in contents:
        session.conversation.add_message(Message(role="user", content=content))
    return session


def _crash_with(config, backend, session: Session) -> None:
    """Leave a checkpoint behind as if the process had died."""
    previous = RecoveryManager(config, backend)
    previous.start(lambda: session.model_copy(deep=True))
    previous.save_checkpoint()
    previous.stop(clean=False)


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestStartup:
    def test_no_checkpoint(self, recovery_config, backend):
        manager = RecoveryManager(recovery_config, backend)
        assert manager.status == RecoveryStatus.IDLE
        assert manager.check() is None

    def test_existing_checkpoint_is_recoverable(self, recovery_config, backend):
        _crash_with(recovery_config, backend, _session("a", "b"))
        manager = RecoveryManager(recovery_config, backend)
        assert manager.status == RecoveryStatus.RECOVERABLE
        assert manager.pending.message_count == 2
        assert manager.pending.session_name == "Crashy"
        assert manager.pending.storage_backend == "memory"

    def test_start_refused_while_recoverable(self, recovery_config, backend):
        _crash_with(recovery_config, backend, _session("a"))
        manager = RecoveryManager(recovery_config, backend)
        assert not manager.start(lambda: _session("new"))
        assert manager.status == RecoveryStatus.RECOVERABLE
        assert not manager.save_checkpoint(_session("new"))
        assert manager.check().message_count == 1

    def test_expired_checkpoint_is_deleted(self, recovery_config, backend):
        state = RecoveryState(
            session_id="old",
            session_name="old",
            timestamp=utc_now() - timedelta(days=2),
            session=_session(session_id="old"),
        )
        atomic_write_json(recovery_config.recovery_path, state.model_dump(mode="json"))
        manager = RecoveryManager(recovery_config, backend)
        assert manager.status == RecoveryStatus.IDLE
        assert not recovery_config.recovery_path.exists()

    def test_strict_check_reports_stale(self, recovery_config, backend):
        manager = RecoveryManager(recovery_config, backend)
        state = RecoveryState(
            session_id="old",
            session_name="old",
            timestamp=utc_now() - timedelta(days=2),
        )
        atomic_write_json(recovery_config.recovery_path, state.model_dump(mode="json"))
        with pytest.raises(RecoveryStaleError):
            manager.check(strict=True)
        assert recovery_config.recovery_path.exists()

    def test_unreadable_checkpoint_is_ignored(self, recovery_config, backend):
        recovery_config.recovery_path.parent.mkdir(parents=True)
        recovery_config.recovery_path.write_text("{truncated", encoding="utf-8")
        manager = RecoveryManager(recovery_config, backend)
        assert manager.status == RecoveryStatus.IDLE
        assert manager.pending is None

    def test_disabled(self, recovery_config, backend):
        _crash_with(recovery_config, backend, _session("a"))
        recovery_config.enabled = False
        manager = RecoveryManager(recovery_config, backend)
        assert manager.status == RecoveryStatus.IDLE
        assert not manager.start(lambda: _session())


class TestCheckpoints:
    def test_save_checkpoint_writes_full_snapshot(self, recovery_config, backend):
        session = _session("hello")
        session.add_tag("x")
        manager = RecoveryManager(recovery_config, backend)
        manager.start(lambda: session)
        assert manager.status == RecoveryStatus.ARMED
        assert manager.save_checkpoint()

        data = json.loads(recovery_config.recovery_path.read_text(encoding="utf-8"))
        assert data["session_id"] == session.id
        assert data["message_count"] == 1
        assert data["session"]["tags"] == ["x"]
        assert data["app_version"]
        assert manager.last_save is not None
        manager.stop()

    def test_nothing_to_checkpoint(self, recovery_config, backend):
        manager = RecoveryManager(recovery_config, backend)
        manager.start(lambda: None)
        assert not manager.save_checkpoint()
        assert not recovery_config.recovery_path.exists()
        manager.stop()

    def test_backup_rotation(self, recovery_config, backend):
        recovery_config.backup_count = 2
        session = _session()
        manager = RecoveryManager(recovery_config, backend)
        manager.start(lambda: session)
        for i in range(4):
            session.conversation.add_message(Message(role="user", content=str(i)))
            manager.save_checkpoint()

        path = recovery_config.recovery_path
        counts = {
            p.name: json.loads(p.read_text(encoding="utf-8"))["message_count"]
            for p in path.parent.iterdir()
            if p.name.startswith(path.name)
        }
        assert counts == {"recovery.json": 4, "recovery.json.1": 3, "recovery.json.2": 2}
        manager.stop(clean=False)

    def test_checkpoint_async(self, recovery_config, backend):
        manager = RecoveryManager(recovery_config, backend)
        manager.start(lambda: _session("x"))
        thread = manager.checkpoint_async()
        thread.join(timeout=5)
        assert recovery_config.recovery_path.exists()
        manager.stop()

    def test_checkpoint_async_is_noop_when_not_armed(self, recovery_config, backend):
        manager = RecoveryManager(recovery_config, backend)
        assert manager.checkpoint_async() is None

    def test_async_failure_is_logged_not_raised(self, recovery_config, backend, monkeypatch, caplog):
        manager = RecoveryManager(recovery_config, backend)
        manager.start(lambda: _session("x"))

        def boom(*args, **kwargs):
            raise OSError("read-only")

        monkeypatch.setattr("parley.recovery.atomic_write_json", boom)
        manager.checkpoint_async().join(timeout=5)
        assert "Background recovery checkpoint failed" in caplog.text
        with pytest.raises(StorageIOError):
            manager.save_checkpoint()
        monkeypatch.undo()
        manager.stop()

    def test_timer_writes_checkpoints(self, recovery_config, backend):
        recovery_config.save_interval = 0.05
        manager = RecoveryManager(recovery_config, backend)
        manager.start(lambda: _session("tick"))
        try:
            assert _wait_for(recovery_config.recovery_path.exists)
        finally:
            manager.stop(clean=True)
        assert not recovery_config.recovery_path.exists()


class TestShutdown:
    def test_clean_stop_deletes_checkpoint(self, recovery_config, backend):
        manager = RecoveryManager(recovery_config, backend)
        manager.start(lambda: _session("a"))
        manager.save_checkpoint()
        manager.stop(clean=True)
        assert manager.status == RecoveryStatus.IDLE
        assert not recovery_config.recovery_path.exists()

    def test_unclean_stop_keeps_final_checkpoint(self, recovery_config, backend):
        session = _session("a")
        manager = RecoveryManager(recovery_config, backend)
        manager.start(lambda: session.model_copy(deep=True))
        session.conversation.add_message(Message(role="assistant", content="b"))
        manager.stop(clean=False)
        assert manager.check().message_count == 2

    def test_stop_leaves_unresolved_checkpoint(self, recovery_config, backend):
        _crash_with(recovery_config, backend, _session("a"))
        manager = RecoveryManager(recovery_config, backend)
        manager.stop(clean=True)
        assert recovery_config.recovery_path.exists()

    def test_sigterm_forces_checkpoint_that_survives(self, recovery_config, backend):
        manager = RecoveryManager(recovery_config, backend)
        manager.start(lambda: _session("before signal"))
        with pytest.raises(SystemExit):
            manager._handle_signal(signal.SIGTERM, None)
        assert manager.terminated
        manager.stop(clean=True)
        assert manager.check().session.messages[0].content == "before signal"

    def test_sigint_raises_keyboard_interrupt(self, recovery_config, backend):
        manager = RecoveryManager(recovery_config, backend)
        manager.start(lambda: _session("x"))
        with pytest.raises(KeyboardInterrupt):
            manager._handle_signal(signal.SIGINT, None)
        assert recovery_config.recovery_path.exists()
        manager.stop(clean=False)

    def test_install_and_restore_signal_handlers(self, recovery_config, backend):
        before = signal.getsignal(signal.SIGTERM)
        manager = RecoveryManager(recovery_config, backend)
        manager.install_signal_handlers()
        assert signal.getsignal(signal.SIGTERM) == manager._handle_signal
        manager.restore_signal_handlers()
        assert signal.getsignal(signal.SIGTERM) == before


class TestRecover:
    def test_recover_unsaved_session(self, recovery_config, backend):
        _crash_with(recovery_config, backend, _session("a", "b"))
        manager = RecoveryManager(recovery_config, backend)
        session = manager.recover()

        assert [m.content for m in session.messages] == ["a", "b"]
        assert backend.load_session(session.id).messages[1].content == "b"
        assert manager.status == RecoveryStatus.IDLE
        assert not recovery_config.recovery_path.exists()
        assert manager.start(lambda: session)
        manager.stop()

    def test_prefers_more_complete_stored_copy(self, recovery_config, backend):
        stored = _session("a", "b", "c")
        backend.save_session(stored)
        _crash_with(recovery_config, backend, _session("a"))
        session = RecoveryManager(recovery_config, backend).recover()
        assert len(session.messages) == 3

    def test_prefers_more_complete_checkpoint(self, recovery_config, backend):
        backend.save_session(_session("a"))
        _crash_with(recovery_config, backend, _session("a", "b"))
        session = RecoveryManager(recovery_config, backend).recover()
        assert len(session.messages) == 2
        assert len(backend.load_session(session.id).messages) == 2

    def test_failed_save_keeps_checkpoint(self, recovery_config, backend):
        _crash_with(recovery_config, backend, _session("a"))
        manager = RecoveryManager(recovery_config, backend)
        backend.close()
        with pytest.raises(StorageIOError):
            manager.recover()
        assert recovery_config.recovery_path.exists()
        assert manager.status == RecoveryStatus.RECOVERABLE

    def test_recover_without_checkpoint(self, recovery_config, backend):
        with pytest.raises(NotFoundError):
            RecoveryManager(recovery_config, backend).recover()

    def test_discard(self, recovery_config, backend):
        _crash_with(recovery_config, backend, _session("a"))
        manager = RecoveryManager(recovery_config, backend)
        manager.discard()
        assert manager.status == RecoveryStatus.IDLE
        assert manager.pending is None
        assert not recovery_config.recovery_path.exists()
