import io

import pytest

from parley.commands import SessionCommands
from parley.manager import SessionManager
from parley.repl import ParleyREPL, litellm_responder, route
from parley.storage import MemoryBackend


def _scripted(lines, end=EOFError):
    pending = list(lines)

    def read_line(prompt):
        if not pending:
            raise end()
        return pending.pop(0)

    return read_line


@pytest.fixture
def manager():
    manager = SessionManager(MemoryBackend(), model="openai/gpt-4o", system_prompt="sys")
    manager.start(name="Chat")
    return manager


def test_route(manager):
    commands = SessionCommands(manager, out=io.StringIO())
    assert route(commands, "hello").kind == "prompt"
    result = route(commands, "/branch alt at 2")
    assert (result.kind, result.name, result.args) == ("builtin", "branch", "alt at 2")
    assert route(commands, "/frobnicate").kind == "unknown"


def test_conversation_round_trip(manager):
    seen = []

    def responder(history):
        seen.append(history)
        return "pong"

    out = io.StringIO()
    repl = ParleyREPL(manager, responder, out=out, read_line=_scripted(["ping", "", "/quit"]))
    repl.run()

    assert seen == [[{"role": "system", "content": "sys"}, {"role": "user", "content": "ping"}]]
    assert [m.role for m in manager.current.messages] == ["user", "assistant"]
    assert "pong" in out.getvalue()
    assert "Goodbye" in out.getvalue()
    assert not repl.interrupted


def test_commands_and_unknown_input(manager):
    out = io.StringIO()
    repl = ParleyREPL(
        manager,
        lambda history: "unused",
        out=out,
        read_line=_scripted(["/tag work", "/frobnicate"]),
    )
    repl.run()
    assert manager.current.tags == ["work"]
    assert "Unknown command: /frobnicate" in out.getvalue()


def test_responder_failure_keeps_loop_running(manager):
    calls = []

    def responder(history):
        calls.append(history)
        if len(calls) == 1:
            raise RuntimeError("provider down")
        return "ok"

    out = io.StringIO()
    repl = ParleyREPL(manager, responder, out=out, read_line=_scripted(["first", "second"]))
    repl.run()
    assert "provider down" in out.getvalue()
    assert manager.current.messages[-1].content == "ok"


def test_keyboard_interrupt_marks_unclean_exit(manager):
    out = io.StringIO()
    repl = ParleyREPL(
        manager, lambda history: "", out=out, read_line=_scripted([], end=KeyboardInterrupt)
    )
    repl.run()
    assert repl.interrupted
    assert "Interrupted" in out.getvalue()


def test_autosave_after_each_reply():
    backend = MemoryBackend()
    manager = SessionManager(backend, autosave_interval=3600)
    manager.start()
    repl = ParleyREPL(
        manager, lambda history: "saved", out=io.StringIO(), read_line=_scripted(["hi"])
    )
    try:
        repl.run()
        stored = backend.load_session(manager.current.id)
        assert [m.content for m in stored.messages] == ["hi", "saved"]
    finally:
        manager.close()


def test_litellm_responder_uses_conversation_settings(manager, monkeypatch):
    calls = []

    def fake_reply_text(**kwargs):
        calls.append(kwargs)
        return "hi there"

    monkeypatch.setattr("parley.repl.reply_text", fake_reply_text)
    manager.current.conversation.set_parameters(temperature=0.4, max_tokens=64)
    respond = litellm_responder(manager, "gpt-4o-mini")

    assert respond([{"role": "user", "content": "hi"}]) == "hi there"
    assert calls == [
        {
            "model": "openai/gpt-4o",
            "messages": [{"role": "user", "content": "hi"}],
            "temperature": 0.4,
            "max_tokens": 64,
        }
    ]
