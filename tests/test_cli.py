import json
import logging
import sys

import pytest

from parley.cli import JsonFormatter, _build_parser, _main
from parley.models import Message, Session
from parley.storage import FilesystemBackend


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ("PARLEY_STORAGE", "PARLEY_DATA_DIR", "PARLEY_MODEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PARLEY_HOME", str(tmp_path / "home"))


@pytest.fixture
def store(tmp_path):
    backend = FilesystemBackend(tmp_path / "data" / "sessions")
    root = Session.create("20240101-120000-000000-aaaaaaaa", "Trip planning")
    root.conversation.add_message(Message(role="user", content="Plan a trip to Kyoto"))
    root.add_tag("travel")
    child = Session.create("20240101-130000-000000-bbbbbbbb", "Budget")
    child.parent_id = root.id
    child.branch_name = "Budget"
    root.add_child(child.id)
    other = Session.create("20240102-120000-000000-cccccccc", "Groceries")
    for session in (root, child, other):
        backend.save_session(session)
    backend.close()
    return {"root": root, "child": child, "other": other}


def _sessions(tmp_path, *args):
    return _main(["sessions", "--data-dir", str(tmp_path / "data"), *args])


def test_parser_defaults_to_chat_options():
    args = _build_parser().parse_args(["chat", "--no-recovery", "--model", "gpt-4o-mini"])
    assert args.command == "chat"
    assert args.no_recovery
    assert args.model == "gpt-4o-mini"


def test_list(tmp_path, store, capsys):
    assert _sessions(tmp_path, "list") == 0
    out = capsys.readouterr().out
    assert "Trip planning" in out
    assert "Groceries" in out
    assert f"Budget (branch of {store['root'].id})" in out


def test_list_filters_by_tag_and_limit(tmp_path, store, capsys):
    assert _sessions(tmp_path, "list", "--tag", "travel") == 0
    out = capsys.readouterr().out
    assert "Trip planning" in out
    assert "Groceries" not in out

    assert _sessions(tmp_path, "list", "--limit", "1") == 0
    rows = capsys.readouterr().out.strip().splitlines()
    assert len(rows) == 2


def test_list_empty(tmp_path, capsys):
    assert _sessions(tmp_path) == 0
    assert "No sessions found." in capsys.readouterr().out


def test_show_and_search(tmp_path, store, capsys):
    assert _sessions(tmp_path, "show", store["root"].id) == 0
    assert "Plan a trip to Kyoto" in capsys.readouterr().out

    assert _sessions(tmp_path, "search", "kyoto") == 0
    out = capsys.readouterr().out
    assert store["root"].id in out
    assert "user: Plan a trip to Kyoto" in out


def test_export_to_file(tmp_path, store, capsys):
    target = tmp_path / "export.json"
    assert _sessions(tmp_path, "export", store["root"].id, "-o", str(target)) == 0
    data = json.loads(target.read_text(encoding="utf-8"))
    assert data["id"] == store["root"].id
    assert "Exported" in capsys.readouterr().err


def test_delete(tmp_path, store, capsys):
    assert _sessions(tmp_path, "delete", store["other"].id) == 0
    assert _sessions(tmp_path, "delete", store["other"].id) == 1
    assert "Error:" in capsys.readouterr().err


def test_tree_from_branch(tmp_path, store, capsys):
    assert _sessions(tmp_path, "tree", store["child"].id) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0].startswith("Trip planning (ID: ")
    assert lines[1].startswith("└─ Budget (ID: ")
    assert lines[1].endswith(" *")


def test_missing_session_exits_with_error(tmp_path, capsys):
    assert _sessions(tmp_path, "show", "nope") == 1
    assert "Error:" in capsys.readouterr().err


def test_invalid_config_file(tmp_path, capsys):
    assert _main(["sessions", "--config", str(tmp_path / "missing.yaml"), "list"]) == 1
    assert "Config file not found" in capsys.readouterr().err


def test_json_formatter_fields():
    record = logging.LogRecord(
        "parley.manager", logging.WARNING, __file__, 1, "saved %s", ("abc",), None
    )
    payload = json.loads(JsonFormatter().format(record))
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "parley.manager"
    assert payload["message"] == "saved abc"
    assert "exc_info" not in payload


def test_json_formatter_includes_exception():
    try:
        raise ValueError("bad")
    except ValueError:
        exc_info = sys.exc_info()
    record = logging.LogRecord("parley", logging.ERROR, __file__, 1, "failed", (), exc_info)
    payload = json.loads(JsonFormatter().format(record))
    assert "ValueError: bad" in payload["exc_info"]
