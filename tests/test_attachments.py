import pytest

from parley.attachments import (
    attachment_from_path,
    classify,
    consume_pending,
    list_pending,
    remove_pending,
    stage_attachment,
)
from parley.errors import NotFoundError
from parley.models import PENDING_ATTACHMENTS_KEY, Session


@pytest.mark.parametrize(
    "name, kind",
    [
        ("photo.JPG", "image"),
        ("clip.mp3", "audio"),
        ("movie.mp4", "video"),
        ("notes.md", "text"),
        ("data.bin", "file"),
        ("README", "file"),
    ],
)
def test_classify(name, kind):
    assert classify(name)[0] == kind


def test_classify_mime_types():
    assert classify("a.png") == ("image", "image/png")
    assert classify("a.txt") == ("text", "text/plain")
    assert classify("noext") == ("file", "application/octet-stream")


def test_attachment_from_path(tmp_path):
    path = tmp_path / "pic.png"
    path.write_bytes(b"\x89PNG\r\n")
    attachment = attachment_from_path(path)
    assert attachment.type == "image"
    assert attachment.name == "pic.png"
    assert attachment.size == 6
    assert attachment.content == b"\x89PNG\r\n"
    assert attachment.file_path == str(path)


def test_attachment_from_missing_path(tmp_path):
    with pytest.raises(NotFoundError):
        attachment_from_path(tmp_path / "nope.txt")


def test_stage_list_remove(tmp_path):
    session = Session.create("s")
    for name in ("a.txt", "b.txt"):
        (tmp_path / name).write_text(name)
        stage_attachment(session, attachment_from_path(tmp_path / name))

    assert [a.name for a in list_pending(session)] == ["a.txt", "b.txt"]
    assert all(isinstance(item, dict) for item in session.metadata[PENDING_ATTACHMENTS_KEY])

    removed = remove_pending(session, "a.txt")
    assert removed.name == "a.txt"
    assert [a.name for a in list_pending(session)] == ["b.txt"]
    with pytest.raises(NotFoundError):
        remove_pending(session, "a.txt")

    remove_pending(session, "b.txt")
    assert PENDING_ATTACHMENTS_KEY not in session.metadata


def test_consume_pending_clears_once(tmp_path):
    session = Session.create("s")
    (tmp_path / "a.txt").write_text("hello")
    stage_attachment(session, attachment_from_path(tmp_path / "a.txt"))

    consumed = consume_pending(session)
    assert [a.content for a in consumed] == [b"hello"]
    assert PENDING_ATTACHMENTS_KEY not in session.metadata
    assert consume_pending(session) == []


def test_pending_attachments_survive_storage(backend, tmp_path):
    session = Session.create("20240101-120000-000000-abcdef12")
    (tmp_path / "a.bin").write_bytes(b"\x00\x01")
    stage_attachment(session, attachment_from_path(tmp_path / "a.bin"))
    backend.save_session(session)
    loaded = backend.load_session(session.id)
    assert [a.content for a in list_pending(loaded)] == [b"\x00\x01"]
