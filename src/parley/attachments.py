"""File attachments and the pending-attachment staging area.

Attachments staged with ``/attach`` live in ``session.metadata`` under
``pending_attachments`` as plain dicts, so a session with staged files still
round-trips through every backend. They are moved onto the next user message.
"""

import logging
import mimetypes
from pathlib import Path

from parley.errors import NotFoundError, StorageIOError
from parley.models import PENDING_ATTACHMENTS_KEY, Attachment, Session

logger = logging.getLogger(__name__)

_MEDIA_EXTENSIONS = {
    "image": {".jpg", ".jpeg", ".png", ".gif", ".webp"},
    "audio": {".mp3", ".wav", ".ogg", ".m4a"},
    "video": {".mp4", ".avi", ".mov", ".webm"},
}
_TEXT_EXTENSIONS = {".txt", ".md", ".log", ".csv"}


def classify(path: str | Path) -> tuple[str, str]:
    """Return ``(attachment_type, mime_type)`` for a file name."""
    ext = Path(path).suffix.lower()
    for kind, extensions in _MEDIA_EXTENSIONS.items():
        if ext in extensions:
            guessed, _ = mimetypes.guess_type(f"x{ext}")
            return kind, guessed or f"{kind}/{ext.lstrip('.')}"
    if ext in _TEXT_EXTENSIONS:
        return "text", "text/plain"
    guessed, _ = mimetypes.guess_type(f"x{ext}") if ext else (None, None)
    return "file", guessed or "application/octet-stream"


def attachment_from_path(path: str | Path) -> Attachment:
    file_path = Path(path).expanduser()
    try:
        content = file_path.read_bytes()
    except FileNotFoundError as e:
        raise NotFoundError(f"No such file: {file_path}", operation="attach") from e
    except IsADirectoryError as e:
        raise NotFoundError(f"Not a file: {file_path}", operation="attach") from e
    except OSError as e:
        raise StorageIOError(f"Failed to read {file_path}: {e}", operation="attach") from e

    kind, mime_type = classify(file_path)
    return Attachment(
        type=kind,
        mime_type=mime_type,
        name=file_path.name,
        file_path=str(file_path),
        size=len(content),
        content=content,
    )


def list_pending(session: Session) -> list[Attachment]:
    raw = session.metadata.get(PENDING_ATTACHMENTS_KEY) or []
    return [Attachment.model_validate(item) for item in raw]


def stage_attachment(session: Session, attachment: Attachment) -> None:
    pending = list(session.metadata.get(PENDING_ATTACHMENTS_KEY) or [])
    pending.append(attachment.model_dump(mode="json"))
    session.metadata[PENDING_ATTACHMENTS_KEY] = pending
    session.touch()
    logger.debug(f"Staged {attachment.display_name()} on session {session.id}")


def remove_pending(session: Session, name: str) -> Attachment:
    """Unstage the first pending attachment whose display name is ``name``."""
    pending = list_pending(session)
    for i, attachment in enumerate(pending):
        if attachment.display_name() == name:
            del pending[i]
            if pending:
                session.metadata[PENDING_ATTACHMENTS_KEY] = [
                    a.model_dump(mode="json") for a in pending
                ]
            else:
                session.metadata.pop(PENDING_ATTACHMENTS_KEY, None)
            session.touch()
            return attachment
    raise NotFoundError(
        f"Attachment '{name}' not found", operation="detach", session_id=session.id
    )


def consume_pending(session: Session) -> list[Attachment]:
    if PENDING_ATTACHMENTS_KEY not in session.metadata:
        return []
    attachments = list_pending(session)
    del session.metadata[PENDING_ATTACHMENTS_KEY]
    return attachments
