import json
import logging
from typing import TextIO

from parley.errors import UnsupportedFormatError
from parley.models import PENDING_ATTACHMENTS_KEY, Session

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "markdown")


def session_to_json(session: Session) -> str:
    data = session.model_dump(mode="json")
    data["metadata"].pop(PENDING_ATTACHMENTS_KEY, None)
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def session_to_markdown(session: Session) -> str:
    lines = [f"# Session: {session.name}", ""]
    lines.append(f"**ID:** {session.id}")
    lines.append(f"**Created:** {session.created.isoformat()}")
    lines.append(f"**Updated:** {session.updated.isoformat()}")
    if session.tags:
        lines.append(f"**Tags:** {', '.join(session.tags)}")
    lines.append("")

    conversation = session.conversation
    if conversation.system_prompt:
        lines += ["## System Prompt", "", conversation.system_prompt, ""]

    lines += ["## Conversation", ""]
    for msg in conversation.messages:
        lines.append(f"### {msg.role.capitalize()}")
        lines.append("")
        lines.append(f"*{msg.timestamp.isoformat()}*")
        lines.append("")
        lines.append(msg.content)
        lines.append("")
        if msg.attachments:
            lines.append("**Attachments:**")
            for att in msg.attachments:
                lines.append(f"- {att.display_name()} ({att.mime_type or att.type})")
            lines.append("")
    return "\n".join(lines)


def render_session(session: Session, fmt: str) -> str:
    if fmt == "json":
        return session_to_json(session)
    if fmt == "markdown":
        return session_to_markdown(session)
    raise UnsupportedFormatError(
        f"Unsupported export format: {fmt} (expected json or markdown)",
        operation="export",
        session_id=session.id,
    )


def write_export(session: Session, fmt: str, destination: str | TextIO) -> None:
    # Render before touching the destination so a bad format leaves no file.
    payload = render_session(session, fmt)
    if hasattr(destination, "write"):
        destination.write(payload)
    else:
        with open(destination, "w", encoding="utf-8") as handle:
            handle.write(payload)
    logger.info(f"Exported session {session.id} as {fmt}")
