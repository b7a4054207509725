import logging
import re
from typing import Iterable

from parley.models import SearchMatch, SearchResult, Session

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_CHARS = 50
ELLIPSIS = "..."


def _find(content: str, query: str) -> re.Match | None:
    if not content or not query:
        return None
    return re.search(re.escape(query), content, re.IGNORECASE)


def extract_snippet(
    content: str, start: int, end: int, context_chars: int = DEFAULT_CONTEXT_CHARS
) -> str:
    """Cut ``content`` around ``[start, end)`` without splitting a word."""
    lo = max(0, start - context_chars)
    hi = min(len(content), end + context_chars)
    while lo > 0 and not content[lo - 1].isspace():
        lo -= 1
    while hi < len(content) and not content[hi].isspace():
        hi += 1
    snippet = content[lo:hi]
    if lo > 0:
        snippet = ELLIPSIS + snippet.lstrip()
    if hi < len(content):
        snippet = snippet.rstrip() + ELLIPSIS
    return snippet


def _match(
    match_type: str,
    content: str,
    query: str,
    *,
    role: str = "",
    message_index: int = -1,
    context_chars: int = DEFAULT_CONTEXT_CHARS,
) -> SearchMatch | None:
    found = _find(content, query)
    if found is None:
        return None
    return SearchMatch(
        type=match_type,
        role=role,
        content=content,
        context=extract_snippet(content, found.start(), found.end(), context_chars),
        position=found.start(),
        message_index=message_index,
    )


def search_session(
    session: Session, query: str, context_chars: int = DEFAULT_CONTEXT_CHARS
) -> SearchResult | None:
    if not query:
        return None

    candidates = [_match("name", session.name, query, context_chars=context_chars)]
    for i, msg in enumerate(session.conversation.messages):
        candidates.append(
            _match(
                "message",
                msg.content,
                query,
                role=msg.role,
                message_index=i,
                context_chars=context_chars,
            )
        )
    candidates.append(
        _match(
            "system_prompt",
            session.conversation.system_prompt or "",
            query,
            context_chars=context_chars,
        )
    )
    for tag in session.tags:
        candidates.append(_match("tag", tag, query, context_chars=context_chars))

    matches = [m for m in candidates if m is not None]
    if not matches:
        return None
    return SearchResult(session=session.to_info(), matches=matches)


def search_sessions(
    sessions: Iterable[Session], query: str, context_chars: int = DEFAULT_CONTEXT_CHARS
) -> list[SearchResult]:
    results: list[SearchResult] = []
    seen: set[str] = set()
    for session in sessions:
        if session.id in seen:
            continue
        result = search_session(session, query, context_chars)
        if result is None:
            continue
        seen.add(session.id)
        results.append(result)
    logger.info(f"Search for {query!r} matched {len(results)} session(s)")
    return results
