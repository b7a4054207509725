"""Branch and merge operations over in-memory sessions.

Nothing here touches storage: callers load sessions, run these functions on
them, and persist the results. Every function that produces a new transcript
works on deep copies, so a failure part-way through leaves its inputs as they
were.
"""

import copy
import logging
from typing import Callable, Iterable

from common.ids import generate_id, generate_session_id
from parley.errors import InvalidBranchPointError, MergeError, ParleyError
from parley.models import (
    BranchTree,
    Conversation,
    MergeOptions,
    MergeResult,
    MergeType,
    Message,
    Session,
    SessionInfo,
    utc_now,
)

logger = logging.getLogger(__name__)


def _clone_messages(messages: Iterable[Message], taken: set[str]) -> list[Message]:
    cloned = []
    for msg in messages:
        new_id = generate_id()
        while new_id in taken:
            new_id = generate_id()
        taken.add(new_id)
        cloned.append(msg.clone(new_id=new_id))
    return cloned


def create_branch(
    source: Session,
    at_index: int,
    name: str,
    branch_id: str | None = None,
) -> Session:
    """Fork ``source`` at ``at_index`` into a new child session.

    The child holds copies of ``source.messages[:at_index]`` with fresh message
    ids, and inherits the generation settings, config and tags. The child id is
    recorded on ``source.child_ids``; both sessions still have to be saved.
    """
    count = len(source.messages)
    if isinstance(at_index, bool) or not isinstance(at_index, int) or not 0 <= at_index <= count:
        raise InvalidBranchPointError(
            f"Branch point {at_index} is outside 0..{count}",
            operation="branch",
            session_id=source.id,
        )

    branch_id = branch_id or generate_session_id()
    now = utc_now()
    src_conv = source.conversation
    conversation = Conversation(
        id=branch_id,
        model=src_conv.model,
        provider=src_conv.provider,
        temperature=src_conv.temperature,
        max_tokens=src_conv.max_tokens,
        system_prompt=src_conv.system_prompt,
        created=now,
        updated=now,
        messages=_clone_messages(src_conv.messages[:at_index], set()),
        metadata=copy.deepcopy(src_conv.metadata),
    )
    branch = Session(
        id=branch_id,
        name=name,
        conversation=conversation,
        config=copy.deepcopy(source.config),
        created=now,
        updated=now,
        tags=list(source.tags),
        parent_id=source.id,
        branch_point=at_index,
        branch_name=name,
    )
    source.add_child(branch_id)
    logger.info(
        f"Created branch {branch_id} ({name!r}) from {source.id} at message {at_index}"
    )
    return branch


def execute_merge(
    target: Session,
    source: Session,
    options: MergeOptions | None = None,
    branch_id: str | None = None,
) -> tuple[Session, Session, MergeResult]:
    """Combine ``source``'s transcript into ``target``.

    ``continuation`` appends every source message after the target's messages.
    ``rebase`` keeps the target's first ``merge_point`` messages and appends the
    source messages after them. Source messages are copied with fresh ids and
    keep their original timestamps.

    Returns ``(merged, target_after, result)``. Without ``create_branch``,
    ``merged`` is the updated copy of the target and ``target_after`` is the
    same object. With ``create_branch``, ``merged`` is a new child of the
    target and ``target_after`` is a copy of the target that lists it as a
    child. ``target`` and ``source`` themselves are never modified.
    """
    options = options or MergeOptions()
    if source.id == target.id:
        raise MergeError(
            "Cannot merge a session into itself", operation="merge", session_id=target.id
        )

    target_after = target.model_copy(deep=True)
    count = len(target_after.messages)
    if options.type == MergeType.REBASE:
        merge_point = count if options.merge_point is None else options.merge_point
        if not 0 <= merge_point <= count:
            raise MergeError(
                f"Merge point {merge_point} is outside 0..{count}",
                operation="merge",
                session_id=target.id,
            )
    else:
        merge_point = count

    if options.create_branch:
        name = options.branch_name or f"Merge of {source.name}"
        merged = create_branch(target_after, merge_point, name, branch_id=branch_id)
    else:
        merged = target_after
        merged.conversation.messages = merged.conversation.messages[:merge_point]

    taken = {m.id for m in merged.messages}
    incoming = _clone_messages(source.messages, taken)
    merged.conversation.messages.extend(incoming)
    merged.conversation.updated = utc_now()
    merged.metadata["merge_source"] = source.id
    merged.metadata["merge_target"] = target.id
    merged.metadata["merge_type"] = options.type.value
    merged.metadata["merged_at"] = utc_now().isoformat()
    merged.touch()

    result = MergeResult(
        target_id=target.id,
        source_id=source.id,
        session_id=merged.id,
        merged_count=len(incoming),
        new_branch_id=merged.id if options.create_branch else None,
    )
    logger.info(
        f"Merged {len(incoming)} message(s) from {source.id} into {merged.id} "
        f"({options.type.value})"
    )
    return merged, target_after, result


def build_tree(
    root: SessionInfo, children_of: Callable[[str], list[SessionInfo]]
) -> BranchTree:
    """Resolve the descendants of ``root`` into a tree.

    Terminates on cyclic parent pointers, and a child whose own children
    cannot be resolved becomes a leaf instead of aborting the walk.
    """
    tree = BranchTree(session=root)
    visited = {root.id}
    stack = [tree]
    while stack:
        node = stack.pop()
        try:
            children = children_of(node.session.id)
        except ParleyError as e:
            logger.debug(f"Treating {node.session.id} as a leaf: {e}")
            children = []
        for child in children:
            if child.id in visited:
                logger.warning(f"Ignoring repeated branch reference to {child.id}")
                continue
            visited.add(child.id)
            child_node = BranchTree(session=child)
            node.children.append(child_node)
            stack.append(child_node)
    return tree


def find_root(load: Callable[[str], Session], session: Session) -> str:
    """Follow parent pointers up to the furthest resolvable ancestor."""
    current = session
    seen = {session.id}
    while current.parent_id and current.parent_id not in seen:
        try:
            current = load(current.parent_id)
        except ParleyError as e:
            logger.debug(f"Stopping root lookup at {current.id}: {e}")
            break
        seen.add(current.id)
    return current.id


def render_tree(tree: BranchTree, current_id: str | None = None) -> str:
    lines: list[str] = []

    def _label(info: SessionInfo) -> str:
        marker = " *" if info.id == current_id else ""
        return f"{info.name} (ID: {info.id}) - {info.message_count} messages{marker}"

    def _walk(node: BranchTree, prefix: str) -> None:
        for i, child in enumerate(node.children):
            last = i == len(node.children) - 1
            lines.append(f"{prefix}{'└─ ' if last else '├─ '}{_label(child.session)}")
            _walk(child, prefix + ("   " if last else "│  "))

    lines.append(_label(tree.session))
    _walk(tree, "")
    return "\n".join(lines)
