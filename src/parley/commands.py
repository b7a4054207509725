import shlex
import sys
from typing import TextIO

from parley.branching import render_tree
from parley.errors import ParleyError
from parley.manager import SessionManager
from parley.models import MergeOptions, MergeType
from parley.recovery import RecoveryStatus

_TIME_FORMAT = "%Y-%m-%d %H:%M"

HELP_TEXT = {
    "save": "/save [name]              save the current session",
    "load": "/load <id>                load a saved session",
    "sessions": "/sessions                 list saved sessions",
    "search": "/search <query>           search saved sessions",
    "export": "/export <json|markdown> [path]  export the current session",
    "branch": "/branch <name> [at <n>]   branch the conversation",
    "branches": "/branches                 list branches",
    "tree": "/tree                     show the branch tree",
    "switch": "/switch <id>              switch to another session",
    "merge": "/merge <id> [--type continuation|rebase] [--create-branch] [--branch-name <name>]",
    "recover": "/recover [check|save|clear|restore]  crash recovery",
    "attach": "/attach <path>            attach a file to the next message",
    "attachments": "/attachments              list pending attachments",
    "detach": "/detach <name>            remove a pending attachment",
    "tag": "/tag <tag>                tag the current session",
    "untag": "/untag <tag>              remove a tag",
    "delete": "/delete <id>              delete a saved session",
    "new": "/new [name]               start a new session",
    "help": "/help                     show this help",
    "quit": "/quit                     save and exit",
}


class SessionCommands:
    """Slash commands that act on the session manager.

    Each handler takes the raw argument string and returns False only when
    the REPL should stop.
    """

    def __init__(self, manager: SessionManager, out: TextIO | None = None):
        self.manager = manager
        self.out = out or sys.stdout
        self._handlers = {
            "quit": self.cmd_quit,
            "exit": self.cmd_quit,
            "save": self.cmd_save,
            "load": self.cmd_load,
            "sessions": self.cmd_sessions,
            "search": self.cmd_search,
            "export": self.cmd_export,
            "branch": self.cmd_branch,
            "branches": self.cmd_branches,
            "tree": self.cmd_tree,
            "switch": self.cmd_switch,
            "merge": self.cmd_merge,
            "recover": self.cmd_recover,
            "attach": self.cmd_attach,
            "attachments": self.cmd_attachments,
            "detach": self.cmd_detach,
            "tag": self.cmd_tag,
            "untag": self.cmd_untag,
            "delete": self.cmd_delete,
            "new": self.cmd_new,
            "help": self.cmd_help,
        }

    def _print(self, text: str = "") -> None:
        print(text, file=self.out)

    def list_commands(self) -> list[str]:
        return sorted(self._handlers.keys())

    def has_command(self, name: str) -> bool:
        return name in self._handlers

    def handle(self, name: str, args: str) -> bool:
        handler = self._handlers.get(name)
        if not handler:
            return True
        try:
            return handler(args.strip())
        except ParleyError as e:
            self._print(f"❌ {e}")
            return True

    def cmd_quit(self, args: str) -> bool:
        self._print("👋 Goodbye!")
        return False

    def cmd_save(self, args: str) -> bool:
        session = self.manager.save(args or None)
        self._print(f"✅ Session saved: {session.name} (ID: {session.id})")
        return True

    def cmd_load(self, args: str) -> bool:
        if not args:
            self._print("Usage: /load <id>")
            return True
        session, warning = self.manager.switch(args)
        if warning:
            self._print(f"⚠️  Current session was not saved: {warning}")
        self._print(
            f"✅ Loaded session {session.name} (ID: {session.id}, "
            f"{len(session.messages)} messages)"
        )
        return True

    def cmd_sessions(self, args: str) -> bool:
        sessions = self.manager.list_sessions()
        if not sessions:
            self._print("No saved sessions")
            return True
        current = self.manager.session.id if self.manager.session else None
        self._print("Sessions:")
        for info in sessions:
            marker = "*" if info.id == current else " "
            tags = f" [{', '.join(info.tags)}]" if info.tags else ""
            self._print(
                f"{marker} {info.id} - {info.name} ({info.message_count} messages, "
                f"updated {info.updated.strftime(_TIME_FORMAT)}){tags}"
            )
        return True

    def cmd_search(self, args: str) -> bool:
        if not args:
            self._print("Usage: /search <query>")
            return True
        results = self.manager.search(args)
        if not results:
            self._print(f"No sessions match '{args}'")
            return True
        self._print(f"Found {len(results)} session(s) matching '{args}':")
        for result in results:
            self._print(f"\n  {result.session.name} (ID: {result.session.id})")
            for match in result.matches:
                label = match.role or match.type
                self._print(f"    {label}: {match.context}")
        return True

    def cmd_export(self, args: str) -> bool:
        parts = args.split(maxsplit=1)
        if not parts:
            self._print("Usage: /export <json|markdown> [path]")
            return True
        fmt = parts[0]
        if len(parts) == 1:
            self._print(self.manager.export(fmt))
            return True
        self.manager.export(fmt, parts[1])
        self._print(f"✅ Exported session to {parts[1]}")
        return True

    def cmd_branch(self, args: str) -> bool:
        parts = shlex.split(args)
        if not parts:
            self._print("Usage: /branch <name> [at <message_index>]")
            return True
        at_index = None
        if len(parts) >= 3 and parts[-2] == "at":
            try:
                at_index = int(parts[-1])
            except ValueError:
                self._print(f"❌ Invalid message index: {parts[-1]}")
                return True
            parts = parts[:-2]
        name = " ".join(parts)
        branch = self.manager.branch(name, at_index)
        self._print(
            f"✅ Created branch '{name}' (ID: {branch.id}) at message {branch.branch_point}"
        )
        self._print(f"To switch to this branch, use: /switch {branch.id}")
        return True

    def cmd_branches(self, args: str) -> bool:
        session = self.manager.current
        children = self.manager.branches()
        if session.is_branch:
            self._print("Branches of the parent session:")
        else:
            self._print("Branches of the current session:")
        if not children:
            self._print("No branches found.")
            return True
        for child in children:
            marker = "*" if child.id == session.id else " "
            self._print(
                f"{marker} {child.branch_name or child.name} (ID: {child.id}) - "
                f"{child.message_count} messages, created {child.created.strftime(_TIME_FORMAT)}"
            )
        return True

    def cmd_tree(self, args: str) -> bool:
        tree = self.manager.tree()
        self._print("Session Branch Tree:")
        self._print(render_tree(tree, self.manager.current.id))
        return True

    def cmd_switch(self, args: str) -> bool:
        if not args:
            self._print("Usage: /switch <session_id>")
            return True
        session, warning = self.manager.switch(args)
        if warning:
            self._print(f"⚠️  Current session was not saved: {warning}")
        self._print(f"✅ Switched to '{session.name}' (ID: {session.id})")
        if session.is_branch:
            self._print(f"Branch of: {session.parent_id} at message {session.branch_point}")
        self._print(f"Messages: {len(session.messages)}")
        return True

    def cmd_merge(self, args: str) -> bool:
        usage = (
            "Usage: /merge <source_id> [--type continuation|rebase] "
            "[--merge-point <n>] [--create-branch] [--branch-name <name>]"
        )
        parts = shlex.split(args)
        if not parts:
            self._print(usage)
            return True
        source_id, rest = parts[0], parts[1:]
        options = MergeOptions()
        i = 0
        while i < len(rest):
            flag = rest[i]
            if flag == "--create-branch":
                options.create_branch = True
            elif flag in ("--type", "--merge-point", "--branch-name") and i + 1 < len(rest):
                i += 1
                value = rest[i]
                if flag == "--type":
                    try:
                        options.type = MergeType(value)
                    except ValueError:
                        self._print(f"❌ Invalid merge type: {value}")
                        return True
                elif flag == "--merge-point":
                    try:
                        options.merge_point = int(value)
                    except ValueError:
                        self._print(f"❌ Invalid merge point: {value}")
                        return True
                else:
                    options.branch_name = value
            else:
                self._print(usage)
                return True
            i += 1

        result = self.manager.merge(source_id, options)
        self._print(
            f"✅ Merged {result.merged_count} messages from {result.source_id} "
            f"into {result.target_id}"
        )
        if result.new_branch_id:
            self._print(f"Created new branch: {result.new_branch_id}")
            self._print(f"To switch to it, use: /switch {result.new_branch_id}")
        return True

    def cmd_recover(self, args: str) -> bool:
        recovery = self.manager.recovery
        if recovery is None:
            self._print("Auto-recovery is not enabled")
            return True
        sub = args or "status"
        if sub in ("status", "check"):
            state = recovery.pending or recovery.check()
            if state is None:
                self._print("No recovery state found")
                return True
            self._print("Recovery state found:")
            self._print(f"  Session ID: {state.session_id}")
            self._print(f"  Session Name: {state.session_name}")
            self._print(f"  Messages: {state.message_count}")
            self._print(f"  Last Saved: {state.timestamp.strftime('%Y-%m-%d %H:%M:%S')}")
            self._print(f"  Storage Backend: {state.storage_backend}")
            if recovery.status == RecoveryStatus.RECOVERABLE:
                self._print("Use /recover restore or /recover clear to resolve it")
        elif sub == "save":
            if self.manager.checkpoint():
                self._print("✅ Recovery state saved")
            else:
                self._print("Nothing to save")
        elif sub == "clear":
            self.manager.discard_recovery()
            self._print("✅ Recovery state cleared")
        elif sub == "restore":
            session, warning = self.manager.recover()
            if warning:
                self._print(f"⚠️  Current session was not saved: {warning}")
            self._print(
                f"✅ Recovered session {session.name} (ID: {session.id}, "
                f"{len(session.messages)} messages)"
            )
        else:
            self._print(f"❌ Unknown recover subcommand: {sub} (use check, save, clear, or restore)")
        return True

    def cmd_attach(self, args: str) -> bool:
        if not args:
            self._print("Usage: /attach <path>")
            return True
        attachment = self.manager.attach(args)
        self._print(f"📎 Attached: {attachment.display_name()} ({attachment.mime_type})")
        return True

    def cmd_attachments(self, args: str) -> bool:
        pending = self.manager.pending_attachments()
        if not pending:
            self._print("No pending attachments.")
            return True
        self._print(f"Pending attachments ({len(pending)}):")
        for i, attachment in enumerate(pending, 1):
            self._print(f"{i}. {attachment.display_name()} ({attachment.mime_type})")
        return True

    def cmd_detach(self, args: str) -> bool:
        if not args:
            self._print("Usage: /detach <name>")
            return True
        self.manager.detach(args)
        self._print(f"✅ Removed attachment: {args}")
        return True

    def cmd_tag(self, args: str) -> bool:
        if not args:
            self._print("Usage: /tag <tag>")
            return True
        if self.manager.tag(args):
            self._print(f"✅ Added tag: {args}")
        else:
            self._print(f"Tag already present: {args}")
        return True

    def cmd_untag(self, args: str) -> bool:
        if not args:
            self._print("Usage: /untag <tag>")
            return True
        if self.manager.untag(args):
            self._print(f"✅ Removed tag: {args}")
        else:
            self._print(f"❌ Tag not found: {args}")
        return True

    def cmd_delete(self, args: str) -> bool:
        if not args:
            self._print("Usage: /delete <id>")
            return True
        self.manager.delete(args)
        self._print(f"✅ Deleted session {args}")
        return True

    def cmd_new(self, args: str) -> bool:
        session = self.manager.new_session(args or None)
        self._print(f"✅ Started new session: {session.name} (ID: {session.id})")
        return True

    def cmd_help(self, args: str) -> bool:
        self._print("\nCommands:")
        for name in self.list_commands():
            self._print(f"  {HELP_TEXT.get(name, '/' + name)}")
        self._print()
        return True
