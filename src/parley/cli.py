import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from parley.branching import find_root, render_tree
from parley.config import STORAGE_BACKENDS, ParleyConfig
from parley.errors import ParleyError
from parley.export import EXPORT_FORMATS
from parley.storage import create_backend

logger = logging.getLogger(__name__)

_NOISY_LOGGERS = ("LiteLLM", "httpx", "httpcore")


class JsonFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(verbose: bool = False, quiet: bool = False, log_format: str = "text") -> None:
    level = logging.WARNING if quiet else logging.DEBUG if verbose else logging.INFO
    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"
            )
        )
    logging.basicConfig(level=level, handlers=[handler])
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def main() -> int:
    load_dotenv()
    return _main(sys.argv[1:])


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="YAML config file")
    common.add_argument("--storage", default=None, choices=STORAGE_BACKENDS)
    common.add_argument("--data-dir", default=None, help="Directory for sessions and recovery files")
    common.add_argument("-v", "--verbose", action="store_true")
    common.add_argument("-q", "--quiet", action="store_true")
    common.add_argument("--log-format", default="text", choices=["text", "json"])

    parser = argparse.ArgumentParser(prog="parley", description="Parley - persistent chat sessions")
    subparsers = parser.add_subparsers(dest="command", required=False)

    chat = subparsers.add_parser("chat", parents=[common], help="Start an interactive chat")
    chat.add_argument("--session", default=None, help="Resume a saved session id")
    chat.add_argument("--name", default=None, help="Name for a new session")
    chat.add_argument("--model", default=None, help="Model for new sessions (litellm name)")
    chat.add_argument("--no-recovery", action="store_true", help="Disable crash recovery")
    chat.add_argument("--no-autosave", action="store_true", help="Disable periodic auto-save")

    sessions = subparsers.add_parser("sessions", parents=[common], help="Manage saved sessions")
    sessions_sub = sessions.add_subparsers(dest="sessions_cmd", required=False)

    sessions_list = sessions_sub.add_parser("list", help="List sessions")
    sessions_list.add_argument("--limit", type=int, default=20)
    sessions_list.add_argument("--tag", default=None, help="Only sessions with this tag")

    sessions_show = sessions_sub.add_parser("show", help="Print a session")
    sessions_show.add_argument("session_id")
    sessions_show.add_argument("--format", default="markdown", choices=EXPORT_FORMATS)

    sessions_search = sessions_sub.add_parser("search", help="Search session content")
    sessions_search.add_argument("query")

    sessions_export = sessions_sub.add_parser("export", help="Export a session")
    sessions_export.add_argument("session_id")
    sessions_export.add_argument("--format", default="json", choices=EXPORT_FORMATS)
    sessions_export.add_argument("--output", "-o", default=None, help="File to write (default: stdout)")

    sessions_delete = sessions_sub.add_parser("delete", help="Delete a session")
    sessions_delete.add_argument("session_id")

    sessions_tree = sessions_sub.add_parser("tree", help="Show the branch tree of a session")
    sessions_tree.add_argument("session_id")

    return parser


def _load_config(args) -> ParleyConfig:
    config = ParleyConfig.from_file(args.config) if args.config else ParleyConfig.from_env()
    if args.storage:
        config.storage.backend = args.storage
    if args.data_dir:
        data_dir = Path(args.data_dir)
        config.storage.base_dir = str(data_dir / "sessions")
        config.storage.db_path = str(data_dir / "sessions.db")
        config.recovery.recovery_dir = str(data_dir / "recovery")
    if getattr(args, "model", None):
        config.model = args.model
    if getattr(args, "no_recovery", False):
        config.recovery.enabled = False
    if getattr(args, "no_autosave", False):
        config.autosave.enabled = False
    config.validate()
    return config


def _main(argv: list[str]) -> int:
    parser = _build_parser()
    if not argv or (argv[0].startswith("-") and argv[0] not in ("-h", "--help")):
        argv = ["chat", *argv]
    args = parser.parse_args(argv)

    quiet = args.quiet or (args.command == "chat" and not args.verbose)
    setup_logging(verbose=args.verbose, quiet=quiet, log_format=args.log_format)

    try:
        config = _load_config(args)
        if args.command == "chat":
            return _cmd_chat(args, config)
        return _cmd_sessions(args, config)
    except ParleyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _cmd_chat(args, config: ParleyConfig) -> int:
    from parley.manager import SessionManager
    from parley.recovery import RecoveryManager
    from parley.repl import ParleyREPL, litellm_responder

    backend = create_backend(config.storage)
    recovery = RecoveryManager(config.recovery, backend) if config.recovery.enabled else None
    manager = SessionManager(
        backend,
        recovery=recovery,
        autosave_interval=config.autosave.interval if config.autosave.enabled else None,
        model=config.model,
        system_prompt=config.system_prompt,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
    )
    try:
        manager.start(session_id=args.session, name=args.name)
    except ParleyError:
        backend.close()
        raise
    repl = ParleyREPL(manager, litellm_responder(manager, config.model))
    if recovery is not None:
        recovery.install_signal_handlers()
    try:
        repl.run()
    finally:
        manager.close(clean=not repl.interrupted)
        if recovery is not None:
            recovery.restore_signal_handlers()
    return 0


def _cmd_sessions(args, config: ParleyConfig) -> int:
    sub = args.sessions_cmd or "list"
    with create_backend(config.storage) as backend:
        if sub == "list":
            rows = backend.list_sessions()
            if getattr(args, "tag", None):
                rows = [info for info in rows if args.tag in info.tags]
            rows = rows[: max(0, int(getattr(args, "limit", 20)))]
            if not rows:
                print("No sessions found.")
                return 0
            print(f"{'ID':<33} {'Messages':<9} {'Updated':<17} {'Name'}")
            for info in rows:
                updated = info.updated.strftime("%Y-%m-%d %H:%M")
                branch = f" (branch of {info.parent_id})" if info.is_branch else ""
                print(f"{info.id:<33} {info.message_count:<9} {updated:<17} {info.name}{branch}")
            return 0

        if sub == "show":
            backend.export_session(args.session_id, args.format, sys.stdout)
            return 0

        if sub == "search":
            results = backend.search_sessions(args.query)
            if not results:
                print(f"No sessions match '{args.query}'")
                return 0
            for result in results:
                print(f"{result.session.id}  {result.session.name}")
                for match in result.matches:
                    print(f"    {match.role or match.type}: {match.context}")
            return 0

        if sub == "export":
            backend.export_session(args.session_id, args.format, args.output or sys.stdout)
            if args.output:
                print(f"Exported {args.session_id} to {args.output}", file=sys.stderr)
            return 0

        if sub == "delete":
            backend.delete_session(args.session_id)
            print(f"Deleted {args.session_id}")
            return 0

        if sub == "tree":
            root_id = find_root(backend.load_session, backend.load_session(args.session_id))
            tree = backend.get_branch_tree(root_id)
            print(render_tree(tree, args.session_id))
            return 0

    return 2
