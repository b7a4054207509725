import logging
import sys
from dataclasses import dataclass
from typing import Callable, TextIO

from common.llm import reply_text
from parley.commands import SessionCommands
from parley.errors import ParleyError
from parley.manager import SessionManager

logger = logging.getLogger(__name__)

Responder = Callable[[list[dict]], str]


@dataclass(frozen=True)
class RouteResult:
    kind: str
    name: str | None
    args: str


def route(commands: SessionCommands, user_input: str) -> RouteResult:
    if not user_input.startswith("/"):
        return RouteResult(kind="prompt", name=None, args=user_input)

    parts = user_input.split(maxsplit=1)
    cmd = parts[0].lstrip("/")
    args = parts[1] if len(parts) > 1 else ""
    if commands.has_command(cmd):
        return RouteResult(kind="builtin", name=cmd, args=args)
    return RouteResult(kind="unknown", name=cmd, args=args)


def litellm_responder(manager: SessionManager, default_model: str) -> Responder:
    """Reply using the active conversation's model and sampling settings."""

    def respond(history: list[dict]) -> str:
        conversation = manager.current.conversation
        return reply_text(
            model=conversation.model or default_model,
            messages=history,
            temperature=conversation.temperature,
            max_tokens=conversation.max_tokens,
        )

    return respond


class ParleyREPL:
    def __init__(
        self,
        manager: SessionManager,
        responder: Responder,
        out: TextIO | None = None,
        read_line: Callable[[str], str] = input,
    ):
        self.manager = manager
        self.responder = responder
        self.out = out or sys.stdout
        self.read_line = read_line
        self.commands = SessionCommands(manager, out=self.out)
        self.interrupted = False

    def _print(self, text: str = "") -> None:
        print(text, file=self.out)

    def process_user_message(self, content: str) -> str:
        self.manager.add_message("user", content)
        history = self.manager.current.conversation.history_for_llm()
        reply = self.responder(history)
        self.manager.add_message("assistant", reply)
        return reply

    def run(self) -> None:
        session = self.manager.current
        self._print(f"💬 Parley started (session: {session.name}, ID: {session.id})")
        if self.manager.recovery is not None and self.manager.recovery.pending:
            state = self.manager.recovery.pending
            self._print(
                f"⚠️  Found unsaved session {state.session_name} ({state.session_id}, "
                f"{state.message_count} messages) from a previous run."
            )
            self._print("Use /recover restore to recover it or /recover clear to discard it")
        self._print("Commands: /help for all commands")
        self._print()

        while True:
            try:
                user_input = self.read_line("\n> ").strip()
                if not user_input:
                    continue

                result = route(self.commands, user_input)
                if result.kind == "builtin":
                    if not self.commands.handle(result.name, result.args):
                        break
                    continue
                if result.kind == "unknown":
                    self._print(
                        f"Unknown command: /{result.name}. Type /help for available commands."
                    )
                    continue

                reply = self.process_user_message(result.args)
                self._print(f"\n{reply}")
                self.manager.autosave_now()

            except KeyboardInterrupt:
                self._print("\n\n⚠️  Interrupted")
                self.interrupted = True
                break
            except EOFError:
                break
            except ParleyError as e:
                self._print(f"\n❌ Error: {e}")
            except Exception as e:
                logger.exception("Unexpected error while processing input")
                self._print(f"\n❌ Error: {e}")
