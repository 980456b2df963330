from __future__ import annotations

import getpass
from typing import Callable

from rich.console import Console
from rich.text import Text

from parley.config import model_display_name
from parley.errors import ConfigError, StorageWriteFailed
from parley.render import render
from parley.runtime.builtins import BuiltinCommands
from parley.runtime.router import InputRouter
from parley.sessions.active import ActiveSession
from parley.sessions.schema import Message


ROLE_LABELS = {"user": "🧑 You", "assistant": "🤖 Assistant", "system": "ℹ️  System"}


class ChatREPL:
    def __init__(
        self,
        active: ActiveSession,
        console: Console | None = None,
        read_line: Callable[[str], str] = input,
        read_secret: Callable[[str], str] = getpass.getpass,
    ):
        self.active = active
        self.console = console or Console()
        self.read_line = read_line
        self.read_secret = read_secret
        self.builtins = BuiltinCommands(self)
        self.router = InputRouter(self.builtins)

    def show_message(self, message: Message) -> None:
        self.console.print(f"\n{ROLE_LABELS.get(message.role, message.role)}", style="bold")
        self.console.print(render(message.content))

    def show_history(self) -> None:
        self.console.rule(Text(self.active.title))
        for message in self.active.messages:
            self.show_message(message)

    def report_error(self) -> None:
        error = self.active.consume_error()
        if error is None:
            return
        if not error.appends_message:
            self.console.print(f"❌ {error.message}", markup=False)
        if error.retryable:
            self.console.print("Type /retry to send again.")
        if error.requires_credential:
            self.ensure_credential(force=True)

    def ensure_credential(self, force: bool = False) -> bool:
        if not force and not self.active.credential_required:
            return True
        try:
            key = self.read_secret("API key: ").strip()
        except (EOFError, KeyboardInterrupt):
            key = ""
        if not key:
            self.console.print("No API key entered. Use /key to set one.")
            return False
        before = len(self.active.messages)
        try:
            self.active.update_config(api_key=key)
        except (ConfigError, StorageWriteFailed) as e:
            self.console.print(f"❌ {e}", markup=False)
            return False
        for message in self.active.messages[before:]:
            self.show_message(message)
        return True

    def _print_new_messages(self, before: int, session_id: str) -> None:
        if self.active.id != session_id:
            return
        for message in self.active.messages[before:]:
            self.show_message(message)

    def send(self, text: str) -> None:
        session_id = self.active.id
        before = len(self.active.messages) + 1
        with self.console.status("Waiting for response..."):
            result = self.active.append_user_message(text)
        if result is not None:
            self._print_new_messages(before, session_id)
        self.report_error()

    def retry(self) -> None:
        session_id = self.active.id
        before = len(self.active.messages)
        with self.console.status("Retrying..."):
            result = self.active.retry()
        if result is not None:
            self._print_new_messages(before, session_id)
        self.report_error()

    def run(self, initial_message: str | None = None) -> None:
        self.console.print(
            f"🤖 Parley started (model: {model_display_name(self.active.config.model)})"
        )
        self.console.print("Commands: /help for all commands")
        if self.active.store.load_error:
            self.console.print(f"⚠️  {self.active.store.load_error.message}", markup=False)
        self.show_history()
        self.report_error()
        self.ensure_credential()

        if initial_message:
            self.send(initial_message)

        while True:
            try:
                user_input = self.read_line("\n> ").strip()

                if not user_input:
                    continue

                route = self.router.route(user_input)
                if route.kind == "builtin":
                    if not self.builtins.handle(route.name, route.args):
                        break
                    continue
                if route.kind == "unknown":
                    self.console.print(
                        f"Unknown command: /{route.name}. Type /help for available commands.",
                        markup=False,
                    )
                    continue

                self.send(route.args)

            except KeyboardInterrupt:
                self.console.print("\n\n⚠️  Interrupted")
                break
            except EOFError:
                break
