from __future__ import annotations

import time
from pathlib import Path

from parley.config import MODEL_CATALOG, model_display_name
from parley.errors import ConfigError, StorageWriteFailed
from parley.export import export_session


def format_date(timestamp: int | None) -> str:
    if not timestamp:
        return ""
    try:
        return time.strftime("%Y-%m-%d %H:%M", time.localtime(timestamp / 1000))
    except (OverflowError, OSError, ValueError):
        return ""


class BuiltinCommands:
    def __init__(self, repl):
        self.repl = repl
        self._handlers = {
            "quit": self.cmd_quit,
            "exit": self.cmd_quit,
            "new": self.cmd_new,
            "sessions": self.cmd_sessions,
            "load": self.cmd_load,
            "delete": self.cmd_delete,
            "retry": self.cmd_retry,
            "export": self.cmd_export,
            "model": self.cmd_model,
            "models": self.cmd_models,
            "system": self.cmd_system,
            "key": self.cmd_key,
            "history": self.cmd_history,
            "help": self.cmd_help,
        }

    @property
    def active(self):
        return self.repl.active

    @property
    def console(self):
        return self.repl.console

    def list_commands(self) -> list[str]:
        return sorted(self._handlers.keys())

    def has_command(self, name: str) -> bool:
        return name in self._handlers

    def handle(self, name: str, args: str) -> bool:
        handler = self._handlers.get(name)
        if not handler:
            return True
        return handler(args)

    def _resolve_session_id(self, prefix: str) -> str | None:
        ids = [s.id for s in self.active.sessions()]
        if prefix in ids:
            return prefix
        matches = [sid for sid in ids if sid.startswith(prefix)]
        if len(matches) == 1:
            return matches[0]
        return None

    def cmd_quit(self, args: str) -> bool:
        self.console.print("👋 Goodbye!")
        return False

    def cmd_new(self, args: str) -> bool:
        self.active.create_new()
        self.repl.report_error()
        self.repl.show_history()
        return True

    def cmd_sessions(self, args: str) -> bool:
        sessions = self.active.sessions()
        if not sessions:
            self.console.print("No saved chats")
            return True
        self.console.print("Chats:")
        for session in sessions:
            marker = "*" if session.id == self.active.id else " "
            self.console.print(
                f" {marker} {session.id[:8]}  {format_date(session.updated_at)}  {session.title}",
                markup=False,
            )
        return True

    def cmd_load(self, args: str) -> bool:
        if not args:
            self.console.print("Usage: /load <id>")
            return True
        session_id = self._resolve_session_id(args)
        if not session_id:
            self.console.print(f"❌ Chat {args} not found", markup=False)
            return True
        self.active.activate(session_id)
        self.repl.report_error()
        self.repl.show_history()
        return True

    def cmd_delete(self, args: str) -> bool:
        if not args:
            self.console.print("Usage: /delete <id>")
            return True
        session_id = self._resolve_session_id(args)
        if not session_id:
            self.console.print(f"❌ Chat {args} not found", markup=False)
            return True
        was_active = session_id == self.active.id
        if self.active.delete(session_id):
            self.console.print(f"✅ Deleted chat {session_id[:8]}")
        failed = self.active.error is not None
        self.repl.report_error()
        if was_active or failed:
            self.repl.show_history()
        return True

    def cmd_retry(self, args: str) -> bool:
        self.repl.retry()
        return True

    def cmd_export(self, args: str) -> bool:
        directory = Path(args or ".").expanduser()
        try:
            path = export_session(self.active.session, directory)
        except OSError as e:
            self.console.print(f"❌ Export failed: {e}", markup=False)
            return True
        self.console.print(f"✅ Exported to {path}", markup=False)
        return True

    def cmd_model(self, args: str) -> bool:
        if not args:
            model = self.active.config.model
            self.console.print(f"Current model: {model_display_name(model)} ({model})", markup=False)
            return True
        try:
            config = self.active.update_config(model=args)
        except (ConfigError, StorageWriteFailed) as e:
            self.console.print(f"❌ {e}", markup=False)
            return True
        self.console.print(f"✅ Switched to model: {config.model}", markup=False)
        return True

    def cmd_models(self, args: str) -> bool:
        self.console.print("Models:")
        for model_id, name in MODEL_CATALOG.items():
            marker = "*" if model_id == self.active.config.model else " "
            self.console.print(f" {marker} {model_id}  ({name})", markup=False)
        return True

    def cmd_system(self, args: str) -> bool:
        if not args:
            self.console.print(f"System prompt: {self.active.config.system_prompt}", markup=False)
            return True
        try:
            self.active.update_config(system_prompt=args)
        except (ConfigError, StorageWriteFailed) as e:
            self.console.print(f"❌ {e}", markup=False)
            return True
        self.console.print("✅ System prompt updated")
        return True

    def cmd_key(self, args: str) -> bool:
        self.repl.ensure_credential(force=True)
        return True

    def cmd_history(self, args: str) -> bool:
        self.repl.show_history()
        return True

    def cmd_help(self, args: str) -> bool:
        self.console.print("\nCommands:")
        for name in self.list_commands():
            self.console.print(f"  /{name}")
        self.console.print()
        return True
