from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from common.clock import SystemClock
from common.storage import JsonFileStorage
from parley.client.completion import CompletionClient
from parley.config import (
    MODEL_CATALOG,
    ClientConfig,
    ConfigStore,
    default_data_dir,
    model_display_name,
)
from parley.errors import ConfigError, StorageWriteFailed
from parley.export import export_session
from parley.runtime.builtins import format_date
from parley.sessions.active import ActiveSession
from parley.sessions.store import SessionStore

logger = logging.getLogger(__name__)


def main() -> int:
    load_dotenv()
    return _main(sys.argv[1:])


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("markdown_it").setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="parley", description="Parley - multi-session chat client")
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Where chats and settings are stored (default: $PARLEY_DATA_DIR or ~/.parley)",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=False)

    repl = subparsers.add_parser("repl", help="Start interactive chat (default)")
    repl.add_argument("--session", default=None, help="Chat id to open")
    repl.add_argument("--new", action="store_true", help="Start in a new chat")
    repl.add_argument("--message", "-m", help="Send one message before the prompt opens")

    subparsers.add_parser("sessions", help="List saved chats")

    export = subparsers.add_parser("export", help="Export a chat as JSON")
    export.add_argument("session_id")
    export.add_argument("--output-dir", default=".")

    config = subparsers.add_parser("config", help="Show or change settings")
    config.add_argument("--api-key", default=None)
    config.add_argument(
        "--model",
        default=None,
        help="Model id or alias (large, small, 70b, sonar-small, sonar-medium, codellama, mixtral)",
    )
    config.add_argument("--system-prompt", default=None)
    config.add_argument("--show", action="store_true")

    return parser


def build_active_session(data_dir: str | Path) -> ActiveSession:
    storage = JsonFileStorage(data_dir)
    clock = SystemClock()
    config_store = ConfigStore(storage)
    return ActiveSession(
        store=SessionStore(storage),
        client=CompletionClient(ClientConfig(), clock=clock),
        config=config_store.load(),
        clock=clock,
        config_store=config_store,
    )


def _cmd_repl(args, active: ActiveSession) -> int:
    from parley.runtime.repl import ChatREPL

    if args.new:
        active.create_new()
    elif args.session:
        active.activate(args.session)
    else:
        active.start()
    try:
        ChatREPL(active).run(initial_message=args.message)
    finally:
        active.client.close()
    return 0


def _cmd_sessions(args, active: ActiveSession) -> int:
    sessions = active.store.sorted_by_recent()
    if not sessions:
        print("No saved chats")
        return 0
    current = active.store.current_id
    for session in sessions:
        marker = "*" if session.id == current else " "
        print(f"{marker} {session.id}  {format_date(session.updated_at)}  {session.title}")
    return 0


def _cmd_export(args, active: ActiveSession) -> int:
    session = active.store.get(args.session_id)
    if session is None:
        print(f"Error: chat {args.session_id} not found", file=sys.stderr)
        return 1
    try:
        path = export_session(session, args.output_dir)
    except OSError as e:
        print(f"Error: export failed: {e}", file=sys.stderr)
        return 1
    print(path)
    return 0


def _cmd_config(args, active: ActiveSession) -> int:
    changes = {}
    if args.api_key is not None:
        changes["api_key"] = args.api_key
    if args.model is not None:
        changes["model"] = args.model
    if args.system_prompt is not None:
        changes["system_prompt"] = args.system_prompt

    if changes:
        try:
            active.update_config(**changes)
        except (ConfigError, StorageWriteFailed) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    if args.show or not changes:
        config = active.config
        print(f"api_key: {'set' if config.has_credential else 'not set'}")
        print(f"model: {config.model} ({model_display_name(config.model)})")
        print(f"system_prompt: {config.system_prompt}")
        print(f"available models: {', '.join(MODEL_CATALOG)}")
    return 0


def _main(argv: list[str]) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    data_dir = args.data_dir or default_data_dir()
    try:
        active = build_active_session(data_dir)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    command = args.command or "repl"
    if command == "repl" and args.command is None:
        args.new = False
        args.session = None
        args.message = None

    handlers = {
        "repl": _cmd_repl,
        "sessions": _cmd_sessions,
        "export": _cmd_export,
        "config": _cmd_config,
    }
    return handlers[command](args, active)


if __name__ == "__main__":
    raise SystemExit(main())
