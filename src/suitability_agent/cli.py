"""Command line entry-point for the suitability interview agent."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Callable, List, Optional

from .config import AppSettings
from .engine import ConversationEngine
from .models import SessionEvent
from .observability import initialize_tracing
from .sessions import SessionStore
from .stages import Stage
from .validator import validate

TERMINATION_TOKENS = {"exit", "quit", "bye"}

CommandHandler = Callable[[SessionStore, argparse.Namespace], int]


async def run_chat(settings: AppSettings) -> None:
    """Drive a single session from the terminal until it completes."""

    engine = ConversationEngine.from_settings(settings)
    session = engine.store.create()
    for message in engine.start(session):
        print(f"\nAdviser: {message}")  # noqa: T201 - CLI output
    engine.store.save(session)
    while session.stage is not Stage.COMPLETE:
        try:
            answer = input("\nYou: ")  # noqa: PLW1514 - intentional CLI input
        except EOFError:
            break
        if answer.strip().lower() in TERMINATION_TOKENS:
            break
        event = SessionEvent(author="client", type="message", content={"text": answer})
        response = await engine.handle_event(session, event)
        for message in response.messages:
            print(f"\nAdviser: {message}")  # noqa: T201
    print(f"\nSession {session.id} saved at stage {session.stage.value}.")  # noqa: T201


def run_sessions_cli(settings: AppSettings, argv: Optional[List[str]] = None) -> int:
    """Inspect archived sessions."""

    store = SessionStore(settings.session_log, settings.redis_url)
    store.load_archive()
    parser = argparse.ArgumentParser(
        prog="suitability-agent sessions",
        description="List, show and validate archived suitability sessions.",
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.required = True

    list_parser = subparsers.add_parser("list", help="Show archived sessions")
    list_parser.add_argument(
        "-n",
        "--limit",
        type=int,
        default=20,
        help="Maximum number of sessions to display (default: 20)",
    )
    list_parser.set_defaults(func=_handle_list)

    show_parser = subparsers.add_parser("show", help="Print a session's business record")
    show_parser.add_argument("id", help="Session identifier")
    show_parser.set_defaults(func=_handle_show)

    validate_parser = subparsers.add_parser(
        "validate",
        help="Run the regulatory completeness checks for a session",
    )
    validate_parser.add_argument("id", help="Session identifier")
    validate_parser.set_defaults(func=_handle_validate)

    args = parser.parse_args(argv)
    handler: CommandHandler = args.func
    return handler(store, args)


def _handle_list(store: SessionStore, args: argparse.Namespace) -> int:
    sessions = store.list()[-args.limit:] if args.limit > 0 else store.list()
    if not sessions:
        print("No sessions found.")
        return 0
    print(f"Showing {len(sessions)} session(s):")
    for session in sessions:
        print(f" - {session.id} | {session.stage.value} | {session.updated_at}")
    return 0


def _handle_show(store: SessionStore, args: argparse.Namespace) -> int:
    session = store.get(args.id)
    if session is None:
        print(f"Session '{args.id}' not found.")
        return 1
    print(json.dumps(session.to_dict(), indent=2, ensure_ascii=False))
    return 0


def _handle_validate(store: SessionStore, args: argparse.Namespace) -> int:
    session = store.get(args.id)
    if session is None:
        print(f"Session '{args.id}' not found.")
        return 1
    result = validate(session)
    if result.valid:
        print("Session is complete and valid.")
        return 0
    print(f"{len(result.issues)} issue(s):")
    for issue in result.issues:
        print(f" - {issue}")
    return 2


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="suitability-agent",
        description=(
            "Capture a client's suitability profile and sustainability "
            "preferences through a guided conversation"
        ),
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("chat", help="Run an interactive session in the terminal (default)")

    serve_parser = subparsers.add_parser("serve", help="Launch the HTTP API")
    serve_parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host interface for the API server (default: 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="TCP port for the API server (default: 8000)",
    )
    serve_parser.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origin",
        help="CORS origin(s) to allow. Defaults to '*' if not provided.",
    )
    serve_parser.add_argument(
        "--tracing",
        action="store_true",
        help="Enable OpenTelemetry tracing for compliance model calls.",
    )
    return parser.parse_args(argv)


def run_cli(argv: Optional[List[str]] = None) -> None:
    """Entry-point invoked from ``python -m suitability_agent``."""

    logging.basicConfig(level=logging.INFO)
    arg_list = list(argv) if argv is not None else sys.argv[1:]
    try:
        settings = AppSettings.load()
    except RuntimeError as exc:
        logging.error("Failed to load AppSettings: %s", exc)
        raise SystemExit(1) from exc

    if arg_list and arg_list[0] == "sessions":
        raise SystemExit(run_sessions_cli(settings, arg_list[1:]))

    args = _parse_args(arg_list)
    if args.command == "serve":
        from .api import run_server

        if args.tracing:
            initialize_tracing(endpoint=settings.otlp_endpoint)
        run_server(
            settings,
            host=args.host,
            port=args.port,
            allow_origins=args.allow_origin,
        )
        return

    asyncio.run(run_chat(settings))


if __name__ == "__main__":  # pragma: no cover - manual execution hook
    run_cli()
