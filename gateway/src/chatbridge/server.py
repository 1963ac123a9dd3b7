"""Command line entry point: serve the bridge or replay recorded SDK events."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import tempfile
from typing import Any, Iterable, List, TextIO

from aiohttp import web

from .bridge import Bridge
from .config import BridgeConfig, load_config_from_env
from .credentials import CredentialStore
from .errors import NotConnected
from .relay import EventRelay
from .session_client import SessionClient, load_session_client
from .ws_transport import create_app

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class _ReplayClient(SessionClient):
    """Offline client for ``simulate``; events are injected, never fetched."""

    async def open(self, credentials: CredentialStore) -> None:
        return None

    async def close(self) -> None:
        return None

    async def send_text(self, conversation_id: str, text: str) -> Any:
        raise NotConnected("replay client cannot send")

    async def profile_picture_url(self, conversation_id: str) -> str | None:
        return None

    async def request_pairing_code(self, phone_number: str) -> str:
        raise NotConnected("replay client cannot pair")


def simulate(frames: Iterable[dict], output: TextIO) -> Bridge:
    """Feed ``{"event", "data"}`` frames through a bridge and write every push message."""

    client = _ReplayClient()
    relay = EventRelay()
    relay.subscribe(lambda message: output.write(message + "\n"), lambda: True)
    with tempfile.TemporaryDirectory() as auth_dir:
        bridge = Bridge(
            client,
            CredentialStore(auth_dir),
            config=BridgeConfig(contacts_flush_delays_s=()),
            relay=relay,
            scheduler=lambda delay_s, callback: None,
        )
        for frame in frames:
            name = frame.get("event") if isinstance(frame, dict) else None
            if not isinstance(name, str) or not name:
                raise ValueError(f"frame without an event name: {frame!r}")
            client.emit_sdk_event(name, frame.get("data"))
    return bridge


def _load_frames(handle: TextIO) -> List[dict]:
    """Read a JSON array of frames, or NDJSON with one frame per line."""

    text = handle.read().strip()
    if not text:
        return []
    if text[0] == "[":
        return json.loads(text)
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    if args.file is None:
        frames = _load_frames(sys.stdin)
    else:
        with args.file:
            frames = _load_frames(args.file)
    simulate(frames, output)
    return 0


def _config_from_args(args: argparse.Namespace) -> BridgeConfig:
    return load_config_from_env().with_overrides(
        host=args.host,
        port=args.port,
        auth_dir=args.auth_dir,
        db_path=args.db,
        session_client=args.client,
        max_retries=args.max_retries,
        log_level=args.log_level,
    )


def _run_serve(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    if not config.session_client:
        print("no session client configured; pass --client module:factory", file=sys.stderr)
        return 2

    client = load_session_client(config.session_client, config)
    credentials = CredentialStore(config.auth_dir, [config.db_path] if config.db_path else [])
    credentials.ensure_directory()
    bridge = Bridge(client, credentials, config=config)
    app = create_app(bridge)
    logging.getLogger(__name__).info(
        "HTTP API and push channel on http://%s:%d (push at /ws)", config.host, config.port
    )
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Chat bridge CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay recorded SDK events")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON or NDJSON event frames; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp bridge server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--auth-dir", default=None, help="Directory holding session credentials")
    serve_parser.add_argument("--db", default=None, help="Local database wiped together with credentials")
    serve_parser.add_argument("--client", default=None, help="Session client factory as module:callable")
    serve_parser.add_argument("--max-retries", type=int, default=None, help="Reconnect attempts before giving up")
    serve_parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
