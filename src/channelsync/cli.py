"""Command line entry points: replay frames offline or listen to a live feed."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Iterable, TextIO

from .backend import InMemoryChatBackend, RestChatBackend
from .capabilities import JUNIOR_MERCHANDISER, ROLES
from .config import SyncConfig, load_config
from .engine import SyncEngine
from .errors import ChannelSyncError
from .events import MessageRecord
from .notify import Decision
from .realtime import RealtimeTransport
from .sqlite_read_state import SQLiteReadMarkerStore
from .transport import InMemoryFeedTransport

logger = logging.getLogger(__name__)


def _decision_line(message: MessageRecord, decision: Decision) -> Dict[str, Any]:
    line: Dict[str, Any] = {
        "t": "decision",
        "message_id": message.id,
        "channel_id": message.channel_id,
        "user_id": message.user_id,
        "reason": decision.reason,
        "surface": decision.surface,
        "cue": decision.play_cue,
        "mark_read": decision.mark_read,
    }
    if decision.notification is not None:
        line["title"] = decision.notification.title
        line["body"] = decision.notification.body
        line["tag"] = decision.notification.tag
    return line


def _emit(output: TextIO, line: Dict[str, Any]) -> None:
    output.write(json.dumps(line) + "\n")


async def simulate(
    frames: Iterable[dict],
    output: TextIO,
    *,
    user_id: str,
    role: str = JUNIOR_MERCHANDISER,
    focus: str | None = None,
    hidden: bool = False,
    native: bool = True,
    config: SyncConfig | None = None,
    db_path: str | None = None,
) -> None:
    """Replay JSON frames through an in-memory engine and emit JSON lines.

    With ``db_path`` the user's read markers are kept in that SQLite file
    and survive between runs.
    """

    store = SQLiteReadMarkerStore(db_path) if db_path else None
    try:
        await _replay(
            frames,
            output,
            store,
            user_id=user_id,
            role=role,
            focus=focus,
            hidden=hidden,
            native=native,
            config=config,
        )
    finally:
        if store is not None:
            store.close()


async def _replay(
    frames: Iterable[dict],
    output: TextIO,
    store: SQLiteReadMarkerStore | None,
    *,
    user_id: str,
    role: str,
    focus: str | None,
    hidden: bool,
    native: bool,
    config: SyncConfig | None,
) -> None:
    feed = InMemoryFeedTransport()
    backend = InMemoryChatBackend(feed)
    engine = SyncEngine(
        user_id, role, backend, feed, config=config, read_store=store, native_notifications=native
    )
    engine.add_decision_listener(lambda message, decision: _emit(output, _decision_line(message, decision)))
    engine.tracker.add_listener(
        lambda channel_id, unread: _emit(output, {"t": "unread", "channel_id": channel_id, "unread": unread})
    )
    engine.page_visible = not hidden
    uploads: Dict[str, str] = {}
    await engine.start()
    if focus is not None:
        await engine.open_channel(focus)

    for frame in frames:
        frame_type = frame.get("t")
        if frame_type == "channel":
            channel_id = frame["channel_id"]
            members = set(frame.get("members") or ())
            members.add(user_id)
            backend.add_channel(channel_id, members, name=frame.get("name", channel_id))
            engine.set_channel_name(channel_id, frame.get("name", channel_id))
        elif frame_type == "open":
            await engine.open_channel(frame["channel_id"], frame.get("name"))
        elif frame_type == "close":
            await engine.close_channel(frame["channel_id"])
        elif frame_type == "focus":
            engine.focus(frame.get("channel_id"))
        elif frame_type == "visibility":
            engine.set_visibility(bool(frame["visible"]))
        elif frame_type == "send":
            view = await engine.open_channel(frame["channel_id"])
            try:
                message = await view.send(frame["content"])
            except ChannelSyncError as exc:
                _emit(output, {"t": "send_failed", "channel_id": frame["channel_id"], "error": str(exc)})
            else:
                _emit(output, {"t": "sent", "message_id": message.id, "channel_id": message.channel_id})
        elif frame_type == "remote":
            backend.insert_remote(
                frame["channel_id"],
                frame["user_id"],
                frame["content"],
                is_system_update=bool(frame.get("is_system_update", False)),
            )
        elif frame_type == "event":
            feed.publish(frame["payload"])
        elif frame_type == "drop":
            feed.drop()
        elif frame_type == "resume":
            refreshed = await engine.handle_resume()
            _emit(output, {"t": "resume", "refreshed": refreshed})
        elif frame_type == "upload.begin":
            uploads[frame.get("id", "default")] = engine.guard.acquire()
        elif frame_type == "upload.end":
            token = uploads.pop(frame.get("id", "default"), None)
            if token is not None:
                engine.guard.release(token)
        elif frame_type == "ledger":
            view = engine.views.get(frame["channel_id"])
            messages = view.messages if view is not None else []
            _emit(
                output,
                {"t": "ledger", "channel_id": frame["channel_id"], "ids": [m.id for m in messages]},
            )
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")
        # Let background read-marker writes run between frames.
        await asyncio.sleep(0)

    await engine.logout()


async def listen(args: argparse.Namespace, config: SyncConfig, output: TextIO) -> None:
    transport = RealtimeTransport(
        config.realtime_url,
        api_key=config.api_key,
        heartbeat_interval_s=config.heartbeat_interval_s,
    )
    backend = RestChatBackend(config.rest_url, config.api_key)
    store = SQLiteReadMarkerStore(config.read_marker_db) if config.read_marker_db else None
    engine = SyncEngine(
        args.user,
        args.role,
        backend,
        transport,
        config=config,
        read_store=store,
        native_notifications=args.native,
    )
    engine.add_decision_listener(lambda message, decision: _emit(output, _decision_line(message, decision)))
    engine.page_visible = not args.hidden
    logger.info("listening on %s as %s", config.realtime_url, args.user)
    try:
        await engine.start({channel_id: channel_id for channel_id in args.channel} if args.channel else None)
        if args.focus:
            await engine.open_channel(args.focus)
        await asyncio.Event().wait()
    finally:
        await engine.logout()
        await backend.close()
        if store is not None:
            store.close()


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, config: SyncConfig, output: TextIO) -> int:
    if args.db:
        config.read_marker_db = args.db
    frames = _load_frames(args.file or sys.stdin)
    asyncio.run(
        simulate(
            frames,
            output,
            user_id=args.user,
            role=args.role,
            focus=args.focus,
            hidden=args.hidden,
            native=not args.no_native,
            config=config,
            db_path=config.read_marker_db or None,
        )
    )
    return 0


def _run_listen(args: argparse.Namespace, config: SyncConfig, output: TextIO) -> int:
    if args.url:
        config.realtime_url = args.url
    if args.rest_url:
        config.rest_url = args.rest_url
    if args.api_key:
        config.api_key = args.api_key
    if args.db:
        config.read_marker_db = args.db
    if not config.realtime_url:
        raise SystemExit("listen needs --url or realtime_url in the config file")
    try:
        asyncio.run(listen(args, config, output))
    except KeyboardInterrupt:
        return 0
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Channel sync engine CLI")
    parser.add_argument("--config", default=None, help="Path to a JSON config file")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay frames through an in-memory engine")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument("--user", required=True, help="Signed-in user id")
    simulate_parser.add_argument("--role", default=JUNIOR_MERCHANDISER, choices=ROLES)
    simulate_parser.add_argument("--focus", default=None, help="Channel to open and focus first")
    simulate_parser.add_argument("--hidden", action="store_true", help="Start with the page hidden")
    simulate_parser.add_argument(
        "--no-native", action="store_true", help="Pretend OS notifications are unavailable"
    )
    simulate_parser.add_argument("--db", default=None, help="SQLite file for durable read markers")

    listen_parser = subparsers.add_parser("listen", help="Follow a realtime endpoint and print decisions")
    listen_parser.add_argument("--url", default=None, help="Realtime websocket URL")
    listen_parser.add_argument("--rest-url", default=None, help="REST base URL")
    listen_parser.add_argument("--api-key", default=None, help="API key")
    listen_parser.add_argument("--user", required=True, help="Signed-in user id")
    listen_parser.add_argument("--role", default=JUNIOR_MERCHANDISER, choices=ROLES)
    listen_parser.add_argument(
        "--channel", action="append", default=[], help="Channel id to follow; repeatable"
    )
    listen_parser.add_argument("--focus", default=None, help="Channel to open and focus")
    listen_parser.add_argument("--hidden", action="store_true", help="Treat the page as hidden")
    listen_parser.add_argument("--native", action="store_true", help="OS notifications are available")
    listen_parser.add_argument("--db", default=None, help="SQLite file for durable read markers")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = load_config(args.config)

    if args.command == "simulate":
        return _run_simulation(args, config, output or sys.stdout)
    return _run_listen(args, config, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
