"""Command-line interface for loopdeck.

Each subcommand builds only what it needs: deck edits touch the clip store
alone, while `login`, `add` and `play` run the engine on a fresh event loop.
Exit codes: 0 success, 1 unexpected failure or lost session, 2 usage or
precondition failure.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Callable, Sequence
from contextlib import suppress
from pathlib import Path

from rich.console import Console
from rich.table import Table

from . import __version__
from .engine import BACKENDS, Backend, LoopEngine, build_backend
from .errors import DeviceUnavailableError, LoopDeckError
from .events import CursorChanged, Notification
from .logging_utils import setup_logging
from .paths import clips_path, credential_path, log_dir
from .runtime_config import EngineConfig, load_spotify_settings, resolve_log_level
from .services.clip_store import ClipRecord, JsonClipStore, parse_track_uri
from .services.fake_transport import FakeTransport
from .services.spotify_auth import SpotifyAuthHandshake
from .services.token_store import FileTokenStore
from .utils.async_utils import run_blocking
from .utils.time_format import format_clip_time, parse_clip_seconds
from .version import build_help_epilog

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

DEFAULT_TRACK_DURATION_MS = 300_000
CONNECT_TIMEOUT_S = 15.0
FAKE_REDIRECT = "loopdeck://callback?code=local"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loopdeck",
        description="Play trimmed Spotify clips back to back.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=build_help_epilog(),
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument(
        "--quiet", action="store_true", help="Only show warnings and errors"
    )
    parser.add_argument("--log-file", help="Write logs to a file path")
    parser.add_argument(
        "--backend",
        choices=BACKENDS,
        default="spotify",
        help="Remote transport to use (spotify or fake).",
    )
    parser.add_argument("--env-file", help="Load Spotify settings from this file")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("login", help="Authorize access to your Spotify account")
    commands.add_parser("clips", help="List the clip deck")
    add = commands.add_parser("add", help="Add a track by URI or open.spotify.com link")
    add.add_argument("uri")
    trim = commands.add_parser("trim", help="Set a clip's start and stop (SS or M:SS)")
    trim.add_argument("clip_id")
    trim.add_argument("start")
    trim.add_argument("stop")
    remove = commands.add_parser("remove", help="Remove clips by id")
    remove.add_argument("clip_ids", nargs="+")
    play = commands.add_parser("play", help="Play the deck in order")
    play.add_argument(
        "--from",
        dest="start",
        type=int,
        default=1,
        help="1-based clip number to start from.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    console = Console()
    try:
        level = resolve_log_level(verbose=args.verbose, quiet=args.quiet)
        setup_logging(
            log_dir=log_dir(),
            level=level,
            log_file=Path(args.log_file) if args.log_file else None,
            console=args.verbose,
        )
        logger.info("Starting loopdeck %s (backend=%s)", args.command, args.backend)
        return _COMMANDS[args.command](args, console)
    except LoopDeckError as exc:
        logger.warning("%s failed: %s", args.command, exc)
        console.print(f"[red]{exc}[/red]")
        return EXIT_USAGE
    except Exception as exc:  # pragma: no cover - top-level safety net
        logger.exception("Unhandled error: %s", exc)
        print("Unexpected error. Re-run with --verbose for details.", file=sys.stderr)
        return EXIT_FAILURE


def open_clip_store() -> JsonClipStore:
    store = JsonClipStore(clips_path())
    store.load()
    migrated = store.migrate_durations()
    if migrated:
        logger.info("Backfilled duration for %d clip(s)", migrated)
    return store


def resolve_clip_id(store: JsonClipStore, text: str) -> str:
    """Resolve a full id or unique id prefix to a clip id."""
    matches = [clip.id for clip in store.clips() if clip.id.startswith(text)]
    if not matches:
        raise LoopDeckError(f"No clip matches {text!r}")
    if len(matches) > 1:
        raise LoopDeckError(f"Clip id {text!r} is ambiguous")
    return matches[0]


def _build_engine(
    args: argparse.Namespace, store: JsonClipStore
) -> tuple[LoopEngine, Backend]:
    settings = load_spotify_settings(Path(args.env_file) if args.env_file else None)
    backend = build_backend(args.backend, settings=settings, clips=store.clips())
    engine = LoopEngine.from_backend(
        backend,
        token_store=FileTokenStore(credential_path(args.backend)),
        clip_store=store,
        config=EngineConfig(),
    )
    return engine, backend


async def wait_for_connection(
    engine: LoopEngine, timeout_s: float = CONNECT_TIMEOUT_S
) -> bool:
    """Wait until connected, or until no connect attempt is left in flight."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    session = engine.session
    while loop.time() < deadline:
        if session.is_connected:
            return True
        if (
            session.connection_state == "disconnected"
            and not session.is_busy
            and not session.has_pending_reconnect
        ):
            return False
        await asyncio.sleep(0.05)
    return session.is_connected


def _print_notice(console: Console, store: JsonClipStore) -> None:
    if store.load_notice:
        console.print(f"[yellow]{store.load_notice}[/yellow]")


def _clip_table(clips: Sequence[ClipRecord]) -> Table:
    table = Table(title="Clip deck")
    table.add_column("#", justify="right")
    table.add_column("Id")
    table.add_column("Track")
    table.add_column("Artist")
    table.add_column("Trim")
    table.add_column("Length", justify="right")
    for number, clip in enumerate(clips, start=1):
        table.add_row(
            str(number),
            clip.id[:8],
            clip.track_name,
            clip.artist_name,
            clip.trim_range_display,
            format_clip_time(clip.effective_duration_ms),
        )
    return table


def _cmd_clips(args: argparse.Namespace, console: Console) -> int:
    store = open_clip_store()
    _print_notice(console, store)
    if not store.clips():
        console.print("No clips yet. Add one with 'loopdeck add <uri>'.")
        return EXIT_OK
    console.print(_clip_table(store.clips()))
    return EXIT_OK


def _cmd_trim(args: argparse.Namespace, console: Console) -> int:
    try:
        start_ms = parse_clip_seconds(args.start)
        stop_ms = parse_clip_seconds(args.stop)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        return EXIT_USAGE
    store = open_clip_store()
    clip = store.update_trim(resolve_clip_id(store, args.clip_id), start_ms, stop_ms)
    console.print(f"Trimmed {clip.track_name} to {clip.trim_range_display}")
    return EXIT_OK


def _cmd_remove(args: argparse.Namespace, console: Console) -> int:
    store = open_clip_store()
    ids = [resolve_clip_id(store, text) for text in args.clip_ids]
    removed = store.remove_clips(ids)
    console.print(f"Removed {removed} clip(s)")
    return EXIT_OK


def _cmd_login(args: argparse.Namespace, console: Console) -> int:
    return asyncio.run(_login(args, console))


def _cmd_add(args: argparse.Namespace, console: Console) -> int:
    return asyncio.run(_add(args, console))


def _cmd_play(args: argparse.Namespace, console: Console) -> int:
    try:
        return asyncio.run(_play(args, console))
    except KeyboardInterrupt:
        console.print("Stopped.")
        return EXIT_OK


async def _read_redirect(backend: Backend, console: Console) -> str:
    handshake = backend.handshake
    if not isinstance(handshake, SpotifyAuthHandshake):
        return FAKE_REDIRECT
    if handshake.authorize_url:
        console.print("Authorize in your browser, or open this URL:")
        console.print(handshake.authorize_url, soft_wrap=True)
    payload = await run_blocking(console.input, "Paste the redirect URL: ")
    return payload.strip()


async def _login(args: argparse.Namespace, console: Console) -> int:
    store = open_clip_store()
    engine, backend = _build_engine(args, store)
    try:
        try:
            await engine.session.authorize()
        except DeviceUnavailableError as exc:
            console.print(f"[red]{exc}[/red]")
            if backend.name == "spotify":
                console.print(
                    "Set SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET "
                    "(a .env file works)."
                )
            return EXIT_USAGE
        payload = await _read_redirect(backend, console)
        if not await engine.session.handle_auth_callback(payload):
            console.print("[red]That is not the redirect URL for this app.[/red]")
            return EXIT_USAGE
        connected = await wait_for_connection(engine)
        if not engine.session.has_credential:
            message = engine.session.last_error or "Authorization failed."
            console.print(f"[red]{message}[/red]")
            return EXIT_USAGE
        console.print("[green]Logged in.[/green]")
        if not connected:
            message = engine.session.last_error or "No device connected yet."
            console.print(f"[yellow]{message}[/yellow]")
        return EXIT_OK
    finally:
        await engine.shutdown()


async def _add(args: argparse.Namespace, console: Console) -> int:
    uri = parse_track_uri(args.uri)
    if not uri:
        console.print("[red]Invalid Spotify URI or link[/red]")
        return EXIT_USAGE
    store = open_clip_store()
    engine, _ = _build_engine(args, store)
    try:
        await engine.start()
        if not await wait_for_connection(engine):
            message = engine.session.last_error or "Run 'loopdeck login' first."
            console.print(f"[red]Not connected. {message}[/red]")
            return EXIT_USAGE
        meta = await engine.session.fetch_track(uri)
        if meta is None:
            logger.info("No catalog details for %s; using defaults", uri)
        duration_ms = (
            meta.duration_ms
            if meta is not None and meta.duration_ms > 0
            else DEFAULT_TRACK_DURATION_MS
        )
        clip = store.add_clip(
            track_uri=uri,
            track_name=meta.name if meta else "Unknown",
            artist_name=meta.artist_name if meta else "Unknown",
            duration_ms=duration_ms,
        )
        console.print(
            f"Added {clip.track_name} - {clip.artist_name} "
            f"({format_clip_time(duration_ms)}) as {clip.id[:8]}"
        )
        return EXIT_OK
    finally:
        await engine.shutdown()


def render_status(engine: LoopEngine) -> str:
    clip = engine.sequencer.current_clip
    if clip is None:
        return "Waiting for playback..."
    position = engine.display_position_ms()
    if position is None:
        position = clip.start_position_ms
    icon = "Playing" if engine.sequencer.is_playing else "Paused"
    return (
        f"{icon} {clip.track_name} "
        f"{format_clip_time(position)} / {format_clip_time(clip.stop_position_ms)} "
        f"[dim]({engine.session.connection_state})[/dim]"
    )


async def _report_artwork(engine: LoopEngine, clip: ClipRecord, console: Console) -> None:
    image = await engine.artwork.fetch_artwork(clip.track_uri)
    if image is None:
        console.print("[dim]  no artwork[/dim]")
    else:
        console.print(f"[dim]  artwork: {len(image) // 1024} KB[/dim]")


async def _play(args: argparse.Namespace, console: Console) -> int:
    store = open_clip_store()
    _print_notice(console, store)
    clips = store.clips()
    if not clips:
        console.print("No clips yet. Add one with 'loopdeck add <uri>'.")
        return EXIT_USAGE
    index = args.start - 1
    if not 0 <= index < len(clips):
        console.print(f"[red]--from must be between 1 and {len(clips)}[/red]")
        return EXIT_USAGE

    engine, backend = _build_engine(args, store)
    finished = asyncio.Event()
    artwork_tasks: set[asyncio.Task[None]] = set()

    async def on_cursor(event: CursorChanged) -> None:
        if event.clip is None or event.index is None:
            finished.set()
            return
        clip = event.clip
        console.print(
            f"[bold]{event.index + 1}.[/bold] {clip.track_name} - {clip.artist_name} "
            f"[dim]{clip.trim_range_display}[/dim]"
        )
        task = asyncio.create_task(_report_artwork(engine, clip, console))
        artwork_tasks.add(task)
        task.add_done_callback(artwork_tasks.discard)

    async def on_notification(event: Notification) -> None:
        console.print(f"[yellow]{event.message}[/yellow]")

    engine.bus.subscribe(CursorChanged, on_cursor)
    engine.bus.subscribe(Notification, on_notification)
    fake = backend.transport if isinstance(backend.transport, FakeTransport) else None
    if fake is not None:
        await fake.start()
    try:
        await engine.start()
        if not await wait_for_connection(engine):
            message = engine.session.last_error or "Run 'loopdeck login' first."
            console.print(f"[red]Not connected. {message}[/red]")
            return EXIT_USAGE
        await engine.sequencer.play_from_index(index)
        with console.status("Starting...") as status:
            while not finished.is_set():
                if engine.session.gave_up or not engine.session.has_credential:
                    return EXIT_FAILURE
                status.update(render_status(engine))
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(finished.wait(), timeout=0.25)
        console.print("[green]Sequence finished.[/green]")
        return EXIT_OK
    finally:
        for task in list(artwork_tasks):
            task.cancel()
        if engine.sequencer.current_clip is not None and engine.session.is_connected:
            await engine.sequencer.stop()
        await engine.shutdown()
        if fake is not None:
            await fake.shutdown()


_COMMANDS: dict[str, Callable[[argparse.Namespace, Console], int]] = {
    "login": _cmd_login,
    "clips": _cmd_clips,
    "add": _cmd_add,
    "trim": _cmd_trim,
    "remove": _cmd_remove,
    "play": _cmd_play,
}


if __name__ == "__main__":
    raise SystemExit(main())
