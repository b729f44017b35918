"""Command-line entrypoint for cava-art.

`run` (the default) validates the cava config template, builds the selected
playback observer and drives the sync loop until SIGINT/SIGTERM. `doctor`
prints environment diagnostics. Exit codes: 0 clean shutdown, 1 startup
failure, 2 authorization expired (or failed doctor checks).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from contextlib import suppress
from functools import partial
from pathlib import Path

import aiohttp
from dotenv import load_dotenv

from . import __version__
from .doctor import render_report, run_doctor
from .logging_utils import setup_logging
from .paths import log_dir
from .runtime_config import SyncSettings, load_settings, resolve_log_level
from .services.artwork_fetcher import ArtworkFetcher
from .services.config_sync import SLOT_ORDERS, ConfigSynchronizer, SyncError
from .services.local_observer import LocalPlaybackObserver
from .services.playback_observer import AuthExpiredError, PlaybackObserver
from .services.remote_observer import RemotePlaybackObserver
from .services.spotify_auth import (
    AuthorizationError,
    SpotifyCredentials,
    prompt_for_token,
)
from .services.sync_service import BackoffPolicy, SyncCoordinator
from .services.visualizer_reload import reload_visualizer
from .version import build_help_epilog

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_AUTH_EXPIRED = 2

logger = logging.getLogger(__name__)


class StartupError(Exception):
    """Misconfiguration detected before the sync loop starts."""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cava-art",
        description="Keep cava's colors in sync with the playing track's album art.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=build_help_epilog(),
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=("run", "doctor"),
        default="run",
        help="run the sync loop (default) or print diagnostics",
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
        choices=("local", "remote"),
        default="local",
        help="Playback source: local MPRIS via playerctl, or the Spotify Web API.",
    )
    parser.add_argument(
        "--config",
        help="cava config file (default: $CAVA_CONFIG_LOCATION or cava's own config).",
    )
    parser.add_argument(
        "--slots",
        help="Comma separated color keys to fill, in palette order.",
    )
    parser.add_argument(
        "--slot-order",
        choices=SLOT_ORDERS,
        default="dominance",
        help="Assign colors by dominance or by ascending brightness.",
    )
    parser.add_argument(
        "--section",
        help="INI section holding the color keys (default: color; '' for any).",
    )
    parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between polls (default depends on the backend).",
    )
    parser.add_argument(
        "--backoff-base",
        type=float,
        default=1.0,
        help="First retry delay in seconds after a failed sync.",
    )
    parser.add_argument(
        "--backoff-max",
        type=float,
        default=60.0,
        help="Upper bound for the retry delay in seconds.",
    )
    parser.add_argument("--player", help="playerctl player name (local backend).")
    parser.add_argument(
        "--no-reload",
        action="store_true",
        help="Do not send SIGUSR2 to cava after writing the config.",
    )
    parser.add_argument(
        "--reload-process",
        default="cava",
        help="Process name that receives the reload signal.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv(Path.cwd() / ".env", override=False)
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        level = resolve_log_level(verbose=args.verbose, quiet=args.quiet)
        setup_logging(
            log_dir=log_dir(),
            level=level,
            log_file=Path(args.log_file) if args.log_file else None,
        )
    except Exception as exc:  # pragma: no cover - top-level safety net
        logger.exception("Logging setup failed: %s", exc)
        print("Unexpected error. Re-run with --verbose for details.", file=sys.stderr)
        return EXIT_STARTUP_FAILURE

    settings = load_settings(args)
    if args.command == "doctor":
        report = run_doctor(settings)
        print(render_report(report))
        return report.exit_code

    logger.info(
        "Starting cava-art %s (backend=%s)",
        __version__,
        settings.backend,
        extra={"config_path": str(settings.config_path)},
    )
    try:
        return asyncio.run(run_sync(settings))
    except StartupError as exc:
        logger.error("Startup failed: %s", exc)
        print(f"Startup failed: {exc}", file=sys.stderr)
        return EXIT_STARTUP_FAILURE
    except KeyboardInterrupt:
        return EXIT_OK


async def run_sync(
    settings: SyncSettings, *, stop_event: asyncio.Event | None = None
) -> int:
    """Validate inputs, then run the coordinator until stopped."""
    synchronizer = ConfigSynchronizer(
        settings.slots, section=settings.section, order=settings.slot_order
    )
    try:
        synchronizer.validate(settings.config_path)
    except SyncError as exc:
        raise StartupError(str(exc)) from exc

    stop = stop_event or asyncio.Event()
    installed = _install_signal_handlers(stop)
    try:
        async with aiohttp.ClientSession() as session:
            observer = await build_observer(settings, session)
            coordinator = SyncCoordinator(
                observer,
                ArtworkFetcher(session),
                synchronizer,
                settings.config_path,
                poll_interval_s=settings.poll_interval_s,
                backoff=BackoffPolicy(
                    base_s=settings.backoff_base_s, max_s=settings.backoff_max_s
                ),
                reloader=partial(reload_visualizer, settings.reload_process)
                if settings.reload
                else None,
            )
            try:
                await coordinator.run(stop)
            except AuthExpiredError as exc:
                logger.error("Session ended: %s", exc)
                print(
                    f"Authorization expired: {exc}. Restart cava-art to log in again.",
                    file=sys.stderr,
                )
                return EXIT_AUTH_EXPIRED
    finally:
        _remove_signal_handlers(installed)
    return EXIT_OK


async def build_observer(
    settings: SyncSettings, session: aiohttp.ClientSession
) -> PlaybackObserver:
    if settings.backend == "remote":
        try:
            credentials = SpotifyCredentials.from_env(os.environ)
            token = await prompt_for_token(session, credentials)
        except AuthorizationError as exc:
            raise StartupError(str(exc)) from exc
        return RemotePlaybackObserver(session, token)
    return LocalPlaybackObserver(player=settings.player)


def _install_signal_handlers(stop: asyncio.Event) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    return installed


def _remove_signal_handlers(installed: list[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        with suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(sig)


if __name__ == "__main__":
    raise SystemExit(main())
