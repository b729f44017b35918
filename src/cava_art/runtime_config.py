"""Runtime configuration: CLI flags and environment folded into one settings object.

Precedence is deterministic: explicit flags, then environment variables, then
the active observer's defaults.
"""

from __future__ import annotations

import argparse
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .paths import resolve_visualizer_config_path
from .services.config_sync import (
    DEFAULT_COLOR_SLOTS,
    DEFAULT_SECTION,
    SLOT_ORDERS,
    SlotOrder,
)
from .services.playback_observer import PROFILES, ObserverName

SLOTS_ENV_VAR = "CAVA_ART_SLOTS"
PLAYER_ENV_VAR = "CAVA_ART_PLAYER"
MIN_POLL_INTERVAL_S = 0.1


@dataclass(frozen=True)
class SyncSettings:
    """Everything the sync loop needs, resolved once at startup."""

    backend: ObserverName
    config_path: Path
    slots: tuple[str, ...] = DEFAULT_COLOR_SLOTS
    slot_order: SlotOrder = "dominance"
    section: str | None = DEFAULT_SECTION
    poll_interval_s: float = 0.5
    backoff_base_s: float = 1.0
    backoff_max_s: float = 60.0
    player: str | None = None
    reload: bool = True
    reload_process: str = "cava"


def resolve_log_level(*, verbose: bool, quiet: bool) -> str:
    """Resolve effective log level from CLI flags.

    --quiet overrides --verbose.
    """
    if quiet:
        return "WARNING"
    if verbose:
        return "DEBUG"
    return "INFO"


def parse_slots(value: str | None) -> tuple[str, ...]:
    """Parse a comma separated key list; empty input means the defaults."""
    if not value:
        return DEFAULT_COLOR_SLOTS
    slots = tuple(part.strip() for part in value.split(",") if part.strip())
    return slots or DEFAULT_COLOR_SLOTS


def normalize_slot_order(value: str | None) -> SlotOrder:
    normalized = (value or "").strip().lower()
    for order in SLOT_ORDERS:
        if order == normalized:
            return order
    return "dominance"


def load_settings(
    args: argparse.Namespace, environ: Mapping[str, str] | None = None
) -> SyncSettings:
    """Build `SyncSettings` from parsed arguments and the environment."""
    env = os.environ if environ is None else environ
    backend: ObserverName = "remote" if args.backend == "remote" else "local"
    profile = PROFILES[backend]
    interval = args.interval if args.interval is not None else profile.poll_interval_s
    section = args.section if args.section is not None else DEFAULT_SECTION
    return SyncSettings(
        backend=backend,
        config_path=resolve_visualizer_config_path(args.config, env),
        slots=parse_slots(args.slots or env.get(SLOTS_ENV_VAR)),
        slot_order=normalize_slot_order(args.slot_order),
        section=section.strip() or None,
        poll_interval_s=max(MIN_POLL_INTERVAL_S, float(interval)),
        backoff_base_s=max(0.0, float(args.backoff_base)),
        backoff_max_s=max(0.0, float(args.backoff_max)),
        player=args.player or env.get(PLAYER_ENV_VAR) or None,
        reload=not args.no_reload,
        reload_process=args.reload_process,
    )
