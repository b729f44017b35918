"""Environment diagnostics for the sync loop's external tools and inputs."""

from __future__ import annotations

import importlib
import os
import shutil
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

from .runtime_config import SyncSettings
from .services.config_sync import ConfigSynchronizer, SyncError
from .services.spotify_auth import AuthorizationError, SpotifyCredentials

DoctorStatus = Literal["ok", "missing", "error"]


@dataclass(frozen=True)
class DoctorCheck:
    """One readiness check result."""

    name: str
    status: DoctorStatus
    required: bool
    detail: str
    hint: str | None = None


@dataclass(frozen=True)
class DoctorReport:
    backend: str
    checks: list[DoctorCheck]

    @property
    def exit_code(self) -> int:
        """Non-zero when any required check is not ok."""
        for check in self.checks:
            if check.required and check.status != "ok":
                return 2
        return 0


def run_doctor(
    settings: SyncSettings, environ: Mapping[str, str] | None = None
) -> DoctorReport:
    env = os.environ if environ is None else environ
    checks = [
        probe_module("pillow", "PIL", required=True),
        probe_module("tinytag", "tinytag", required=False),
        probe_config(settings),
        probe_playerctl(required=settings.backend == "local"),
        probe_spotify_credentials(env, required=settings.backend == "remote"),
        probe_pkill(required=False),
    ]
    return DoctorReport(backend=settings.backend, checks=checks)


def render_report(report: DoctorReport) -> str:
    lines = [f"cava-art doctor (backend={report.backend})", ""]
    for check in report.checks:
        req = "required" if check.required else "optional"
        token = _status_token(check.status)
        lines.append(f"{token} {check.name:<14} [{req}] {check.detail}")
        if check.hint:
            lines.append(f"      hint: {check.hint}")
    lines.append("")
    lines.append("Result: OK" if report.exit_code == 0 else "Result: FAIL")
    return "\n".join(lines)


def probe_module(name: str, module_name: str, *, required: bool) -> DoctorCheck:
    try:
        module = importlib.import_module(module_name)
    except Exception as exc:
        return DoctorCheck(
            name=name,
            status="missing",
            required=required,
            detail=f"not importable ({exc.__class__.__name__})",
            hint="Reinstall cava-art with its dependencies.",
        )
    version = getattr(module, "__version__", None)
    detail = f"importable ({version})" if version else "importable"
    return DoctorCheck(name=name, status="ok", required=required, detail=detail)


def probe_config(settings: SyncSettings) -> DoctorCheck:
    synchronizer = ConfigSynchronizer(
        settings.slots, section=settings.section, order=settings.slot_order
    )
    try:
        synchronizer.validate(settings.config_path)
    except SyncError as exc:
        return DoctorCheck(
            name="cava config",
            status="error",
            required=True,
            detail=str(exc),
            hint="Set CAVA_CONFIG_LOCATION or --config and uncomment the color keys.",
        )
    return DoctorCheck(
        name="cava config",
        status="ok",
        required=True,
        detail=f"{settings.config_path} ({len(settings.slots)} color keys)",
    )


def probe_playerctl(*, required: bool) -> DoctorCheck:
    playerctl = shutil.which("playerctl")
    if playerctl is None:
        return DoctorCheck(
            name="playerctl",
            status="missing",
            required=required,
            detail="binary not found on PATH",
            hint="Install playerctl for the local MPRIS backend.",
        )
    try:
        proc = subprocess.run(
            [playerctl, "--version"],
            capture_output=True,
            text=True,
            timeout=2,
            check=False,
        )
    except Exception as exc:
        return DoctorCheck(
            name="playerctl",
            status="error",
            required=required,
            detail=f"launch failed ({exc.__class__.__name__})",
        )
    if proc.returncode != 0:
        return DoctorCheck(
            name="playerctl",
            status="error",
            required=required,
            detail=f"playerctl --version failed (exit={proc.returncode})",
        )
    version = proc.stdout.strip().splitlines()[0] if proc.stdout.strip() else ""
    return DoctorCheck(
        name="playerctl",
        status="ok",
        required=required,
        detail=version or f"binary found at {playerctl}",
    )


def probe_spotify_credentials(
    environ: Mapping[str, str], *, required: bool
) -> DoctorCheck:
    try:
        credentials = SpotifyCredentials.from_env(environ)
    except AuthorizationError as exc:
        return DoctorCheck(
            name="spotify creds",
            status="missing",
            required=required,
            detail=str(exc),
            hint=(
                "Export SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET "
                "or add them to .env."
            ),
        )
    return DoctorCheck(
        name="spotify creds",
        status="ok",
        required=required,
        detail=(
            f"client {credentials.client_id[:8]}..., "
            f"redirect {credentials.redirect_uri}"
        ),
    )


def probe_pkill(*, required: bool) -> DoctorCheck:
    pkill = shutil.which("pkill")
    if pkill is None:
        return DoctorCheck(
            name="pkill",
            status="missing",
            required=required,
            detail="binary not found on PATH",
            hint="Without pkill cava must be reloaded by hand after each write.",
        )
    return DoctorCheck(name="pkill", status="ok", required=required, detail=pkill)


def _status_token(status: DoctorStatus) -> str:
    if status == "ok":
        return "[OK]"
    if status == "missing":
        return "[MISS]"
    return "[ERR]"
