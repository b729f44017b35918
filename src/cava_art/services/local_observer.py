"""MPRIS playback observer backed by the `playerctl` CLI."""

from __future__ import annotations

import asyncio
import logging
import shutil
from contextlib import suppress
from urllib.parse import unquote, urlparse

from .playback_observer import Observation, ObserverError, derive_track_id

logger = logging.getLogger(__name__)

PLAYERCTL = "playerctl"
_FIELD_SEP = "\x1f"
_FIELDS = (
    "status",
    "mpris:trackid",
    "xesam:title",
    "xesam:artist",
    "mpris:artUrl",
    "xesam:url",
)
METADATA_FORMAT = _FIELD_SEP.join("{{" + field + "}}" for field in _FIELDS)
_NO_TRACK_IDS = {"", "/org/mpris/MediaPlayer2/TrackList/NoTrack"}
_NO_PLAYER_MARKERS = ("no players found", "no player could handle this command")

# Spotify desktop publishes art URLs on a host that does not serve images.
_ART_HOST_REWRITES = {"open.spotify.com": "i.scdn.co"}


class LocalPlaybackObserver:
    """Queries the active MPRIS player through `playerctl metadata`."""

    def __init__(
        self,
        *,
        player: str | None = None,
        timeout_s: float = 2.0,
        executable: str = PLAYERCTL,
    ) -> None:
        self._player = player
        self._timeout_s = timeout_s
        self._executable = executable

    def command(self) -> list[str]:
        argv = [self._executable]
        if self._player:
            argv.extend(["--player", self._player])
        argv.extend(["metadata", "--format", METADATA_FORMAT])
        return argv

    async def observe(self) -> Observation | None:
        returncode, stdout, stderr = await self._run(self.command())
        if returncode != 0:
            lowered = stderr.lower()
            if any(marker in lowered for marker in _NO_PLAYER_MARKERS):
                return None
            raise ObserverError(
                f"playerctl exited with {returncode}: {stderr.strip() or 'no output'}"
            )
        return parse_metadata(stdout)

    async def _run(self, argv: list[str]) -> tuple[int, str, str]:
        if shutil.which(argv[0]) is None:
            raise ObserverError(f"{argv[0]} not found on PATH")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ObserverError(f"could not launch {argv[0]}: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._timeout_s
            )
        except asyncio.TimeoutError as exc:
            with suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise ObserverError(
                f"{argv[0]} did not answer within {self._timeout_s:.1f}s"
            ) from exc
        return (
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )


def parse_metadata(output: str) -> Observation | None:
    """Turn one formatted `playerctl metadata` line into an observation."""
    line = output.strip("\r\n")
    if not line.strip():
        return None
    parts = line.split(_FIELD_SEP)
    parts.extend([""] * (len(_FIELDS) - len(parts)))
    status, track_id, title, artist, art_url, track_url = (
        part.strip() for part in parts[: len(_FIELDS)]
    )
    if status.lower() == "stopped":
        return None
    title_or_none = title or None
    artist_or_none = artist or None
    if track_id in _NO_TRACK_IDS:
        derived = derive_track_id(title_or_none, artist_or_none)
        if derived is None:
            return None
        track_id = derived
    location = rewrite_art_url(art_url) if art_url else _local_track_file(track_url)
    return Observation(
        track_id=track_id,
        artwork_location=location,
        title=title_or_none,
        artist=artist_or_none,
    )


def rewrite_art_url(url: str) -> str:
    parsed = urlparse(url)
    replacement = _ART_HOST_REWRITES.get(parsed.netloc)
    if replacement is None:
        return url
    return parsed._replace(netloc=replacement).geturl()


def _local_track_file(track_url: str) -> str | None:
    """Local track files stand in for missing art (embedded/sidecar cover)."""
    if not track_url.startswith("file://"):
        return None
    path = unquote(urlparse(track_url).path)
    return path or None
