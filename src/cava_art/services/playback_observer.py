"""Playback observer contract shared by the local and remote backends.

`SyncCoordinator` only ever calls `observe()`. Backend differences (poll
cadence, which failures are fatal) are expressed through `ObserverProfile`
and the two exception types below rather than through a class hierarchy.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Literal, Protocol

ObserverName = Literal["local", "remote"]


class ObserverError(Exception):
    """Transient observation failure; the coordinator treats it as no track."""


class RateLimitedError(ObserverError):
    """Source asked for a pause; `retry_after_s` stretches the next poll."""

    def __init__(self, retry_after_s: float) -> None:
        super().__init__(f"rate limited, retry after {retry_after_s:.0f}s")
        self.retry_after_s = retry_after_s


class AuthExpiredError(Exception):
    """Bearer token rejected or expired; ends the session."""


@dataclass(frozen=True)
class Observation:
    """Current track identity plus where its artwork lives."""

    track_id: str
    artwork_location: str | None
    title: str | None = None
    artist: str | None = None

    def describe(self) -> str:
        if self.title and self.artist:
            return f"{self.artist} - {self.title}"
        return self.title or self.track_id


@dataclass(frozen=True)
class ObserverProfile:
    """Per-backend defaults the coordinator needs."""

    name: ObserverName
    poll_interval_s: float


LOCAL_PROFILE = ObserverProfile(name="local", poll_interval_s=0.5)
# Spotify rate limits favour a coarser cadence.
REMOTE_PROFILE = ObserverProfile(name="remote", poll_interval_s=3.0)

PROFILES: dict[str, ObserverProfile] = {
    LOCAL_PROFILE.name: LOCAL_PROFILE,
    REMOTE_PROFILE.name: REMOTE_PROFILE,
}


class PlaybackObserver(Protocol):
    """Read-only source of the currently playing track."""

    async def observe(self) -> Observation | None: ...


def derive_track_id(title: str | None, artist: str | None) -> str | None:
    """Stable identity for players that do not expose a track id."""
    if not title and not artist:
        return None
    raw = f"{title or ''}\0{artist or ''}".encode()
    return "sha1:" + hashlib.sha1(raw).hexdigest()
