"""Spotify Web API playback observer."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from .playback_observer import (
    AuthExpiredError,
    Observation,
    ObserverError,
    RateLimitedError,
)
from .spotify_auth import AccessToken

logger = logging.getLogger(__name__)

CURRENTLY_PLAYING_URL = "https://api.spotify.com/v1/me/player/currently-playing"


class RemotePlaybackObserver:
    """Polls the currently-playing endpoint with a session-scoped token."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: AccessToken,
        *,
        timeout_s: float = 5.0,
        url: str = CURRENTLY_PLAYING_URL,
    ) -> None:
        self._session = session
        self._token = token
        self._timeout_s = timeout_s
        self._url = url

    async def observe(self) -> Observation | None:
        if self._token.is_expired():
            raise AuthExpiredError("Spotify access token expired; log in again")
        try:
            async with self._session.get(
                self._url,
                headers={"Authorization": f"Bearer {self._token.value}"},
                params={"additional_types": "track,episode"},
                timeout=aiohttp.ClientTimeout(total=self._timeout_s),
            ) as resp:
                if resp.status == 204:
                    return None
                if resp.status == 401:
                    raise AuthExpiredError("Spotify rejected the access token (401)")
                if resp.status == 429:
                    raise RateLimitedError(_retry_after(resp.headers))
                if resp.status != 200:
                    raise ObserverError(f"currently-playing returned {resp.status}")
                payload = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ObserverError(f"currently-playing request failed: {exc}") from exc
        except ValueError as exc:
            raise ObserverError(f"currently-playing body is not JSON: {exc}") from exc
        return parse_currently_playing(payload)


def parse_currently_playing(payload: Any) -> Observation | None:
    """Map a currently-playing response body onto an observation."""
    if not isinstance(payload, dict):
        return None
    item = payload.get("item")
    if not isinstance(item, dict):
        return None
    track_id = item.get("id") or item.get("uri")
    if not isinstance(track_id, str) or not track_id:
        return None
    if item.get("type") == "episode":
        images = item.get("images") or []
        artist = (item.get("show") or {}).get("name")
    else:
        images = (item.get("album") or {}).get("images") or []
        artist = ", ".join(
            artist["name"]
            for artist in item.get("artists") or []
            if isinstance(artist, dict) and artist.get("name")
        )
    return Observation(
        track_id=track_id,
        artwork_location=smallest_image_url(images),
        title=item.get("name") or None,
        artist=artist or None,
    )


def smallest_image_url(images: list[Any]) -> str | None:
    """Pick the smallest sized image; plenty for palette extraction."""
    sized = [
        (image["height"], image["url"])
        for image in images
        if isinstance(image, dict)
        and isinstance(image.get("height"), int)
        and image.get("url")
    ]
    if sized:
        return min(sized, key=lambda pair: pair[0])[1]
    for image in images:
        if isinstance(image, dict) and image.get("url"):
            return image["url"]
    return None


def _retry_after(headers: Any) -> float:
    try:
        return max(0.0, float(headers.get("Retry-After", 1)))
    except (TypeError, ValueError):
        return 1.0
