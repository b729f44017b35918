"""Artwork retrieval with a single-entry cache keyed by track identity."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from urllib.parse import unquote, urlparse

import aiohttp
from PIL import Image
from tinytag import TinyTag

logger = logging.getLogger(__name__)

FALLBACK_COLOR = (0x80, 0x80, 0x80)
FALLBACK_SIZE = (64, 64)
MAX_ARTWORK_BYTES = 20 * 1024 * 1024
_CHUNK_BYTES = 64 * 1024

_AUDIO_EXTENSIONS = (
    ".mp3",
    ".flac",
    ".ogg",
    ".opus",
    ".m4a",
    ".mp4",
    ".aac",
    ".wav",
    ".wma",
    ".aiff",
)
_SIDECAR_BASENAMES = ("cover", "folder", "front", "album", "artwork")
_SIDECAR_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".bmp", ".gif")
_RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class FetchError(Exception):
    """Artwork could not be produced for this cycle."""


class ArtworkUnavailableError(FetchError):
    """Retrieval failed after all retries, or the source holds no image."""


@dataclass(frozen=True)
class ArtworkImage:
    track_id: str
    data: bytes
    format: str


class _RetryableFetch(Exception):
    pass


class ArtworkFetcher:
    """Fetches artwork over HTTP or from disk, keeping only the latest image."""

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        *,
        timeout_s: float = 10.0,
        max_attempts: int = 3,
        retry_base_delay_s: float = 0.5,
        retry_max_delay_s: float = 4.0,
    ) -> None:
        self._session = session
        self._timeout_s = timeout_s
        self._max_attempts = max(1, int(max_attempts))
        self._retry_base_delay_s = max(0.0, retry_base_delay_s)
        self._retry_max_delay_s = max(0.0, retry_max_delay_s)
        self._cached: ArtworkImage | None = None

    @property
    def cached(self) -> ArtworkImage | None:
        return self._cached

    async def fetch(self, track_id: str, location: str | None) -> ArtworkImage:
        cached = self._cached
        if cached is not None and cached.track_id == track_id:
            logger.debug("Artwork cache hit for %s", track_id)
            return cached
        if location is None:
            logger.info("Track %s has no artwork; using fallback image", track_id)
            data = fallback_image_bytes()
        elif urlparse(location).scheme in ("http", "https"):
            data = await self._download(location)
        else:
            data = await asyncio.to_thread(read_local_artwork, _local_path(location))
        image = ArtworkImage(track_id=track_id, data=data, format=sniff_format(data))
        self._cached = image
        return image

    async def _download(self, url: str) -> bytes:
        if self._session is None:
            raise ArtworkUnavailableError("no HTTP session available for artwork")
        delay = self._retry_base_delay_s
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._download_once(url)
            except _RetryableFetch as exc:
                if attempt >= self._max_attempts:
                    raise ArtworkUnavailableError(
                        f"artwork download failed after {attempt} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "Artwork download attempt %d/%d failed: %s",
                    attempt,
                    self._max_attempts,
                    exc,
                )
                await asyncio.sleep(delay)
                delay = min(self._retry_max_delay_s, delay * 2.0)
        raise ArtworkUnavailableError(f"artwork download never attempted: {url}")

    async def _download_once(self, url: str) -> bytes:
        assert self._session is not None
        try:
            async with self._session.get(
                url, timeout=aiohttp.ClientTimeout(total=self._timeout_s)
            ) as resp:
                if resp.status in _RETRYABLE_STATUSES:
                    raise _RetryableFetch(f"HTTP {resp.status}")
                if resp.status != 200:
                    raise ArtworkUnavailableError(f"artwork URL returned {resp.status}")
                declared = resp.content_length
                if declared is not None and declared > MAX_ARTWORK_BYTES:
                    raise ArtworkUnavailableError(
                        f"artwork too large ({declared} bytes declared)"
                    )
                buffer = bytearray()
                async for chunk in resp.content.iter_chunked(_CHUNK_BYTES):
                    buffer.extend(chunk)
                    if len(buffer) > MAX_ARTWORK_BYTES:
                        raise ArtworkUnavailableError(
                            f"artwork exceeds {MAX_ARTWORK_BYTES} bytes"
                        )
                data = bytes(buffer)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise _RetryableFetch(str(exc) or exc.__class__.__name__) from exc
        if not data:
            raise ArtworkUnavailableError("artwork URL returned 0 bytes")
        logger.debug("Downloaded %d bytes of artwork", len(data))
        return data


def fallback_image_bytes() -> bytes:
    """Solid neutral PNG used for tracks without artwork."""
    buffer = BytesIO()
    Image.new("RGB", FALLBACK_SIZE, FALLBACK_COLOR).save(buffer, format="PNG")
    return buffer.getvalue()


def sniff_format(data: bytes) -> str:
    if data.startswith(b"\xff\xd8"):
        return "jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    if data.startswith(b"BM"):
        return "bmp"
    return "unknown"


def _local_path(location: str) -> Path:
    if location.startswith("file://"):
        return Path(unquote(urlparse(location).path))
    return Path(location).expanduser()


def read_local_artwork(path: Path) -> bytes:
    """Image files are read as-is; audio files yield embedded or sidecar art."""
    if path.suffix.lower() in _AUDIO_EXTENSIONS:
        data = extract_embedded_art_bytes(path) or extract_sidecar_art_bytes(path)
        if data is None:
            raise ArtworkUnavailableError(f"no embedded or sidecar artwork for {path}")
        return data
    data = _safe_read(path)
    if data is None:
        raise ArtworkUnavailableError(f"cannot read artwork file {path}")
    return data


def extract_embedded_art_bytes(path: Path) -> bytes | None:
    try:
        tag = TinyTag.get(str(path), image=True)
    except Exception as exc:
        logger.debug("tinytag artwork extraction failed for %s: %s", path, exc)
        return None
    images = getattr(tag, "images", None)
    if images is None:
        return None
    front = getattr(images, "front_cover", None)
    any_image = getattr(images, "any", None)
    for candidate in (front, any_image):
        data = _as_bytes(getattr(candidate, "data", None))
        if data:
            return data
    return None


def extract_sidecar_art_bytes(track_path: Path) -> bytes | None:
    """Find cover-art files next to the track, in priority order."""
    directory = track_path.parent
    try:
        files = {
            item.name.lower(): item for item in directory.iterdir() if item.is_file()
        }
    except OSError:
        return None
    names = [
        f"{basename}{ext}"
        for basename in (*_SIDECAR_BASENAMES, track_path.stem.lower())
        for ext in _SIDECAR_EXTENSIONS
    ]
    for name in names:
        sidecar = files.get(name)
        if sidecar is None:
            continue
        data = _safe_read(sidecar)
        if data:
            return data
    return None


def _safe_read(path: Path) -> bytes | None:
    try:
        size = path.stat().st_size
    except OSError:
        return None
    if size <= 0 or size > MAX_ARTWORK_BYTES:
        return None
    try:
        return path.read_bytes() or None
    except OSError:
        return None


def _as_bytes(value: object) -> bytes | None:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value) or None
    if isinstance(value, memoryview):
        return value.tobytes() or None
    return None
