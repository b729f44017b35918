"""Tests for artwork retrieval and the single-entry cache."""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiohttp
import pytest

import cava_art.services.artwork_fetcher as fetcher_module
from cava_art.services.artwork_fetcher import (
    ArtworkFetcher,
    ArtworkUnavailableError,
    extract_sidecar_art_bytes,
    fallback_image_bytes,
    sniff_format,
)


def _run(coro):
    return asyncio.run(coro)


class FakeStream:
    def __init__(self, body: bytes, chunk_size: int = 4) -> None:
        self._body = body
        self._chunk_size = chunk_size
        self.consumed = 0

    async def iter_chunked(self, size: int):
        step = min(size, self._chunk_size)
        for start in range(0, len(self._body), step):
            chunk = self._body[start : start + step]
            self.consumed += len(chunk)
            yield chunk


class FakeResponse:
    def __init__(
        self,
        status: int = 200,
        body: bytes = b"",
        content_length: int | None = None,
    ) -> None:
        self.status = status
        self.content_length = content_length
        self.content = FakeStream(body)


class _RequestContext:
    def __init__(self, outcome: FakeResponse | BaseException) -> None:
        self._outcome = outcome

    async def __aenter__(self) -> FakeResponse:
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, *exc_info: object) -> None:
        return None


class FakeSession:
    """Replays scripted responses (or exceptions) for successive GETs."""

    def __init__(self, outcomes: list[FakeResponse | BaseException]) -> None:
        self._outcomes = list(outcomes)
        self.requested: list[str] = []

    def get(self, url: str, **kwargs: object) -> _RequestContext:
        self.requested.append(url)
        return _RequestContext(self._outcomes.pop(0))


PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def test_fetch_downloads_and_caches_by_track_id() -> None:
    session = FakeSession([FakeResponse(200, PNG_SIGNATURE + b"data")])
    fetcher = ArtworkFetcher(session)  # type: ignore[arg-type]

    async def scenario():
        first = await fetcher.fetch("track-a", "https://img.example/a.png")
        second = await fetcher.fetch("track-a", "https://img.example/a.png")
        return first, second

    first, second = _run(scenario())
    assert first is second
    assert first.format == "png"
    assert session.requested == ["https://img.example/a.png"]


def test_fetch_evicts_previous_track_entry() -> None:
    session = FakeSession(
        [FakeResponse(200, b"\xff\xd8first"), FakeResponse(200, b"\xff\xd8second")]
    )
    fetcher = ArtworkFetcher(session)  # type: ignore[arg-type]

    async def scenario():
        await fetcher.fetch("track-a", "https://img.example/a.jpg")
        await fetcher.fetch("track-b", "https://img.example/b.jpg")
        return await fetcher.fetch("track-a", "https://img.example/a.jpg")

    session._outcomes.append(FakeResponse(200, b"\xff\xd8again"))
    image = _run(scenario())
    assert image.data == b"\xff\xd8again"
    assert fetcher.cached is image
    assert len(session.requested) == 3


def test_fetch_without_location_returns_fallback_image() -> None:
    fetcher = ArtworkFetcher()
    image = _run(fetcher.fetch("artless", None))
    assert image.data == fallback_image_bytes()
    assert image.format == "png"
    assert image.track_id == "artless"


def test_fetch_retries_transient_failures_then_succeeds() -> None:
    session = FakeSession(
        [
            aiohttp.ClientConnectionError("reset"),
            FakeResponse(503),
            FakeResponse(200, b"GIF89a..."),
        ]
    )
    fetcher = ArtworkFetcher(session, retry_base_delay_s=0.0)  # type: ignore[arg-type]
    image = _run(fetcher.fetch("track-a", "https://img.example/a.gif"))
    assert image.format == "gif"
    assert len(session.requested) == 3


def test_fetch_gives_up_after_max_attempts() -> None:
    session = FakeSession([asyncio.TimeoutError() for _ in range(3)])
    fetcher = ArtworkFetcher(  # type: ignore[arg-type]
        session, max_attempts=3, retry_base_delay_s=0.0
    )
    with pytest.raises(ArtworkUnavailableError):
        _run(fetcher.fetch("track-a", "https://img.example/a.png"))
    assert len(session.requested) == 3
    assert fetcher.cached is None


def test_fetch_does_not_retry_client_errors() -> None:
    session = FakeSession([FakeResponse(404)])
    fetcher = ArtworkFetcher(session, retry_base_delay_s=0.0)  # type: ignore[arg-type]
    with pytest.raises(ArtworkUnavailableError, match="404"):
        _run(fetcher.fetch("track-a", "https://img.example/missing.png"))
    assert len(session.requested) == 1


def test_fetch_rejects_empty_body() -> None:
    session = FakeSession([FakeResponse(200, b"")])
    fetcher = ArtworkFetcher(session)  # type: ignore[arg-type]
    with pytest.raises(ArtworkUnavailableError):
        _run(fetcher.fetch("track-a", "https://img.example/empty.png"))


def test_fetch_backoff_delays_double(monkeypatch) -> None:
    delays: list[float] = []

    real_sleep = asyncio.sleep

    async def fake_sleep(value: float) -> None:
        delays.append(value)
        await real_sleep(0)

    monkeypatch.setattr(fetcher_module.asyncio, "sleep", fake_sleep)
    session = FakeSession([FakeResponse(500)] * 4)
    fetcher = ArtworkFetcher(  # type: ignore[arg-type]
        session, max_attempts=4, retry_base_delay_s=0.5, retry_max_delay_s=1.5
    )
    with pytest.raises(ArtworkUnavailableError):
        _run(fetcher.fetch("track-a", "https://img.example/a.png"))
    assert delays == [0.5, 1.0, 1.5]


def test_fetch_reads_local_image_paths(tmp_path: Path) -> None:
    art = tmp_path / "cover.png"
    art.write_bytes(PNG_SIGNATURE + b"local")
    fetcher = ArtworkFetcher()
    by_path = _run(fetcher.fetch("a", str(art)))
    by_url = _run(fetcher.fetch("b", art.as_uri()))
    assert by_path.data == by_url.data == PNG_SIGNATURE + b"local"


def test_fetch_uses_sidecar_art_for_local_tracks(monkeypatch, tmp_path: Path) -> None:
    album = tmp_path / "album"
    album.mkdir()
    track = album / "song.flac"
    track.write_bytes(b"audio")
    (album / "folder.jpg").write_bytes(b"\xff\xd8folder")
    monkeypatch.setattr(
        fetcher_module, "extract_embedded_art_bytes", lambda path: None
    )

    image = _run(ArtworkFetcher().fetch("t", track.as_uri()))
    assert image.data == b"\xff\xd8folder"
    assert image.format == "jpeg"


def test_fetch_prefers_embedded_art_for_local_tracks(
    monkeypatch, tmp_path: Path
) -> None:
    track = tmp_path / "song.mp3"
    track.write_bytes(b"audio")
    (tmp_path / "cover.jpg").write_bytes(b"\xff\xd8sidecar")
    monkeypatch.setattr(
        fetcher_module, "extract_embedded_art_bytes", lambda path: b"\xff\xd8embedded"
    )
    image = _run(ArtworkFetcher().fetch("t", str(track)))
    assert image.data == b"\xff\xd8embedded"


def test_fetch_local_track_without_art_is_unavailable(
    monkeypatch, tmp_path: Path
) -> None:
    track = tmp_path / "song.ogg"
    track.write_bytes(b"audio")
    monkeypatch.setattr(
        fetcher_module, "extract_embedded_art_bytes", lambda path: None
    )
    with pytest.raises(ArtworkUnavailableError):
        _run(ArtworkFetcher().fetch("t", str(track)))


def test_sidecar_lookup_prefers_cover_then_track_stem(tmp_path: Path) -> None:
    track = tmp_path / "my-song.flac"
    track.write_bytes(b"audio")
    (tmp_path / "my-song.jpeg").write_bytes(b"stem")
    assert extract_sidecar_art_bytes(track) == b"stem"
    (tmp_path / "Cover.PNG").write_bytes(b"cover")
    assert extract_sidecar_art_bytes(track) == b"cover"


def test_sniff_format_recognizes_common_types() -> None:
    assert sniff_format(b"\xff\xd8\xff\xe0") == "jpeg"
    assert sniff_format(PNG_SIGNATURE) == "png"
    assert sniff_format(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "webp"
    assert sniff_format(b"BM\x00\x00") == "bmp"
    assert sniff_format(b"????") == "unknown"


def test_fetch_rejects_declared_oversize_without_reading(monkeypatch) -> None:
    monkeypatch.setattr(fetcher_module, "MAX_ARTWORK_BYTES", 16)
    response = FakeResponse(200, b"\xff\xd8" + b"x" * 40, content_length=42)
    fetcher = ArtworkFetcher(FakeSession([response]))  # type: ignore[arg-type]

    with pytest.raises(ArtworkUnavailableError, match="declared"):
        _run(fetcher.fetch("big", "https://img.example/big.jpg"))
    assert response.content.consumed == 0


def test_fetch_stops_streaming_past_size_cap(monkeypatch) -> None:
    monkeypatch.setattr(fetcher_module, "MAX_ARTWORK_BYTES", 16)
    response = FakeResponse(200, b"\xff\xd8" + b"x" * 98)
    fetcher = ArtworkFetcher(FakeSession([response]))  # type: ignore[arg-type]

    with pytest.raises(ArtworkUnavailableError, match="exceeds"):
        _run(fetcher.fetch("big", "https://img.example/big.jpg"))
    assert response.content.consumed <= 20
    assert fetcher.cached is None


def test_fetch_joins_streamed_chunks() -> None:
    body = PNG_SIGNATURE + bytes(range(50))
    session = FakeSession([FakeResponse(200, body, content_length=len(body))])
    fetcher = ArtworkFetcher(session)  # type: ignore[arg-type]
    image = _run(fetcher.fetch("t", "https://img.example/t.png"))
    assert image.data == body
