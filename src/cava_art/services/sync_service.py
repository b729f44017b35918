"""Poll/detect/act loop tying observer, fetcher, extractor and config together.

One cycle runs at a time. The config is rewritten at most once per distinct
track; a failed cycle leaves `last_track_id` untouched so the same track is
retried after a backoff delay. Only `AuthExpiredError` escapes `run()`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .artwork_fetcher import ArtworkFetcher, ArtworkImage, FetchError
from .config_sync import (
    ConfigSynchronizer,
    MalformedKeyError,
    MissingConfigError,
    SyncError,
)
from .palette_extractor import ArtworkDecodeError, Palette, extract_palette
from .playback_observer import (
    AuthExpiredError,
    Observation,
    ObserverError,
    PlaybackObserver,
    RateLimitedError,
)

logger = logging.getLogger(__name__)

CoordinatorState = Literal[
    "idle", "polling", "changed", "syncing", "backoff", "fatal"
]
TickOutcome = Literal["no_track", "unchanged", "synced", "failed"]

Extractor = Callable[[ArtworkImage, int], Palette]
Reloader = Callable[[], Awaitable[bool]]

DEFAULT_ESCALATION_THRESHOLD = 5


@dataclass
class SyncCycleState:
    """Per-process bookkeeping; never persisted."""

    last_track_id: str | None = None
    last_write_succeeded: bool = False
    consecutive_failures: int = 0
    consecutive_misconfig_failures: int = 0


@dataclass(frozen=True)
class BackoffPolicy:
    base_s: float = 1.0
    max_s: float = 60.0

    def delay_for(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        exponent = min(failures - 1, 32)
        return min(self.max_s, self.base_s * (2.0**exponent))


class SyncCoordinator:
    """Owns the sync loop, the artwork cache and the cycle state."""

    def __init__(
        self,
        observer: PlaybackObserver,
        fetcher: ArtworkFetcher,
        synchronizer: ConfigSynchronizer,
        config_path: Path,
        *,
        poll_interval_s: float,
        backoff: BackoffPolicy | None = None,
        extractor: Extractor = extract_palette,
        reloader: Reloader | None = None,
        escalation_threshold: int = DEFAULT_ESCALATION_THRESHOLD,
    ) -> None:
        self._observer = observer
        self._fetcher = fetcher
        self._synchronizer = synchronizer
        self._config_path = config_path
        self._poll_interval_s = max(0.0, poll_interval_s)
        self._backoff = backoff or BackoffPolicy()
        self._extractor = extractor
        self._reloader = reloader
        self._escalation_threshold = max(1, escalation_threshold)
        self._cycle = SyncCycleState()
        self._state: CoordinatorState = "idle"
        self._hold_off_s = 0.0
        self._observer_failing = False

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def cycle(self) -> SyncCycleState:
        return self._cycle

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick until `stop_event` is set; stop cancels an in-flight tick."""
        logger.info(
            "Sync loop started",
            extra={"config_path": str(self._config_path)},
        )
        try:
            while not stop_event.is_set():
                if not await self._tick_unless_stopped(stop_event):
                    break
                if await _wait_or_stop(stop_event, self.next_delay()):
                    break
                if self._state == "backoff":
                    self._state = "idle"
        finally:
            logger.info("Sync loop stopped (state=%s)", self._state)

    async def tick(self) -> TickOutcome:
        """Run one poll/detect/act cycle."""
        self._state = "polling"
        try:
            observation = await self._observer.observe()
        except AuthExpiredError:
            self._state = "fatal"
            logger.error("Authorization expired; re-run to log in again")
            raise
        except ObserverError as exc:
            if isinstance(exc, RateLimitedError):
                self._hold_off_s = exc.retry_after_s
            self._note_observer_failure(exc)
            return self._no_track()
        except Exception as exc:
            logger.exception("Unexpected error from playback observer: %s", exc)
            return self._no_track()
        self._note_observer_recovered()
        if observation is None:
            return self._no_track()
        if observation.track_id == self._cycle.last_track_id:
            self._state = "idle"
            return "unchanged"

        self._state = "changed"
        logger.info(
            "Track changed: %s",
            observation.describe(),
            extra={"track_id": observation.track_id},
        )
        try:
            await self._apply(observation)
        except (FetchError, ArtworkDecodeError, SyncError) as exc:
            self._record_failure(observation, exc)
            return "failed"
        except Exception as exc:  # pragma: no cover - cycle safety net
            logger.exception("Unexpected error while syncing: %s", exc)
            self._record_failure(observation, exc)
            return "failed"
        self._cycle.last_track_id = observation.track_id
        self._cycle.last_write_succeeded = True
        self._cycle.consecutive_failures = 0
        self._cycle.consecutive_misconfig_failures = 0
        self._state = "idle"
        return "synced"

    def next_delay(self) -> float:
        """Seconds to wait before the next tick."""
        if self._cycle.consecutive_failures > 0:
            return self._backoff.delay_for(self._cycle.consecutive_failures)
        delay = max(self._poll_interval_s, self._hold_off_s)
        self._hold_off_s = 0.0
        return delay

    async def _tick_unless_stopped(self, stop_event: asyncio.Event) -> bool:
        tick_task = asyncio.create_task(self.tick())
        stop_task = asyncio.create_task(stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {tick_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop_task.cancel()
            with suppress(asyncio.CancelledError):
                await stop_task
        if tick_task not in done:
            tick_task.cancel()
            with suppress(asyncio.CancelledError):
                await tick_task
            logger.info("Stop requested mid-cycle; cycle abandoned")
            return False
        tick_task.result()
        return True

    async def _apply(self, observation: Observation) -> None:
        image = await self._fetcher.fetch(
            observation.track_id, observation.artwork_location
        )
        palette = await asyncio.to_thread(
            self._extractor, image, self._synchronizer.palette_size
        )
        self._state = "syncing"
        changed = await asyncio.to_thread(
            self._synchronizer.sync, palette, self._config_path
        )
        if changed and self._reloader is not None:
            await self._reloader()

    def _no_track(self) -> TickOutcome:
        self._cycle.consecutive_failures = 0
        self._state = "idle"
        return "no_track"

    def _record_failure(self, observation: Observation, exc: Exception) -> None:
        cycle = self._cycle
        cycle.consecutive_failures += 1
        cycle.last_write_succeeded = False
        self._state = "backoff"
        delay = self._backoff.delay_for(cycle.consecutive_failures)
        context = {
            "track_id": observation.track_id,
            "failures": cycle.consecutive_failures,
            "error_type": exc.__class__.__name__,
        }
        if not isinstance(exc, (MissingConfigError, MalformedKeyError)):
            cycle.consecutive_misconfig_failures = 0
            logger.warning(
                "Sync failed: %s; retrying in %.1fs", exc, delay, extra=context
            )
            return
        cycle.consecutive_misconfig_failures += 1
        if cycle.consecutive_misconfig_failures >= self._escalation_threshold:
            logger.error(
                "Config %s still unusable after %d attempts: %s. "
                "Check the path and that the [color] keys are uncommented.",
                self._config_path,
                cycle.consecutive_misconfig_failures,
                exc,
                extra=context,
            )
        else:
            logger.warning(
                "Config problem: %s; retrying in %.1fs", exc, delay, extra=context
            )

    def _note_observer_failure(self, exc: ObserverError) -> None:
        if self._observer_failing:
            logger.debug("Playback observer still unavailable: %s", exc)
            return
        self._observer_failing = True
        logger.warning("Playback observer unavailable: %s", exc)

    def _note_observer_recovered(self) -> None:
        if self._observer_failing:
            self._observer_failing = False
            logger.info("Playback observer recovered")


async def _wait_or_stop(stop_event: asyncio.Event, delay_s: float) -> bool:
    """Sleep up to `delay_s`; True if the stop event fired first."""
    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=max(0.0, delay_s))
    except asyncio.TimeoutError:
        return False
    return True
