"""Per-track progress events and their fan-out to UI consumers."""

import inspect
import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class Phase(IntEnum):
    """Track phases, in the order they happen."""

    DOWNLOAD_START = 0
    DOWNLOAD = 1
    LYRICS = 2
    COVER = 3
    TAGGING = 4

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class ProgressEvent:
    phase: Phase
    loaded: int = 0
    total: int | None = None
    speed: float | None = None  # bytes/s since this track's download started

    @property
    def percent(self) -> int | None:
        if not self.total:
            return None
        return min(100, int(self.loaded * 100 / self.total))


ProgressCallback = Callable[[str, ProgressEvent], Awaitable[None] | None]


async def emit(callback: ProgressCallback | None, track_id: str, event: ProgressEvent) -> None:
    """Call a sync or async progress callback; its errors never reach the download."""
    if callback is None:
        return
    try:
        result = callback(track_id, event)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.debug("Progress callback failed for track %s: %s", track_id, e)


class ProgressHub:
    """Fans one engine callback out to any number of subscribers.

    Keeps per-track phase order monotonic: an event for an earlier phase than
    the last one seen is dropped. DOWNLOAD_START always restarts the track.
    """

    def __init__(self):
        self._subscribers: list[ProgressCallback] = []
        self._phases: dict[str, Phase] = {}

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def forget(self, track_id: str) -> None:
        self._phases.pop(str(track_id), None)

    def phase_of(self, track_id: str) -> Phase | None:
        return self._phases.get(str(track_id))

    async def __call__(self, track_id: str, event: ProgressEvent) -> None:
        key = str(track_id)
        last = self._phases.get(key)
        if event.phase != Phase.DOWNLOAD_START and last is not None and event.phase < last:
            logger.debug("Dropping out-of-order %s event for track %s (at %s)",
                         event.phase.label, key, last.label)
            return
        self._phases[key] = event.phase
        for callback in list(self._subscribers):
            await emit(callback, key, event)


class Throttle:
    """Rate-limits a progress callback per track id.

    Download ticks pass at most once per ``interval`` seconds. Phase changes,
    non-download phases and the final download tick (loaded == total) are
    always delivered. ``key`` maps a track id to the bucket being limited;
    a constant key limits all tracks together, e.g. one chat message.
    """

    def __init__(self, callback: ProgressCallback, interval: float = 2.0,
                 key: Callable[[str], str] | None = None):
        self.callback = callback
        self.interval = interval
        self.key = key or str
        self._last_sent: dict[str, float] = {}
        self._last_phase: dict[str, Phase] = {}

    def _is_terminal(self, key: str, event: ProgressEvent) -> bool:
        if self._last_phase.get(key) != event.phase:
            return True
        if event.phase != Phase.DOWNLOAD:
            return True
        return bool(event.total) and event.loaded >= event.total

    async def __call__(self, track_id: str, event: ProgressEvent) -> None:
        key = self.key(str(track_id))
        now = time.monotonic()
        last = self._last_sent.get(key)
        if not self._is_terminal(key, event) and last is not None and now - last < self.interval:
            return
        self._last_sent[key] = now
        self._last_phase[key] = event.phase
        await emit(self.callback, str(track_id), event)


def _format_size(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}B"
        size /= 1024
    return f"{size:.1f}GB"


def format_progress(title: str, event: ProgressEvent) -> str:
    """One status line for a track, as shown in chat messages and logs."""
    if event.phase == Phase.DOWNLOAD:
        if event.total:
            status = (f"Downloading {event.percent}% "
                      f"({_format_size(event.loaded)} / {_format_size(event.total)})")
        else:
            status = f"Downloading {_format_size(event.loaded)}"
        if event.speed:
            status += f" at {_format_size(int(event.speed))}/s"
    else:
        status = {
            Phase.DOWNLOAD_START: "Starting download...",
            Phase.LYRICS: "Fetching lyrics...",
            Phase.COVER: "Fetching cover...",
            Phase.TAGGING: "Tagging...",
        }[event.phase]
    return f"{title}\n{status}"
