"""Progress snapshots, rate/ETA tracking and the observer emitter."""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

log = logging.getLogger("palate.progress")

# Rate and ETA are withheld until this much time has elapsed.
MIN_SECONDS_FOR_ESTIMATE = 2.0


@dataclass
class ProgressEvent:
    phase: str
    detail: str = ""
    current: int = 0
    total: int = 0
    found: int = 0
    elapsed: float = 0.0
    rate: Optional[float] = None        # items per second
    eta: Optional[float] = None         # seconds remaining


Listener = Callable[[ProgressEvent], None]


class ProgressEmitter:
    """Fan-out of progress events to listeners.

    A misbehaving listener is logged and skipped; emitting never raises.
    """

    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: ProgressEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("Progress listener failed for phase %s", event.phase)


class RecordingListener:
    """Keeps every emitted event. Used by the CLI summary and by tests."""

    def __init__(self):
        self.events: list[ProgressEvent] = []

    def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def phases(self) -> list[str]:
        seen: list[str] = []
        for e in self.events:
            if not seen or seen[-1] != e.phase:
                seen.append(e.phase)
        return seen


class ProgressTracker:
    """Elapsed time, items/sec and ETA for one unit of work."""

    def __init__(self, total: int, clock: Callable[[], float] = time.monotonic):
        self.total = total
        self.processed = 0
        self.found = 0
        self._clock = clock
        self._start = clock()

    def advance(self, count: int, found: int = 0) -> None:
        self.processed += count
        self.found += found

    @property
    def elapsed(self) -> float:
        return self._clock() - self._start

    @property
    def rate(self) -> Optional[float]:
        elapsed = self.elapsed
        if elapsed < MIN_SECONDS_FOR_ESTIMATE or self.processed <= 0:
            return None
        return self.processed / elapsed

    @property
    def eta(self) -> Optional[float]:
        remaining = self.total - self.processed
        if remaining <= 0:
            return 0.0
        rate = self.rate
        if not rate:
            return None
        return remaining / rate

    def snapshot(self, phase: str, detail: str = "") -> ProgressEvent:
        return ProgressEvent(
            phase=phase,
            detail=detail,
            current=self.processed,
            total=self.total,
            found=self.found,
            elapsed=self.elapsed,
            rate=self.rate,
            eta=self.eta,
        )


def format_eta(seconds: Optional[float]) -> str:
    if seconds is None or seconds <= 0:
        return "calculating..."
    seconds = int(round(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"
