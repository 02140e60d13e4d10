import pytest

from palate.core.progress import (
    ProgressEmitter,
    ProgressEvent,
    ProgressTracker,
    RecordingListener,
    format_eta,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_rate_and_eta_withheld_for_first_two_seconds():
    clock = FakeClock()
    tracker = ProgressTracker(100, clock=clock)
    tracker.advance(10)
    clock.now += 1.5
    assert tracker.rate is None
    assert tracker.eta is None

    clock.now += 0.5
    assert tracker.rate == pytest.approx(5.0)
    assert tracker.eta == pytest.approx(18.0)


def test_eta_is_zero_when_done():
    tracker = ProgressTracker(5, clock=FakeClock())
    tracker.advance(5)
    assert tracker.eta == 0.0


def test_snapshot_carries_counts():
    clock = FakeClock()
    tracker = ProgressTracker(10, clock=clock)
    tracker.advance(4, found=1)
    clock.now += 4
    event = tracker.snapshot("scanning", "4/10")
    assert (event.phase, event.current, event.total, event.found) == ("scanning", 4, 10, 1)
    assert event.elapsed == pytest.approx(4.0)
    assert event.rate == pytest.approx(1.0)


@pytest.mark.parametrize(
    "seconds,expected",
    [
        (None, "calculating..."),
        (0, "calculating..."),
        (-3, "calculating..."),
        (45, "45s"),
        (125, "2m 5s"),
        (3725, "1h 2m"),
    ],
)
def test_format_eta(seconds, expected):
    assert format_eta(seconds) == expected


def test_emitter_isolates_failing_listener():
    emitter = ProgressEmitter()
    recorder = RecordingListener()

    def broken(event):
        raise RuntimeError("boom")

    emitter.subscribe(broken)
    emitter.subscribe(recorder)
    emitter.emit(ProgressEvent(phase="scanning"))
    assert recorder.phases() == ["scanning"]


def test_unsubscribe_stops_delivery():
    emitter = ProgressEmitter()
    recorder = RecordingListener()
    unsubscribe = emitter.subscribe(recorder)
    emitter.emit(ProgressEvent(phase="a"))
    unsubscribe()
    emitter.emit(ProgressEvent(phase="b"))
    assert recorder.phases() == ["a"]
