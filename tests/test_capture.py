import asyncio
import logging
import threading
import time

import numpy as np
import pytest

from emoscope.capture import CaptureScheduler, CaptureState, OpenCVVideoSource
from emoscope.distribution import Provenance
from emoscope.engine import InferenceResult
from emoscope.errors import ResourceAcquisitionError
from emoscope.fallback import DemoFallbackGenerator


def _result(seed: int = 0) -> InferenceResult:
    return InferenceResult(DemoFallbackGenerator(seed).generate(), Provenance.DEMO, origin="test")


class _GatedAnalyzer:
    """Async analyze callable that blocks until ``gate`` is set."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        self.frames: list[np.ndarray] = []
        self.result = _result()

    async def __call__(self, frame: np.ndarray) -> InferenceResult:
        self.frames.append(frame)
        self.started.set()
        await self.gate.wait()
        return self.result


def test_timer_samples_periodically_and_publishes_results(fake_sources):
    async def scenario():
        received = []
        enough = asyncio.Event()

        async def analyze(frame):
            return _result()

        def on_result(result):
            received.append(result)
            if len([r for r in received if r is not None]) >= 3:
                enough.set()

        scheduler = CaptureScheduler(fake_sources, analyze, on_result=on_result, interval=0.01)
        session = await scheduler.start()
        await asyncio.wait_for(enough.wait(), timeout=5)
        assert scheduler.state is CaptureState.ACTIVE
        assert scheduler.last_result is not None
        await scheduler.stop()
        return session, received

    session, received = asyncio.run(scenario())

    assert session.completed >= 3
    assert received[-1] is None
    assert fake_sources.created[0].released == 1


def test_starting_twice_reuses_the_running_session(fake_sources):
    async def scenario(scheduler):
        first = await scheduler.start()
        second = await scheduler.start()
        await scheduler.stop()
        await scheduler.stop()
        return first, second

    scheduler = CaptureScheduler(fake_sources, _GatedAnalyzer(), interval=60)
    first, second = asyncio.run(scenario(scheduler))

    assert first is second
    assert len(fake_sources.created) == 1
    assert fake_sources.created[0].opened == 1
    assert fake_sources.created[0].released == 1
    assert scheduler.state is CaptureState.IDLE


def test_tick_is_dropped_while_inference_is_in_flight(fake_sources):
    analyzer = _GatedAnalyzer()

    async def scenario():
        scheduler = CaptureScheduler(fake_sources, analyzer, interval=60)
        session = await scheduler.start()
        assert scheduler.tick(session)
        await analyzer.started.wait()

        assert not scheduler.tick(session)
        assert not scheduler.tick(session)

        analyzer.gate.set()
        await session.pending
        assert scheduler.last_result is analyzer.result
        assert scheduler.tick(session)
        await session.pending
        await scheduler.stop()
        return session

    session = asyncio.run(scenario())

    assert session.ticks == 4
    assert session.dropped_ticks == 2
    assert session.completed == 2
    assert len(analyzer.frames) == 2


def test_stop_during_inference_clears_result_and_releases_source(fake_sources):
    analyzer = _GatedAnalyzer()
    published = []

    async def scenario():
        scheduler = CaptureScheduler(fake_sources, analyzer, on_result=published.append, interval=60)
        session = await scheduler.start()
        scheduler.last_result = _result(3)
        scheduler.tick(session)
        await analyzer.started.wait()
        await scheduler.stop()
        return scheduler, session

    scheduler, session = asyncio.run(scenario())

    assert session.pending.cancelled()
    assert session.completed == 0
    assert scheduler.last_result is None
    assert scheduler.last_frame is None
    assert published == [None]
    assert fake_sources.created[0].released == 1


def test_late_result_from_closed_session_is_discarded(fake_sources):
    analyzer = _GatedAnalyzer()

    async def scenario():
        scheduler = CaptureScheduler(fake_sources, analyzer, interval=60)
        session = await scheduler.start()
        straggler = asyncio.create_task(scheduler._sample(session))
        await analyzer.started.wait()
        await scheduler.stop()
        analyzer.gate.set()
        return scheduler, await straggler

    scheduler, late = asyncio.run(scenario())

    assert late is None
    assert scheduler.last_result is None


def test_mirroring_affects_preview_only(fake_sources):
    analyzer = _GatedAnalyzer()
    analyzer.gate.set()

    async def scenario():
        scheduler = CaptureScheduler(fake_sources, analyzer, interval=60, mirror=True)
        session = await scheduler.start()
        scheduler.tick(session)
        await session.pending
        preview = scheduler.last_frame
        await scheduler.stop()
        return preview

    preview = asyncio.run(scenario())

    raw = analyzer.frames[0]
    assert np.array_equal(preview, raw[:, ::-1])
    assert raw[0, 0, 0] == 1
    assert preview[0, -1, 0] == 1


def test_empty_frames_are_skipped(fake_sources):
    analyzer = _GatedAnalyzer()
    fake_sources.kwargs = {"frames": [None]}

    async def scenario():
        scheduler = CaptureScheduler(fake_sources, analyzer, interval=60)
        session = await scheduler.start()
        scheduler.tick(session)
        result = await session.pending
        await scheduler.stop()
        return session, result

    session, result = asyncio.run(scenario())

    assert result is None
    assert session.empty_ticks == 1
    assert analyzer.frames == []


@pytest.mark.parametrize(
    "failure",
    [PermissionError("camera access denied"), ResourceAcquisitionError("no camera")],
)
def test_acquisition_failure_leaves_scheduler_idle(fake_sources, failure):
    fake_sources.kwargs = {"fail_with": failure}
    scheduler = CaptureScheduler(fake_sources, _GatedAnalyzer(), interval=60)

    with pytest.raises(ResourceAcquisitionError):
        asyncio.run(scheduler.start())

    assert scheduler.state is CaptureState.IDLE
    assert fake_sources.created[0].released == 1


def test_interval_must_be_positive(fake_sources):
    with pytest.raises(ValueError):
        CaptureScheduler(fake_sources, _GatedAnalyzer(), interval=0)


class _SlowSource:
    """Source whose frame read blocks its worker thread for a while."""

    def __init__(self, delay: float = 0.3) -> None:
        self.delay = delay
        self.reading = threading.Event()
        self.read_done = False
        self.released_during_read = None

    def open(self) -> None:
        pass

    def read_frame(self):
        self.reading.set()
        time.sleep(self.delay)
        self.read_done = True
        return np.zeros((48, 48, 3), dtype=np.uint8)

    def release(self) -> None:
        self.released_during_read = not self.read_done


def test_stop_waits_for_a_running_frame_read_before_release():
    source = _SlowSource()

    async def scenario():
        scheduler = CaptureScheduler(lambda: source, _GatedAnalyzer(), interval=60)
        session = await scheduler.start()
        scheduler.tick(session)
        assert await asyncio.to_thread(source.reading.wait, 5)
        await scheduler.stop()
        return session

    session = asyncio.run(scenario())

    assert session.pending.cancelled()
    assert source.released_during_read is False


def test_every_failed_sample_is_logged(fake_sources, caplog):
    async def analyze(frame):
        raise ValueError("unreadable frame")

    async def scenario():
        scheduler = CaptureScheduler(fake_sources, analyze, interval=60)
        session = await scheduler.start()
        for _ in range(3):
            scheduler.tick(session)
            await asyncio.wait([session.pending])
        await scheduler.stop()

    with caplog.at_level(logging.ERROR, logger="emoscope.capture"):
        asyncio.run(scenario())

    failures = [record for record in caplog.records if "unreadable frame" in record.getMessage()]
    assert len(failures) == 3
    assert all(record.levelno == logging.ERROR for record in failures)


class _SlowCapture:
    def __init__(self) -> None:
        self.reading = threading.Event()
        self.events: list[str] = []

    def read(self):
        self.reading.set()
        time.sleep(0.2)
        self.events.append("read")
        return True, np.zeros((4, 4, 3), dtype=np.uint8)

    def release(self) -> None:
        self.events.append("release")


def test_opencv_source_does_not_release_during_a_read():
    source = OpenCVVideoSource(0)
    capture = _SlowCapture()
    source._cap = capture

    reader = threading.Thread(target=source.read_frame)
    reader.start()
    assert capture.reading.wait(5)
    source.release()
    reader.join()

    assert capture.events == ["read", "release"]
    assert source.read_frame() is None
