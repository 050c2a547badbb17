"""Тесты фоновой детекции (stream.py)."""
from __future__ import annotations

import asyncio
import threading
from typing import Optional

import pytest

from src.diarization.models import DetectionResult, Speaker


class RecordingEngine:
    """Заглушка движка: запоминает кадры, отвечает фиксированным результатом."""

    def __init__(self, delay: float = 0.0, fail_first: bool = False):
        from src.utils.config import settings
        self.conversation_id = "stream-test"
        self.config = settings
        self.delay = delay
        self.fail_first = fail_first
        self.frames: list = []

    async def detect(self, frame, context: str = "") -> DetectionResult:
        self.frames.append(frame)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_first and len(self.frames) == 1:
            raise RuntimeError("boom")
        return DetectionResult(speaker=Speaker.A, confidence=0.9, timestamp=frame.timestamp)


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


class TestDetectionWorker:
    def test_delivers_result_to_queue(self, test_settings, make_frame):
        from src.diarization.engine import DiarizationEngine
        from src.diarization.stream import DetectionWorker

        async def scenario() -> DetectionResult:
            engine = DiarizationEngine("stream", config=test_settings)
            async with DetectionWorker(engine) as worker:
                worker.submit(make_frame("A", timestamp=3.0))
                return await asyncio.wait_for(worker.results.get(), 5.0)

        result = asyncio.run(scenario())
        assert result.voice_activity is True
        assert result.timestamp == 3.0

    def test_pending_frame_is_replaced(self, make_frame):
        from src.diarization.stream import DetectionWorker

        async def scenario():
            engine = RecordingEngine()
            worker = DetectionWorker(engine, deadline_sec=1.0)
            # воркер ещё не запущен: второй кадр замещает первый
            worker.submit(make_frame("A", timestamp=1.0))
            worker.submit(make_frame("A", timestamp=2.0))
            async with worker:
                result = await asyncio.wait_for(worker.results.get(), 2.0)
            return engine, worker, result

        engine, worker, result = asyncio.run(scenario())
        assert worker.replaced_frames == 1
        assert [f.timestamp for f in engine.frames] == [2.0]
        assert result.timestamp == 2.0

    def test_late_cycle_dropped(self, make_frame):
        from src.diarization.stream import DetectionWorker

        async def scenario():
            worker = DetectionWorker(RecordingEngine(delay=0.05), deadline_sec=0.001)
            async with worker:
                worker.submit(make_frame("A"))
                await _wait_until(lambda: worker.late_cycles == 1)
            return worker

        worker = asyncio.run(scenario())
        assert worker.processed == 0
        assert worker.results.empty()

    def test_failed_cycle_does_not_stop_worker(self, make_frame):
        from src.diarization.stream import DetectionWorker

        async def scenario():
            engine = RecordingEngine(fail_first=True)
            worker = DetectionWorker(engine, deadline_sec=1.0)
            async with worker:
                worker.submit(make_frame("A", timestamp=1.0))
                await _wait_until(lambda: len(engine.frames) == 1)
                worker.submit(make_frame("A", timestamp=2.0))
                result = await asyncio.wait_for(worker.results.get(), 2.0)
                running = worker.is_running
            return worker, result, running

        worker, result, running = asyncio.run(scenario())
        assert running is True
        assert worker.processed == 1
        assert result.timestamp == 2.0
        assert worker.is_running is False

    def test_callback_receives_results(self, make_frame):
        from src.diarization.stream import DetectionWorker

        received: list[DetectionResult] = []

        async def on_result(result: DetectionResult) -> None:
            received.append(result)

        async def scenario():
            worker = DetectionWorker(RecordingEngine(), on_result=on_result, deadline_sec=1.0)
            async with worker:
                worker.submit(make_frame("B", timestamp=4.0))
                await _wait_until(lambda: len(received) == 1)
            return worker

        worker = asyncio.run(scenario())
        assert received[0].timestamp == 4.0
        assert worker.results.empty()

    @pytest.mark.parametrize("max_results", [1, 2])
    def test_full_queue_drops_oldest(self, max_results):
        from src.diarization.stream import DetectionWorker

        async def scenario() -> list[float]:
            worker = DetectionWorker(RecordingEngine(), deadline_sec=1.0, max_results=max_results)
            for ts in (1.0, 2.0, 3.0):
                await worker._deliver(DetectionResult(speaker=Speaker.A, confidence=0.9, timestamp=ts))
            kept: list[float] = []
            while not worker.results.empty():
                kept.append(worker.results.get_nowait().timestamp)
            return kept

        assert asyncio.run(scenario()) == [1.0, 2.0, 3.0][-max_results:]

    def test_stop_without_start(self):
        from src.diarization.stream import DetectionWorker

        async def scenario(engine: Optional[RecordingEngine] = None):
            worker = DetectionWorker(engine or RecordingEngine(), deadline_sec=1.0)
            await worker.stop()
            return worker

        assert asyncio.run(scenario()).is_running is False

    def test_submit_from_capture_thread(self, make_frame):
        """Кадр из потока звуковой карты будит воркер без участия цикла событий."""
        from src.diarization.stream import DetectionWorker

        async def scenario():
            engine = RecordingEngine()
            worker = DetectionWorker(engine, deadline_sec=1.0)
            async with worker:
                await asyncio.sleep(0.01)  # воркер уснул на пустом слоте
                capture = threading.Thread(target=worker.submit, args=(make_frame("A", timestamp=5.0),))
                capture.start()
                capture.join()
                result = await asyncio.wait_for(worker.results.get(), 1.0)
            return engine, result

        engine, result = asyncio.run(scenario())
        assert result.timestamp == 5.0
        assert len(engine.frames) == 1
