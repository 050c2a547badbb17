"""Фоновая детекция для живого аудиопотока.

Захват аудио отдаёт кадры через submit() и никогда не ждёт детекцию:
    capture → submit(frame) → [слот: один кадр] → worker → engine.detect → результат

ПОЧЕМУ слот на один кадр, а не очередь:
    если детекция отстаёт, старые кадры теряют смысл. Новый кадр
    замещает ещё не взятый в работу, задержка не накапливается.
    Цикл, не уложившийся в DETECTION_CYCLE_DEADLINE_SEC, отбрасывается.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from src.utils.logging import get_logger

from .engine import DiarizationEngine
from .models import AudioFrame, DetectionResult

logger = get_logger("diarization.stream")

ResultCallback = Callable[[DetectionResult], Awaitable[None]]


class DetectionWorker:
    """Фоновая задача детекции для одного разговора.

    Пример:
        async with DetectionWorker(engine) as worker:
            worker.submit(frame)
            result = await worker.results.get()
    """

    def __init__(
        self,
        engine: DiarizationEngine,
        on_result: Optional[ResultCallback] = None,
        deadline_sec: Optional[float] = None,
        max_results: int = 100,
    ):
        self.engine = engine
        self.on_result = on_result
        self.deadline_sec = deadline_sec if deadline_sec is not None else engine.config.DETECTION_CYCLE_DEADLINE_SEC
        self.results: asyncio.Queue[DetectionResult] = asyncio.Queue(maxsize=max_results)
        self._pending: Optional[tuple[AudioFrame, str]] = None
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.processed = 0
        self.replaced_frames = 0
        self.late_cycles = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, frame: AudioFrame, context: str = "") -> None:
        """Кладёт кадр в слот. Не блокирует; невзятый кадр замещается.

        Можно вызывать из потока захвата (callback звуковой карты):
        asyncio.Event не потокобезопасен, поэтому слот меняется в цикле событий
        через call_soon_threadsafe.
        """
        loop = self._loop
        if loop is not None and not self._on_loop_thread(loop):
            loop.call_soon_threadsafe(self._put, frame, context)
            return
        self._put(frame, context)

    @staticmethod
    def _on_loop_thread(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    def _put(self, frame: AudioFrame, context: str) -> None:
        if self._pending is not None:
            self.replaced_frames += 1
        self._pending = (frame, context)
        self._wakeup.set()

    def start(self) -> None:
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self._run())
        logger.info("detection_worker_started", conversation_id=self.engine.conversation_id)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._loop = None
        logger.info(
            "detection_worker_stopped",
            conversation_id=self.engine.conversation_id,
            processed=self.processed,
            replaced=self.replaced_frames,
            late=self.late_cycles,
        )

    async def __aenter__(self) -> "DetectionWorker":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            item, self._pending = self._pending, None
            if item is None:
                continue
            frame, context = item

            started = loop.time()
            try:
                result = await self.engine.detect(frame, context)
            except Exception as e:
                logger.error("detection_cycle_failed", conversation_id=self.engine.conversation_id, error=str(e))
                continue
            elapsed = loop.time() - started

            if elapsed > self.deadline_sec:
                self.late_cycles += 1
                logger.warning(
                    "detection_cycle_late",
                    conversation_id=self.engine.conversation_id,
                    elapsed_ms=round(elapsed * 1000, 1),
                    deadline_ms=round(self.deadline_sec * 1000),
                )
                continue

            self.processed += 1
            await self._deliver(result)

    async def _deliver(self, result: DetectionResult) -> None:
        if self.on_result is not None:
            try:
                await self.on_result(result)
            except Exception as e:
                logger.error("detection_callback_failed", error=str(e))
            return
        if self.results.full():
            # потребитель отстал: выбрасываем самый старый результат
            self.results.get_nowait()
        self.results.put_nowait(result)
