"""Реестр движков: один DiarizationEngine на разговор."""
from __future__ import annotations

from typing import Optional

from src.utils.config import Settings, settings
from src.utils.logging import get_logger

from .engine import DiarizationEngine

logger = get_logger("diarization.registry")


class EngineRegistry:
    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings
        self._engines: dict[str, DiarizationEngine] = {}

    def __len__(self) -> int:
        return len(self._engines)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._engines

    def get(self, conversation_id: str) -> Optional[DiarizationEngine]:
        return self._engines.get(conversation_id)

    def get_or_create(self, conversation_id: str) -> DiarizationEngine:
        engine = self._engines.get(conversation_id)
        if engine is None:
            engine = DiarizationEngine(conversation_id, config=self.config)
            self._engines[conversation_id] = engine
            logger.info("engine_created", conversation_id=conversation_id)
        return engine

    def drop(self, conversation_id: str) -> bool:
        """Удаляет разговор вместе с профилями и обучением."""
        removed = self._engines.pop(conversation_id, None) is not None
        if removed:
            logger.info("engine_dropped", conversation_id=conversation_id)
        return removed

    def clear(self) -> None:
        self._engines.clear()


_registry: Optional[EngineRegistry] = None


def get_registry() -> EngineRegistry:
    """Возвращает глобальный реестр (singleton)."""
    global _registry
    if _registry is None:
        _registry = EngineRegistry()
    return _registry
