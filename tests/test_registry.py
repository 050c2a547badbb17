"""Тесты реестра разговоров (registry.py)."""
from __future__ import annotations


def test_get_or_create_reuses_engine(test_settings):
    from src.diarization.registry import EngineRegistry
    registry = EngineRegistry(test_settings)
    first = registry.get_or_create("c1")
    assert registry.get_or_create("c1") is first
    assert "c1" in registry
    assert len(registry) == 1
    assert first.config is test_settings


def test_conversations_are_isolated(test_settings):
    from src.diarization.registry import EngineRegistry
    registry = EngineRegistry(test_settings)
    registry.get_or_create("c1").start_calibration_session()
    # активная сессия одного разговора не мешает другому
    assert registry.get_or_create("c2").start_calibration_session().is_active


def test_drop(test_settings):
    from src.diarization.registry import EngineRegistry
    registry = EngineRegistry(test_settings)
    registry.get_or_create("c1")
    assert registry.drop("c1") is True
    assert registry.drop("c1") is False
    assert registry.get("c1") is None


def test_global_registry_is_singleton():
    from src.diarization.registry import get_registry
    assert get_registry() is get_registry()
