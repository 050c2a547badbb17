"""Настройка логирования с structlog."""
import structlog
from structlog.types import Processor

from .config import settings

_LEVELS = {
    "DEBUG": 10,
    "INFO": 20,
    "WARNING": 30,
    "ERROR": 40,
    "CRITICAL": 50,
}


def setup_logging(level: str | None = None) -> None:
    """Настраивает structlog для проекта.

    Args:
        level: уровень логирования; по умолчанию settings.LOG_LEVEL
    """
    level = (level or settings.LOG_LEVEL).upper()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    # DEBUG: человекочитаемый вывод, иначе JSON для сборщика логов
    if level == "DEBUG":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level, 20)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "diarization"):
    """Возвращает настроенный logger."""
    return structlog.get_logger(name)
