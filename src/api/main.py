"""FastAPI приложение диаризации двух собеседников."""
from datetime import datetime

from fastapi import FastAPI

from src.api.routers import diarization
from src.diarization.registry import get_registry
from src.utils.config import settings
from src.utils.logging import setup_logging, get_logger

# Настройка логирования
setup_logging()
logger = get_logger("api")

# Создаём приложение
app = FastAPI(
    title="Two-Party Diarization",
    description="Кто говорит сейчас: собеседник A или B",
    version="0.1.0",
)

app.include_router(diarization.router)


@app.on_event("startup")
async def startup():
    """Инициализация при старте."""
    logger.info("diarization_api_starting", host=settings.API_HOST, port=settings.API_PORT)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "version": "0.1.0",
        "conversations": len(get_registry()),
    }


@app.get("/")
async def root():
    """Корневой endpoint."""
    return {
        "service": "Two-Party Diarization",
        "version": "0.1.0",
        "endpoints": {
            "health": "/health",
            "detect": "/diarization/{conversation_id}/detect",
            "feedback": "/diarization/{conversation_id}/feedback",
            "calibration_start": "/diarization/{conversation_id}/calibration/start",
            "calibration_sample": "/diarization/{conversation_id}/calibration/{session_id}/samples",
            "calibration_complete": "/diarization/{conversation_id}/calibration/{session_id}/complete",
            "calibration_status": "/diarization/{conversation_id}/calibration/status",
            "stats": "/diarization/{conversation_id}/stats",
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)
