"""
Expedition Progression Engine
FastAPI service for teacher authoring and student progression on expedition maps.

Run with: uvicorn app:create_app --factory
"""

import logging
import os

import uvicorn
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.api.expedition_api import (
    expedition_error_handler,
    limiter,
    router,
    student_router,
)
from src.expedition import (
    EngineSettings,
    ExpeditionEngine,
    ExpeditionError,
    InMemoryRoster,
)

logger = logging.getLogger(__name__)


def create_app(
    engine: ExpeditionEngine | None = None,
    settings: EngineSettings | None = None,
) -> FastAPI:
    settings = settings or EngineSettings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if engine is None:
        roster = (
            InMemoryRoster.from_file(settings.roster_file)
            if settings.roster_file
            else InMemoryRoster()
        )
        engine = ExpeditionEngine.from_settings(settings, roster)

    app = FastAPI(title="Expedition Progression Engine", version="1.0.0")
    app.state.engine = engine
    app.state.limiter = limiter
    app.add_exception_handler(ExpeditionError, expedition_error_handler)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.include_router(router)
    app.include_router(student_router)

    # Uploaded submission files
    os.makedirs(settings.upload_dir, exist_ok=True)
    app.mount(settings.upload_url_prefix, StaticFiles(directory=settings.upload_dir), name="uploads")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    logger.info("Expedition engine ready (database %s)", engine.database.engine.url.render_as_string(hide_password=True))
    return app


if __name__ == "__main__":
    uvicorn.run(
        "app:create_app",
        factory=True,
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )
