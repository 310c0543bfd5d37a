# main.py
"""Application entry point: FastAPI app with registry lifecycle"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from config import settings
from core.exceptions import RetrievalEngineError
from services.logger_config import setup_logging
from services.factory import get_bucket_registry
from api.endpoints import engine_error_handler, router

setup_logging()
logger = logging.getLogger(settings.LOGGER_NAME)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting application...")

    registry = app.dependency_overrides.get(get_bucket_registry, get_bucket_registry)()
    await registry.initialize()
    logger.info(f"Bucket registry initialized at {registry.data_dir}")

    yield

    await registry.close()
    logger.info("Application shutdown complete")

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_TITLE,
        version=settings.APP_VERSION,
        lifespan=lifespan
    )
    app.add_exception_handler(RetrievalEngineError, engine_error_handler)  # type: ignore
    app.include_router(router)
    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
