from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from iptv_cache.config import settings, setup_logging
from iptv_cache.dependencies import build_container

from iptv_cache.routers import main_router


setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("Starting IPTV Cache Service...")

    container = build_container(settings)
    app.state.container = container

    try:
        # Stores load their durable snapshot before the first request is served
        await container.start()
        logger.info("IPTV Cache Service started successfully")
    except Exception as e:
        logger.error(f"Failed to start IPTV Cache Service: {e}", exc_info=True)
        raise

    await container.service.ensure_fresh()

    yield

    logger.info("Shutting down IPTV Cache Service...")

    try:
        await container.stop()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}", exc_info=True)

    logger.info("IPTV Cache Service stopped")


app = FastAPI(
    title="IPTV Cache Service",
    version="0.1.0",
    lifespan=lifespan
)

app.include_router(main_router)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors with details"""
    logger.error(f"Validation error for {request.method} {request.url.path}")
    logger.error(f"Validation details: {exc.errors()}")

    errors = []
    for error in exc.errors():
        error_dict = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": str(error.get("input", ""))[:100]
        }
        errors.append(error_dict)

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors
        }
    )
