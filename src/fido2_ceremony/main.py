"""
Main application module for the FIDO2 ceremony service.

Sets up the FastAPI application, connects MongoDB on startup and creates the
indexes the ceremony lookups rely on.
"""

from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, HTTPException
import uvicorn

from fido2_ceremony.config import settings
from fido2_ceremony.database import db_manager
from fido2_ceremony.managers.logging_manager import get_logger, ping_loki_and_flush_if_available
from fido2_ceremony.routes.webauthn import router as webauthn_router
from fido2_ceremony.utils.logging_utils import log_error_with_context

logger = get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Connect the database for the lifetime of the application."""
    startup_start_time = time.time()
    logger.info("Starting %s (env=%s)", settings.APP_NAME, settings.ENV)
    try:
        await db_manager.connect()
        await db_manager.create_indexes()
    except Exception as e:
        log_error_with_context(e, operation="application_startup")
        raise
    ping_loki_and_flush_if_available(logger)
    logger.info("Startup completed in %.3fs", time.time() - startup_start_time)

    yield

    logger.info("Shutting down %s", settings.APP_NAME)
    await db_manager.disconnect()


app = FastAPI(
    title="FIDO2 Ceremony API",
    description="Server-side WebAuthn registration and authentication ceremonies.",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(webauthn_router)


@app.get("/health", tags=["System"])
async def health():
    if not await db_manager.health_check():
        raise HTTPException(status_code=503, detail="Database unavailable")
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run("fido2_ceremony.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
