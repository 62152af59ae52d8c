"""
Contact Dedup - duplicate detection and merge service for the personal CRM
FastAPI Application Entry Point

Run with:

    uvicorn api.main:app --host 0.0.0.0 --port 8000
"""
# Load environment variables from .env file first, before any imports
from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from api.routes import people_router
from api.services.resilience import StoreUnavailableError
from api.services.sqlite_person_store import get_person_store
from config.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    logging.getLogger().setLevel(settings.log_level.upper())

    # Startup: make sure the schema exists before the first request
    try:
        get_person_store()
        logger.info(f"Person store ready at {settings.db_path}")
    except StoreUnavailableError as e:
        logger.error(f"Failed to open person store: {e}")

    yield  # Application runs here


app = FastAPI(
    title="Contact Dedup",
    description="Duplicate contact detection and merge for a personal CRM",
    version="0.1.0",
    lifespan=lifespan
)

app.include_router(people_router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert validation errors to 400 with clear messages."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (convert bytes to string)
    sanitized_errors = []
    for error in errors:
        sanitized = dict(error)
        if "input" in sanitized and isinstance(sanitized["input"], bytes):
            sanitized["input"] = sanitized["input"].decode("utf-8", errors="replace")
        sanitized.pop("ctx", None)
        sanitized_errors.append(sanitized)

    # Missing workspace header gets its own message
    for error in errors:
        if "x-workspace-id" in [str(part) for part in error.get("loc", [])]:
            return JSONResponse(
                status_code=400,
                content={"error": "Workspace is required", "detail": sanitized_errors}
            )
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "detail": sanitized_errors}
    )


@app.get("/health")
def health_check():
    """Health check endpoint that verifies the person store is reachable."""
    try:
        get_person_store().ping()
    except StoreUnavailableError as e:
        logger.warning(f"Health check: person store unavailable: {e}")
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "store": "unavailable"}
        )
    return {"status": "healthy", "store": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
