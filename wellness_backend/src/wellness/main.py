from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .application import Application, get_application
from .errors import InvalidReferenceError, StorageError
from .logging_setup import setup_logging
from .routers import internal as internal_router
from .routers import todo_categories as todo_categories_router
from .routers import todo_entries as todo_entries_router
from .schemas import VersionOut
from .settings import get_settings

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Service health and status endpoints."},
    {"name": "todo categories", "description": "CRUD operations for the user's todo categories."},
    {
        "name": "todo entries",
        "description": "CRUD operations for the user's todo entries, including due/reminder notifications.",
    },
    {"name": "internal", "description": "Service-to-service endpoints guarded by the internal API key."},
]

_settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the notification migration and the retention scheduler; stop them on shutdown."""
    setup_logging(_settings.log_level)
    application = get_application()
    logger.info("starting wellness backend %s (storage: %s)", _settings.version, _settings.persistence_backend)
    await application.start()
    try:
        yield
    finally:
        await application.stop()
        logger.info("wellness backend stopped")


app = FastAPI(
    title="Wellness Backend",
    description="Backend API service for wellness todo lists with due-time reminders and daily data retention.",
    version="0.1.0",
    openapi_tags=openapi_tags,
    lifespan=lifespan,
)

# Configure CORS based on settings (.env -> CORS_ALLOW_ORIGINS), with '*' fallback
allow_all = (_settings.cors_allow_origins == ["*"]) or (len(_settings.cors_allow_origins) == 0)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all else _settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handlers for consistent JSON error envelopes
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Return a consistent JSON structure for request validation errors.

    Response format:
        {
            "error": "ValidationError",
            "detail": [... pydantic/fastapi error details ...],
            "message": "Request validation failed"
        }
    """
    return JSONResponse(
        status_code=422,
        content={
            "error": "ValidationError",
            "message": "Request validation failed",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(InvalidReferenceError)
async def invalid_reference_handler(request: Request, exc: InvalidReferenceError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "InvalidReference", "message": str(exc)})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"error": "StorageError", "message": f"storage error while {exc.action}"},
    )


# PUBLIC_INTERFACE
@app.get("/", summary="Health Check", tags=["health"])
def health_check():
    """
    Health check endpoint.

    Returns:
        A JSON object indicating service health.
    """
    return {"message": "Healthy", "backend": _settings.persistence_backend}


# PUBLIC_INTERFACE
@app.get("/api/version", response_model=VersionOut, summary="Service version", tags=["health"])
def get_version(application: Application = Depends(get_application)) -> VersionOut:
    return VersionOut(version=application.get_version())


# Include routers
app.include_router(todo_categories_router.router)
app.include_router(todo_entries_router.router)
app.include_router(internal_router.router)
