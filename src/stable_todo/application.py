from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import InvalidInputError, NotFoundError, TodoServiceError
from .repositories import open_repository
from .routers import todos as todos_router
from .service import TodoService
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Service health and status endpoints."},
    {
        "name": "todos",
        "description": "Create, read, update, delete and status changes for todo items kept in stable memory.",
    },
]

_STATUS_BY_KIND = {
    NotFoundError.kind: 404,
    InvalidInputError.kind: 400,
}


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
            "detail": exc.errors(),
        },
    )


async def service_exception_handler(request: Request, exc: TodoServiceError) -> JSONResponse:
    """
    Render NotFound / InvalidInput failures as {"error": kind, "message": ...}.
    """
    return JSONResponse(
        status_code=_STATUS_BY_KIND.get(exc.kind, 400),
        content={"error": exc.kind, "message": exc.message},
    )


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# PUBLIC_INTERFACE
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    The todo store is opened once here and shared by every request through
    app.state; it is closed when the application shuts down.
    """
    settings = settings or get_settings()
    _configure_logging(settings)

    repository = open_repository(settings)
    service = TodoService(repository, strict_delete=settings.strict_delete)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):  # type: ignore[no-untyped-def]
        yield
        repository.close()
        logger.info("closed todo store")

    app = FastAPI(
        title="Stable Todo Backend",
        description="Todo service whose records live in a journaled stable memory that survives restarts.",
        version="0.1.0",
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.repository = repository
    app.state.todo_service = service

    # Configure CORS based on settings (.env -> CORS_ALLOW_ORIGINS), with '*' fallback
    allow_all = (settings.cors_allow_origins == ["*"]) or (len(settings.cors_allow_origins) == 0)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(TodoServiceError, service_exception_handler)  # type: ignore[arg-type]

    # PUBLIC_INTERFACE
    @app.get("/", summary="Health Check", tags=["health"])
    def health_check():
        """
        Health check endpoint.

        Returns:
            A JSON object indicating service health.
        """
        return {"message": "Healthy", "backend": settings.persistence_backend}

    app.include_router(todos_router.router)
    return app

