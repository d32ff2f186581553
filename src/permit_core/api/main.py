"""Permit Core FastAPI application."""
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from permit_core.config import Settings
from permit_core.database import build_engine, build_session_factory
from permit_core.errors import TaskEngineError
from permit_core.file_storage import LocalFileStorage
from permit_core.permissions import StaticPermissionProvider

from .routers import tasks, task_requests

logger = logging.getLogger("permit-core")

# Error kind → HTTP status code
STATUS_BY_KIND = {
    "validation_error": 400,
    "permission_denied": 403,
    "not_found": 404,
    "already_resolved": 409,
    "conflict": 409,
    "attachment_error": 422,
    "storage_error": 500,
}


async def task_engine_error_handler(request: Request, exc: TaskEngineError) -> JSONResponse:
    """Render engine errors as {"detail", "kind"} with the mapped status code."""
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "kind": exc.kind})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Runtime settings; read from the environment when omitted

    Returns:
        Configured FastAPI app. Engine, session factory, file storage and
        permission provider are kept on ``app.state``.
    """
    settings = settings or Settings.from_env()

    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    app = FastAPI(
        title="Permit Core API",
        description="Task lifecycle and two-stage approval engine",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    engine = build_engine(settings)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.storage = LocalFileStorage(settings)
    app.state.permissions = StaticPermissionProvider(settings.role_capabilities)

    app.add_exception_handler(TaskEngineError, task_engine_error_handler)

    app.include_router(tasks.router, prefix="/api/v1/tasks")
    app.include_router(task_requests.router, prefix="/api/v1/task-requests")

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    logger.info("Permit Core API configured")
    return app
