from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from orderflow.api.v1.router import router as api_v1_router
from orderflow.core.config import Settings, get_settings
from orderflow.core.exceptions import BaseAppException
from orderflow.core.logging import get_logger, setup_logging
from orderflow.core.middleware import register_middlewares
from orderflow.services.lifecycle.factory import LifecycleContainer, build_default_container

logger = get_logger(__name__)


def create_app(
    container: Optional[LifecycleContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Application factory for the FastAPI app.

    - Configures logging, title, version and debug mode from Settings.
    - Registers core middleware (request ID, timing) and exception handlers.
    - Includes the versioned API router under /api/v1.

    When no container is passed one is built from settings at startup and
    closed at shutdown; a passed-in container belongs to the caller.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "container", None) is None:
            owned = build_default_container(settings)
            app.state.container = owned
        logger.info("Application startup complete", extra={"environment": settings.ENVIRONMENT})
        try:
            yield
        finally:
            if owned is not None:
                owned.close()
                app.state.container = None

    docs_enabled = not settings.is_production
    app = FastAPI(
        title=settings.APP_NAME,
        debug=settings.DEBUG,
        version=settings.APP_VERSION,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )
    app.state.container = container

    @app.exception_handler(BaseAppException)
    async def app_exception_handler(request: Request, exc: BaseAppException):
        logger.warning(
            f"Request failed: {exc.message}",
            extra={"path": request.url.path, "error_code": exc.error_code.value},
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    register_middlewares(app)
    app.include_router(api_v1_router, prefix=settings.API_V1_STR)

    return app
