"""
RBAC Core API

FastAPI application entry point. The lifespan builds one RBACService from
settings, starts it, and shuts it down (flushing audit forwards) on exit.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from starlette.responses import JSONResponse

from rbac_core.api.routes import rbac
from rbac_core.core.config import Settings, load_settings
from rbac_core.core.exceptions import RBACError, status_code_for
from rbac_core.services.rbac_service import RBACService

logger = logging.getLogger(__name__)


async def rbac_error_handler(request: Request, exc: RBACError) -> JSONResponse:
    """Map RBAC errors to stable, non-leaky JSON bodies."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"code": exc.code, "message": exc.message},
    )


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[RBACService] = None,
) -> FastAPI:
    """
    Build the application.

    A prebuilt service (tests, embedding) is started and shut down by the
    lifespan like one built from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        rbac_service = service
        if rbac_service is None:
            rbac_service = await RBACService.from_settings(settings or load_settings())
        await rbac_service.start()
        app.state.rbac = rbac_service
        logger.info(f"{app.title} started")
        yield
        await rbac_service.shutdown()
        logger.info(f"{app.title} shutting down")

    app = FastAPI(
        title=settings.APP_NAME if settings else "RBAC Core",
        description="Role-based access control: permission checks, role assignment, audit trail",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.add_exception_handler(RBACError, rbac_error_handler)
    app.include_router(rbac.router, prefix="/api/rbac", tags=["rbac"])

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        rbac_service = getattr(request.app.state, "rbac", None)
        if rbac_service is None:
            return {"status": "starting"}
        return rbac_service.health()

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "rbac_core.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
    )
