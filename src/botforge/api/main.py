"""Botforge API - FastAPI app around the orchestrator."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog

from botforge import __version__
from botforge.catalog import Catalog
from botforge.config import Settings, get_settings
from botforge.errors import (
    BackendUnavailableError,
    BotforgeError,
    EntitlementError,
    NotFoundError,
    PanelError,
    ValidationError,
)
from botforge.logging_config import setup_logging
from botforge.orchestrator import Orchestrator
from botforge.registry import DeploymentRegistry
from botforge.store import SqlDeploymentStore

from . import routers


REQUEST_ID_HEADER = "X-Request-ID"

# Polled by load balancers and the CLI; logged at debug only
QUIET_PATHS = frozenset({"/", "/health"})

logger = structlog.get_logger(__name__)


async def request_context(request: Request, call_next):
    """Bind request id and caller to every log event of the request."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        user_id=request.headers.get("X-User-ID"),
    )
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("api_request_crashed", method=request.method, path=request.url.path)
        raise
    finally:
        structlog.contextvars.unbind_contextvars("request_id", "user_id")

    log = logger.debug if request.url.path in QUIET_PATHS else logger.info
    log(
        "api_request",
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def build_orchestrator(settings: Settings) -> tuple[Orchestrator, SqlDeploymentStore | None]:
    """Wire catalog, registry (with optional store) and orchestrator from settings."""
    store = None
    if settings.database_url:
        store = SqlDeploymentStore(settings.database_url)
        await store.init()
    registry = DeploymentRegistry(log_cap=settings.log_cap, store=store)
    orchestrator = Orchestrator(
        catalog=Catalog.from_yaml(settings.catalog_path),
        registry=registry,
        settings=settings,
    )
    return orchestrator, store


def create_app(orchestrator: Orchestrator | None = None) -> FastAPI:
    """Create the API app.

    When ``orchestrator`` is given it is used as-is and the lifespan neither
    starts nor stops it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        settings = get_settings()
        setup_logging(service_name=settings.service_name)
        if orchestrator is not None:
            yield
            return

        owned, store = await build_orchestrator(settings)
        app.state.orchestrator = owned
        await owned.start()
        try:
            yield
        finally:
            await owned.shutdown()
            if store is not None:
                await store.dispose()

    app = FastAPI(
        title="Botforge API",
        description="Deploy catalog bots and follow their lifecycle",
        version=__version__,
        lifespan=lifespan,
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    app.middleware("http")(request_context)

    register_error_handlers(app)

    @app.get("/")
    async def root():
        """Root endpoint - API information."""
        return {"name": "Botforge API", "version": __version__}

    app.include_router(routers.health.router)
    app.include_router(routers.bots.router, prefix="/api")
    app.include_router(routers.deployments.router, prefix="/api")
    return app


def register_error_handlers(app: FastAPI) -> None:
    """Map orchestrator errors onto HTTP status codes."""

    @app.exception_handler(ValidationError)
    async def validation_error(_request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"error": str(exc), "missing": exc.missing_keys})

    @app.exception_handler(NotFoundError)
    async def not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(EntitlementError)
    async def entitlement_error(_request: Request, exc: EntitlementError) -> JSONResponse:
        return JSONResponse(status_code=402, content={"error": str(exc)})

    @app.exception_handler(BackendUnavailableError)
    async def backend_unavailable(_request: Request, exc: BackendUnavailableError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"error": str(exc)})

    @app.exception_handler(PanelError)
    async def panel_error(_request: Request, exc: PanelError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"error": str(exc)})

    @app.exception_handler(BotforgeError)
    async def botforge_error(_request: Request, exc: BotforgeError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"error": str(exc)})


app = create_app()
