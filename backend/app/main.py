"""Plugin Runtime Engine - FastAPI Application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import health
from api.v1.router import api_v1_router
from app.config import get_settings
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from plugins.dashboard import DashboardSync
from plugins.executor import PluginExecutor
from plugins.registry import ValueRegistry
from plugins.scheduler import PluginScheduler
from plugins.store import ConfigStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings = get_settings()
    setup_logging()

    store = ConfigStore(settings.CONFIG_PATH).load()
    registry = ValueRegistry()
    dashboard = DashboardSync(store, registry)
    executor = PluginExecutor(
        registry,
        dashboard,
        timeout=settings.HTTP_TIMEOUT,
        user_agent=settings.HTTP_USER_AGENT,
        target_stagger=settings.TARGET_STAGGER_MS / 1000.0,
    )
    scheduler = PluginScheduler(store, executor, dashboard, min_interval_ms=settings.MIN_INTERVAL_MS)

    templates = scheduler.load_templates(settings.PLUGIN_DIR)
    print(f"[startup] Loaded {len(templates)} plugin template(s) from {settings.PLUGIN_DIR}")

    outcome = scheduler.reconcile(store)
    print(f"[startup] Plugin scheduler ready ({len(outcome['started'])} instance(s) running)")

    app.state.store = store
    app.state.registry = registry
    app.state.dashboard = dashboard
    app.state.scheduler = scheduler

    print(f"[startup] {settings.APP_NAME} v{settings.APP_VERSION} started ({settings.ENVIRONMENT})")
    yield
    # Shutdown
    print("[shutdown] Stopping plugin instances...")
    await scheduler.shutdown()
    app.state.scheduler = None


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Declarative HTTP plugin runtime: periodic fetch pipelines "
                    "publishing named values into a shared registry.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check (unversioned, for probes)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


def run() -> None:
    """Console entry point: serve the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_config=None,
    )


app = create_app()
