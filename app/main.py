"""
Incentive Lens — FastAPI Application Entry Point
Creates app, owns the dashboard cache, adds middleware, includes routers.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import ALLOWED_ORIGINS, APP_ENV, CRON_SECRET
from app.core.cache import DashboardCache
from app.core.logger import logger
from app.routes.dashboard_routes import router as dashboard_router
from app.routes.report_routes import router as report_router
from app.background import EnrichmentExecutor, shutdown_background_tasks, startup_background_tasks
from app.services.report_service import ReportValidationError

if not CRON_SECRET and APP_ENV.lower() == "production":
    logger.warning("[Cron] CRON_SECRET not set. The refresh endpoint is unauthenticated.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle hook."""
    app.state.dashboard_cache = DashboardCache()
    app.state.enrichment_executor = EnrichmentExecutor()
    scheduler = startup_background_tasks(app)
    yield
    shutdown_background_tasks(app, scheduler)


def create_app() -> FastAPI:
    app = FastAPI(title="Incentive Lens API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.include_router(dashboard_router)
    app.include_router(report_router)

    # ── Exception Handlers ──
    @app.exception_handler(ReportValidationError)
    async def report_validation_handler(request: Request, exc: ReportValidationError):
        logger.warning(f"[CSV] Rejected {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"success": False, "errors": exc.errors})

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc):
        detail = getattr(exc, "detail", None) or "Not found"
        return JSONResponse(status_code=404, content={"error": detail})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"[Unhandled] {request.method} {request.url.path}: {type(exc).__name__}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return app


app = create_app()
