import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from navigator.api.v1.router import api_v1_router
from navigator.clients.irs_mef import get_mef_client
from navigator.core.config import settings, validate_settings_for_production
from navigator.core.logging import setup_logging
from navigator.core.metrics import PrometheusMiddleware, metrics_response
from navigator.core.middleware import RequestLoggingMiddleware
from navigator.core.rate_limit import limiter
from navigator.core.sentry import init_sentry
from navigator.db.postgres import engine
from navigator.efile.worker import get_queue_worker

APP_VERSION = "1.0.0"

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if settings.app_env not in ("test", "development"):
        validate_settings_for_production()
    logger.info(
        "Starting Maryland Benefits & Tax Navigator (env=%s, irs_mock=%s, ifile=%s)",
        settings.app_env,
        settings.irs_mock_mode,
        settings.maryland_ifile_environment,
    )

    if settings.efile_worker_autostart:
        get_queue_worker().start()

    yield

    # Shutdown
    await get_queue_worker().stop()
    await engine.dispose()
    logger.info("Maryland Benefits & Tax Navigator shut down")


app = FastAPI(
    title="Maryland Benefits & Tax Navigator",
    description="Tax return preparation and IRS / Maryland e-file backend",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(PrometheusMiddleware)

# CORS: allowed_origins is comma-separated
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_v1_router)


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()


@app.get("/api/v1/health")
async def health():
    circuit = get_mef_client().get_circuit_breaker_status()
    return {
        "status": "ok",
        "version": APP_VERSION,
        "irs_mock_mode": settings.irs_mock_mode,
        "irs_circuit_open": circuit["is_open"],
        "maryland_ifile_environment": settings.maryland_ifile_environment,
        "queue_worker_running": get_queue_worker().running,
    }
