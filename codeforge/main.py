import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from codeforge.api.v1.router import api_v1_router
from codeforge.core.config import settings, validate_settings_for_production
from codeforge.core.credentials import load_credential_config
from codeforge.core.logging import setup_logging
from codeforge.core.metrics import PrometheusMiddleware, metrics_response
from codeforge.core.rate_limit import limiter
from codeforge.core.sentry import init_sentry
from codeforge.gateway.orchestrator import build_orchestrator

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info("Starting Codeforge generation service...")

    # Credentials are read once; pools never touch the environment afterwards
    app.state.orchestrator = build_orchestrator(load_credential_config())

    yield

    # Shutdown
    stats = app.state.orchestrator.get_stats()
    logger.info(
        "Codeforge shut down (requests=%d, cache hits=%d, errors=%d)",
        stats["totalRequests"],
        stats["cacheHits"],
        stats["errors"],
    )


app = FastAPI(
    title="Codeforge",
    description="Code generation gateway with provider fallback and streaming",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


# Log unhandled exceptions with their traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Prometheus request metrics
app.add_middleware(PrometheusMiddleware)

# CORS, parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health():
    return {"status": "ok", "service": "codeforge"}


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
