import hmac
import logging
import sys
import time
import traceback
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import IntegrityError
from starlette.middleware.base import BaseHTTPMiddleware
from intelreview.api.routes import router, limiter
from intelreview.config import settings
from intelreview.database import check_connection, init_db
from intelreview.errors import IntelReviewError
from intelreview.schemas.error import ErrorResponse

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate retention.yaml and make sure the schema exists."""
    from intelreview.modules.retention import default_policy

    config_path = Path(settings.RETENTION_CONFIG)
    if not config_path.exists():
        logger.warning("%s not found; using built-in retention defaults", config_path)
    try:
        policy = default_policy()
    except ValueError as exc:
        logger.critical("FATAL: invalid retention config: %s", exc)
        sys.exit(1)
    logger.info(
        "Retention: %d days (audit %d), critical <= %d, warning <= %d",
        policy.default_retention_days, policy.audit_retention_days,
        policy.critical_days, policy.warning_days,
    )
    init_db()
    yield


app = FastAPI(
    title="IntelReview",
    description="Intelligence report review workflow, audit trail and data retention.",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS — origins from settings (supports comma-separated env var)
cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Shared-secret check against the auth gateway. If INTELREVIEW_API_KEY is unset, all requests pass."""

    async def dispatch(self, request: Request, call_next):
        if settings.INTELREVIEW_API_KEY is not None:
            if request.url.path not in ("/health", "/docs", "/openapi.json", "/redoc"):
                api_key = request.headers.get("X-API-Key")
                if not hmac.compare_digest(api_key or "", settings.INTELREVIEW_API_KEY):
                    return JSONResponse(
                        status_code=401,
                        content={"error": "Unauthorized", "detail": "Invalid or missing API key"},
                    )
        return await call_next(request)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Stamp request.state.started_at; audit payloads derive durationMs from it."""

    async def dispatch(self, request: Request, call_next):
        request.state.started_at = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = int((time.perf_counter() - request.state.started_at) * 1000)
        response.headers["X-Response-Time-Ms"] = str(elapsed_ms)
        return response


app.add_middleware(APIKeyMiddleware)
app.add_middleware(RequestTimingMiddleware)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(router, prefix="/api/v1")


# ── Structured error handlers ─────────────────────────────────────────────────

@app.exception_handler(IntelReviewError)
async def intel_review_error_handler(request: Request, exc: IntelReviewError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.label, detail=str(exc)).model_dump(),
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"error": "Validation error", "detail": str(exc)})


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    return JSONResponse(status_code=409, content={"error": "Conflict", "detail": str(exc.orig) if exc.orig else str(exc)})


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s %s:\n%s", request.method, request.url.path, traceback.format_exc())
    return JSONResponse(status_code=500, content={"error": "Internal server error", "detail": "An unexpected error occurred."})


@app.get("/health")
def health() -> JSONResponse:
    if not check_connection():
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "database": "unavailable", "version": "0.1.0"},
        )
    return JSONResponse(content={"status": "ok", "database": "ok", "version": "0.1.0"})
