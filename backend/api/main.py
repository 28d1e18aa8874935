"""Main FastAPI application"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
import logging
import time
import os
from slowapi.middleware import SlowAPIMiddleware

from api.config import settings
from api.ratelimit import limiter
from api.routers import access, admin, executions, pledges, sessions
from api.scheduler import start_scheduler, stop_scheduler
from api.utils.metrics import get_metrics_text
from api.schemas.errors import ErrorCode
from api.utils.exceptions import PledgeHubException, error_body, from_domain_error
from pledgehub.config import settings as core_settings
from pledgehub.db.session import check_db_health, init_db
from pledgehub.log_config import logger
from pledgehub.utils.errors import PledgeHubError


def _strip_sensitive_data(event):
    """Remove PII and sensitive data before sending to Sentry"""
    if event.get("request"):
        request = event["request"]

        if request.get("cookies"):
            request["cookies"] = {}

        if request.get("headers"):
            headers = request["headers"]
            for header in ["authorization", "cookie"]:
                if header in headers:
                    headers[header] = "REDACTED"

        if request.get("data"):
            data = request["data"]
            if isinstance(data, dict):
                # Brokerage ids and consent signatures never leave the process
                sensitive_fields = ["brokerage_account_id", "digital_consent", "token", "secret"]
                for field in sensitive_fields:
                    if field in data:
                        data[field] = "REDACTED"

    if event.get("user"):
        user = event["user"]
        if "email" in user:
            del user["email"]
        if "ip_address" in user:
            del user["ip_address"]

    if event.get("extra"):
        extra = event["extra"]
        sensitive_keys = ["TOKEN", "API_KEY", "SECRET", "DATABASE_URL", "ACCOUNT"]
        for key in list(extra.keys()):
            if any(s in key.upper() for s in sensitive_keys):
                extra[key] = "REDACTED"

    return event


# Initialize Sentry for error monitoring
try:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_dsn = os.getenv("SENTRY_DSN")
    if sentry_dsn:
        sentry_sdk.init(
            dsn=sentry_dsn,
            environment=os.getenv("SENTRY_ENVIRONMENT", core_settings.app_env),
            traces_sample_rate=0.2 if core_settings.is_production else 1.0,
            send_default_pii=False,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR
                ),
            ],
            before_send=lambda event, hint: _strip_sensitive_data(event),
        )
        logger.info("Sentry error monitoring initialized")
    else:
        logger.info("Sentry DSN not configured, error monitoring disabled")
except ImportError:
    logger.warning("sentry-sdk not installed, error monitoring disabled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("Starting Pledge Hub API...")

    init_db()

    if core_settings.scheduler_enabled:
        start_scheduler()
        logger.info("Session lifecycle scheduler started")

    yield

    logger.info("Shutting down Pledge Hub API...")
    if core_settings.scheduler_enabled:
        stop_scheduler()


# Create FastAPI app
app = FastAPI(
    title=settings.API_TITLE,
    description="Stock pledge sessions: access review, fee-paid pledges, batched execution and an append-only audit trail.",
    version=settings.API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "access", "description": "Brokerage account linking requests"},
        {"name": "sessions", "description": "Pledge sessions and live statistics"},
        {"name": "pledges", "description": "Pledge submission, payment retry and positions"},
        {"name": "executions", "description": "Execution and payment history"},
        {"name": "admin", "description": "Access review, session management, execution and audit"},
    ]
)

# Add SlowAPI state and middleware
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["content-type", "authorization"],
)


# Access logging middleware
@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    """Log all API requests with caller and timing"""
    t0 = time.time()
    response = await call_next(request)
    ms = int((time.time() - t0) * 1000)

    user_id = getattr(request.state, "user_id", None) or "anonymous"

    logger.info(
        f"{request.method} {request.url.path} {response.status_code} {ms}ms "
        f"user={user_id}"
    )

    return response


# Global exception handlers
@app.exception_handler(PledgeHubException)
async def pledge_hub_exception_handler(request: Request, exc: PledgeHubException):
    """Handle API exceptions carrying a domain error code"""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.error_code, str(exc.detail), exc.status_code, exc.details),
    )


@app.exception_handler(PledgeHubError)
async def domain_error_handler(request: Request, exc: PledgeHubError):
    """Handle service errors raised outside a Result"""
    mapped = from_domain_error(exc)
    return JSONResponse(
        status_code=mapped.status_code,
        content=error_body(mapped.error_code, str(mapped.detail), mapped.status_code, mapped.details),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTPException with standard format"""
    error_code_map = {
        401: ErrorCode.UNAUTHORIZED,
        403: ErrorCode.FORBIDDEN,
        404: ErrorCode.NOT_FOUND,
        402: ErrorCode.PAYMENT_REQUIRED,
        429: ErrorCode.RATE_LIMIT_EXCEEDED,
        500: ErrorCode.INTERNAL_ERROR,
        503: ErrorCode.SERVICE_UNAVAILABLE,
    }

    error_code = error_code_map.get(exc.status_code, "HTTP_ERROR")

    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(error_code, str(exc.detail), exc.status_code, getattr(exc, "details", None)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors"""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body(
            ErrorCode.VALIDATION_ERROR,
            "Validation error",
            422,
            {"errors": [{"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in exc.errors()]},
        ),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Catch-all for unexpected errors"""
    logger.exception("Unhandled exception")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred", 500),
    )


# Include routers
app.include_router(access.router)
app.include_router(sessions.router)
app.include_router(pledges.router)
app.include_router(executions.router)
app.include_router(admin.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "name": "Pledge Hub API",
        "version": settings.API_VERSION,
        "status": "running"
    }


@app.get("/healthz")
async def health_check():
    """Health check endpoint, including database connectivity"""
    database = check_db_health()
    healthy = database["status"] == "healthy"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "healthy" if healthy else "degraded", "database": database},
    )


@app.get("/features")
async def get_feature_flags():
    """
    Return current feature flags for frontend.

    - enableAutoExecution: sessions with execution_rule=session_end run on close
    - enableAutoSellTrigger: market prices may fire auto_target sell legs
    - paymentTestMode: convenience fees go through the simulated provider
    """
    from pledgehub.feature_flags import feature_flags
    return feature_flags.to_dict()


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """
    Prometheus-style metrics endpoint.

    Exposes counters for submissions, payment failures, execution legs,
    admin overrides and audit exports, plus rejections labelled by error code.
    """
    return PlainTextResponse(content=get_metrics_text())
