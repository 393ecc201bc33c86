"""CWB API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from cwb_api import __version__
from cwb_api.context import event_id_var, request_id_var, tenant_id_var
from cwb_api.pricing.enforcement import EntitlementDeniedError
from cwb_api.routers import admin, health, internal, webhooks
from cwb_api.schemas import ProblemDetail
from cwb_api.utils import configure_json_logging

PROBLEM_BASE_URL = os.getenv("CWB_PROBLEM_BASE_URL", "https://billing.competitor-watch.app/problems")

app = FastAPI(
    title="CWB Billing API",
    description="Subscription lifecycle engine: processor webhooks, trial expiry, entitlement checks.",
    version=__version__,
    docs_url="/api-docs",
    redoc_url=None,
)

# Structured JSON logging
# Set CWB_JSON_LOGS=false to disable (defaults to true for production)
if os.getenv("CWB_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    logger.info("Structured JSON logging enabled")


def _instance() -> str:
    request_id = request_id_var.get()
    return f"urn:cwb:trace:{request_id}" if request_id else f"urn:cwb:trace:{uuid.uuid4()}"


# ============================================================================
# HTTP Request Completion Logging Middleware
# ============================================================================


@app.middleware("http")
async def http_completion_logging_middleware(request: Request, call_next):
    """Log every HTTP request completion with observability fields.

    - Every HTTP request emits "http.request.completed"
    - Fields: request_id, method, path, status_code, duration_ms
    - tenant_id / event_id come from context when a handler set them
    - Logs even on exceptions (status_code=500)

    Clears per-request contextvars at start and end to prevent leakage.
    """
    tenant_id_var.set("")
    event_id_var.set("")

    start_time = time.perf_counter()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000

        logging.getLogger(__name__).info(
            "http.request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )

        tenant_id_var.set("")
        event_id_var.set("")


# ============================================================================
# Request ID Middleware (MUST BE OUTERMOST)
# ============================================================================


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Generate and propagate request_id for observability.

    - Accepts X-Request-ID header from client (optional)
    - Generates new UUID if not provided
    - Returns X-Request-ID in response headers

    Registered last so it is the outermost middleware and the contextvar is
    set before inner middlewares run.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ============================================================================
# RFC 9457 Global Exception Handlers
# ============================================================================


@app.exception_handler(EntitlementDeniedError)
async def entitlement_denied_handler(request: Request, exc: EntitlementDeniedError) -> JSONResponse:
    """Entitlement denial → 403 with the decision as structured detail."""
    decision = exc.decision
    code = decision.error_code.value if decision.error_code else "ENTITLEMENT_DENIED"
    problem = ProblemDetail(
        type=f"{PROBLEM_BASE_URL}/{code.lower().replace('_', '-')}",
        title="Entitlement Denied",
        status=status.HTTP_403_FORBIDDEN,
        detail=decision.to_response(),
        instance=_instance(),
    )
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with RFC 9457 Problem Details format.

    No {"detail": ...} wrapper; dict details are preserved.
    """
    detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)

    problem = ProblemDetail(
        type=f"{PROBLEM_BASE_URL}/http-{exc.status_code}",
        title=_get_title_for_status(exc.status_code),
        status=exc.status_code,
        detail=detail_value,
        instance=_instance(),
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request validation errors → 422 problem+json."""
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    problem = ProblemDetail(
        type=f"{PROBLEM_BASE_URL}/validation-error",
        title="Request Validation Failed",
        status=422,
        detail=f"Invalid field '{field}': {msg}",
        instance=_instance(),
    )

    return JSONResponse(
        status_code=422,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Uncaught exceptions → 500 problem+json. The exception is logged, never echoed."""
    problem = ProblemDetail(
        type=f"{PROBLEM_BASE_URL}/internal-error",
        title="Internal Server Error",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred. Please try again later.",
        instance=_instance(),
    )

    logging.getLogger(__name__).error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        405: "Method Not Allowed",
        409: "Conflict",
        422: "Unprocessable Entity",
        500: "Internal Server Error",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(webhooks.router)
app.include_router(internal.router)
app.include_router(admin.router)
