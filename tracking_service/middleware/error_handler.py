"""
Error Handler Middleware

Centralized mapping of exceptions to HTTP responses:
- TrackingError subclasses carry their own status code and details
- Request body validation errors become INVALID_EVENT with every violation
- Redis outages and an open store circuit become 503
- Anything else is a generic 500
"""

import logging
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from tracking_service.core.circuit_breaker import CircuitBreakerError
from tracking_service.core.errors import ErrorCode, TrackingError

logger = logging.getLogger(__name__)


def _error_body(code: str, message: str, request: Request, **details) -> dict:
    return {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "path": request.url.path,
            **details,
        },
    }


async def error_handler_middleware(request: Request, call_next: Callable) -> Response:
    """
    Global error handling middleware.

    Catches unhandled exceptions and returns structured error responses.
    """
    try:
        return await call_next(request)

    except TrackingError as e:
        return handle_tracking_error(e, request)

    except RequestValidationError as e:
        return handle_validation_error(e, request)

    except CircuitBreakerError as e:
        return handle_store_unavailable(e, request, retry_after=max(1, int(e.retry_after)))

    except RedisError as e:
        return handle_store_unavailable(e, request)

    except Exception as e:
        return handle_unexpected_error(e, request)


def handle_tracking_error(error: TrackingError, request: Request) -> JSONResponse:
    log = logger.warning if error.status_code < 500 else logger.error
    log(
        f"Tracking error {error.code.value} on {request.method} {request.url.path}: {error.message}"
    )

    headers = {}
    if error.retry_after:
        headers["Retry-After"] = str(error.retry_after)

    details = {k: v for k, v in error.to_dict().items() if k not in ("code", "message")}
    return JSONResponse(
        status_code=error.status_code,
        content=_error_body(error.code.value, error.message, request, **details),
        headers=headers,
    )


def handle_validation_error(error: RequestValidationError, request: Request) -> JSONResponse:
    violations = [
        {
            "field": ".".join(str(loc) for loc in err["loc"] if loc != "body"),
            "message": err["msg"],
        }
        for err in error.errors()
    ]

    logger.warning(f"Validation error on {request.url.path}: {len(violations)} violation(s)")

    return JSONResponse(
        status_code=400,
        content=_error_body(
            ErrorCode.INVALID_EVENT.value,
            "Request validation failed",
            request,
            violations=violations,
        ),
    )


def handle_store_unavailable(error: Exception, request: Request, retry_after: int = 30) -> JSONResponse:
    logger.error(
        f"Tracking store unavailable on {request.url.path}: {type(error).__name__}: {error}",
        exc_info=not isinstance(error, CircuitBreakerError),
    )

    return JSONResponse(
        status_code=503,
        content=_error_body(
            "STORE_UNAVAILABLE",
            "Tracking store temporarily unavailable. Please try again.",
            request,
        ),
        headers={"Retry-After": str(retry_after)},
    )


def handle_unexpected_error(error: Exception, request: Request) -> JSONResponse:
    logger.critical(
        f"Unexpected error on {request.method} {request.url.path}: {type(error).__name__}",
        exc_info=True,
    )

    # Internal details stay in the logs
    return JSONResponse(
        status_code=500,
        content=_error_body(
            "INTERNAL_ERROR",
            "An unexpected error occurred.",
            request,
            error_id=datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S"),
        ),
    )


# Exception handlers for FastAPI
async def tracking_error_handler(request: Request, exc: TrackingError) -> JSONResponse:
    return handle_tracking_error(exc, request)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return handle_validation_error(exc, request)
