"""
FastAPI exception handler for LunaChatError.

Catches LunaChatError, looks up the registry, and returns a structured
JSON error response. Unknown codes get a safe fallback.

Response body:
    {"error": <safe message>, "code", "title", "retryable", "remediation", **public}
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from lunachat.core.errors import LunaChatError
from lunachat.core.errors.registry import error_registry

logger = logging.getLogger(__name__)


async def lunachat_error_handler(request: Request, exc: LunaChatError) -> JSONResponse:
    """Convert LunaChatError into a structured JSON response."""
    entry = error_registry.get(exc.code)

    if entry is None:
        logger.error(
            "unregistered_error_code",
            extra={"error.code": exc.code, "error.message": exc.detail},
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "An unexpected error occurred.",
                "code": exc.code,
                "title": "Internal error",
                "retryable": False,
                "remediation": [],
                **exc.public,
            },
        )

    log_extra = {
        "error.code": exc.code,
        "error.kind": type(exc).__name__,
        "error.message_safe": entry.safe_message,
        "error.message": exc.detail,
        "error.retryable": entry.retryable,
        "http.path": request.url.path,
        **{f"error.ctx.{k}": v for k, v in exc.context.items()},
    }

    # 4xx are caller mistakes; only server-side failures carry a traceback
    log_fn = _severity_to_log_fn(entry.severity)
    log_fn(entry.title, extra=log_extra, exc_info=None if entry.is_client_error else exc)

    return JSONResponse(
        status_code=entry.http_status,
        content={
            "error": entry.safe_message,
            "code": entry.code,
            "title": entry.title,
            "retryable": entry.retryable,
            "remediation": entry.remediation,
            **exc.public,
        },
    )


def _severity_to_log_fn(severity: str):
    """Map registry severity to logger method."""
    return {
        "DEBUG": logger.debug,
        "INFO": logger.info,
        "WARN": logger.warning,
        "ERROR": logger.error,
        "CRITICAL": logger.critical,
    }.get(severity, logger.error)
