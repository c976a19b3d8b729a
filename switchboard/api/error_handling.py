from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from switchboard.api.schemas import Envelope, ErrorBody
from switchboard.logging import get_logger, sanitize_error_message
from switchboard.service.errors import ConflictError, RateLimitExceeded, ServiceError
from switchboard.service.sandbox import SandboxError
from switchboard.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_CODE_BY_STATUS = {
    400: "validation_error",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
}


def _envelope(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _CODE_BY_STATUS.get(status_code, "server_error"),
        message=message,
        details=details,
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(),
        headers=headers,
    )


def _where(request: Request) -> Dict[str, Any]:
    return {"path": request.url.path, "method": request.method}


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage and framework errors onto the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        headers = None
        if isinstance(exc, RateLimitExceeded):
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        if exc.status_code >= 500:
            logger.error("service_error", status_code=exc.status_code, error_code=exc.error_code,
                         error=exc.message, **_where(request))
            return _envelope(exc.status_code, sanitize_error_message(exc.message), code=exc.error_code)
        logger.warning("service_error", status_code=exc.status_code, error_code=exc.error_code,
                       error=exc.message, **_where(request))
        return _envelope(exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning("constraint_violation", error=exc.message, detail=exc.detail, **_where(request))
        conflict = ConflictError(exc.message, detail=exc.detail)
        return _envelope(conflict.status_code, conflict.message, conflict.detail, code=conflict.error_code)

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error("store_unavailable", error=str(exc), **_where(request))
        return _envelope(503, "storage unavailable")

    @app.exception_handler(SandboxError)
    async def handle_sandbox_error(request: Request, exc: SandboxError):
        logger.warning("tool_source_rejected", error=str(exc), **_where(request))
        return _envelope(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        logger.warning("request_validation_failed", errors=len(errors), **_where(request))
        details = [{"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")} for err in errors]
        return _envelope(400, "invalid request body", details)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, dict) else {"detail": exc.detail}
        message = str(detail.get("message") or detail.get("detail") or "http error")
        if exc.status_code >= 500:
            logger.error("http_error", status_code=exc.status_code, error=message, **_where(request))
        return _envelope(exc.status_code, message, detail, code=detail.get("code"))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception("unhandled_exception", error_type=type(exc).__name__,
                         error=sanitize_error_message(str(exc)), **_where(request))
        return _envelope(500, "internal server error")
