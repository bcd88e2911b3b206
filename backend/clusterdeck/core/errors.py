from typing import Any, Dict, Iterable, Optional
import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clusterdeck.core.request_context import request_id_var


logger = structlog.get_logger(__name__)


class AppException(Exception):
    """Base application error carrying an HTTP status and a stable code."""

    status_code: int = 400
    code: str = "APP_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details or {}


class ValidationError(AppException):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AppException):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AppException):
    status_code = 409
    code = "CONFLICT"


class UpstreamError(AppException):
    status_code = 502
    code = "UPSTREAM_ERROR"


class ClusterUnavailableError(AppException):
    status_code = 503
    code = "CLUSTER_UNAVAILABLE"

    def __init__(self, cluster: str, *, reason: Optional[str] = None) -> None:
        super().__init__(
            f"{cluster} kubernetes cluster is unavailable",
            details={"cluster": cluster, **({"reason": reason} if reason else {})},
        )
        self.cluster = cluster


class MalformedConnectionProfileError(AppException):
    status_code = 400
    code = "MALFORMED_CONNECTION_PROFILE"


class VaultSealedError(AppException):
    status_code = 503
    code = "VAULT_SEALED"


class InconsistencyError(AppException):
    """A compensation failed; state needs manual remediation.

    Orphaned ids are kept on the instance for logs and tests but are never
    rendered into the response payload.
    """

    status_code = 500
    code = "INCONSISTENT_STATE"

    def __init__(self, flow: str, orphaned_ids: Iterable[str]) -> None:
        super().__init__(
            "The operation failed and could not be fully rolled back; operator intervention is required",
            details={"flow": flow},
        )
        self.flow = flow
        self.orphaned_ids = list(orphaned_ids)


def _error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """JSON error envelope shared by every handler; echoes the request id."""
    req_id = getattr(request.state, "request_id", None) or request_id_var.get() or str(uuid.uuid4())
    error: Dict[str, Any] = {"message": message, "code": code}
    if details:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "request_id": req_id, "status_code": status_code},
        headers={"X-Request-ID": req_id},
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        logger.warning("http.error", status=exc.status_code, path=request.url.path)
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return _error_response(request, exc.status_code, "HTTP_ERROR", message)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        # input values may carry credentials
        errors = [{k: v for k, v in e.items() if k not in ("input", "ctx")} for e in exc.errors()]
        logger.info("http.validation_error", path=request.url.path, errors=len(errors))
        return _error_response(request, 422, "VALIDATION_ERROR", "Request validation failed", {"errors": errors})

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):  # type: ignore[override]
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("http.app_error", status=exc.status_code, code=exc.code, path=request.url.path)
        return _error_response(request, exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        logger.exception("http.unhandled_error", path=request.url.path)
        return _error_response(request, 500, "INTERNAL_SERVER_ERROR", "Internal server error")
