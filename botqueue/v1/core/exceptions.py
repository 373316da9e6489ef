import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from botqueue.config.logging import bind_log_context, get_logger

logger = get_logger(__name__)


class ErrorCode(str, Enum):
    """Error taxonomy shared by the job system and the bot middleware."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    NOT_FOUND_ERROR = "NOT_FOUND_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UNKNOWN_JOB_TYPE = "UNKNOWN_JOB_TYPE"
    GENERIC = "INTERNAL_ERROR"


class BotQueueException(Exception):
    """Base exception for Bot Queue application."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.GENERIC,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(BotQueueException):
    """Raised when input validation fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message, ErrorCode.VALIDATION_ERROR, status.HTTP_400_BAD_REQUEST, details
        )


class AuthenticationError(BotQueueException):
    """Raised when authentication fails."""

    def __init__(
        self, message: str = "Unauthorized", details: dict[str, Any] | None = None
    ):
        super().__init__(
            message,
            ErrorCode.AUTHENTICATION_ERROR,
            status.HTTP_401_UNAUTHORIZED,
            details,
        )


class AuthorizationError(BotQueueException):
    """Raised when access is forbidden."""

    def __init__(
        self, message: str = "Forbidden", details: dict[str, Any] | None = None
    ):
        super().__init__(
            message, ErrorCode.AUTHORIZATION_ERROR, status.HTTP_403_FORBIDDEN, details
        )


class NotFoundError(BotQueueException):
    """Raised when a resource is not found."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message, ErrorCode.NOT_FOUND_ERROR, status.HTTP_404_NOT_FOUND, details
        )


class ServiceUnavailableError(BotQueueException):
    """Raised when the queue store or the chat transport cannot be reached."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message,
            ErrorCode.SERVICE_UNAVAILABLE,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            details,
        )


class UnknownJobTypeError(BotQueueException):
    """Raised by a dispatcher for a job type its queue has no handler for."""

    def __init__(self, job_type: str, queue_name: str):
        super().__init__(
            f"Unknown {queue_name} job type: {job_type}",
            ErrorCode.UNKNOWN_JOB_TYPE,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            {"job_type": job_type, "queue": queue_name},
        )


def handle_error(
    error: Exception, user_id: int | str | None = None, context: str = "general"
) -> dict[str, Any]:
    """Log an error and build the standardized error payload for it."""
    is_app_error = isinstance(error, BotQueueException)

    logger.error(
        f"Error in {context}",
        context=context,
        user_id=user_id,
        exception=error.__class__.__name__,
        error=str(error),
        exc_info=error,
    )

    payload: dict[str, Any] = {
        "message": error.message if is_app_error else "An unexpected error occurred",
        "code": error.error_code.value if is_app_error else ErrorCode.GENERIC.value,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    if is_app_error and error.details:
        payload["details"] = error.details

    return {"ok": False, "error": payload}


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
    code: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": code or status_code,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


async def bot_queue_exception_handler(
    request: Request, exc: BotQueueException
) -> JSONResponse:
    """Handle Bot Queue specific exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        error_code=exc.error_code.value,
        status_code=exc.status_code,
        details=exc.details,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
            code=exc.error_code.value,
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=str(exc.detail),
            request_id=request_id,
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=request_id,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message="Internal server error",
            request_id=request_id,
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context and correlation IDs."""

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        bind_log_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        return response
