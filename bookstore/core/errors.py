from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class BookstoreError(Exception):
    """Base class for errors that map onto an HTTP response.

    ``message`` is safe to show to clients. Anything sensitive belongs in
    ``detail``, which only ever reaches the server log.
    """

    status_code = 500
    code = "internal_error"
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(BookstoreError):
    status_code = 400
    code = "validation_error"
    default_message = "Validation Error"


class Unauthorized(BookstoreError):
    status_code = 401
    code = "unauthorized"
    default_message = "Not authenticated"


class Forbidden(BookstoreError):
    status_code = 403
    code = "forbidden"
    default_message = "Forbidden"


class NotFound(BookstoreError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class Conflict(BookstoreError):
    status_code = 409
    code = "conflict"
    default_message = "Conflict"


class InsufficientFunds(BookstoreError):
    status_code = 422
    code = "insufficient_funds"

    def __init__(self, required: float, available: float):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance. Requires {required:.2f}, but only {available:.2f} is available."
        )


class ExternalServiceError(BookstoreError):
    """A collaborator call failed or timed out. Always safe to retry."""

    status_code = 502
    code = "external_service_error"
    retryable = True

    def __init__(self, service: str, detail: Optional[str] = None):
        self.service = service
        super().__init__(f"The {service} is unavailable, please try again.", detail=detail)


class ExternalServiceTimeout(ExternalServiceError):
    """The call timed out, so whether the collaborator acted on it is unknown."""

    code = "external_service_timeout"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(BookstoreError)
    async def _bookstore_error(request: Request, exc: BookstoreError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, code=exc.code, detail=exc.detail)
        elif exc.detail:
            logger.info("request_rejected", path=request.url.path, code=exc.code, detail=exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message, "code": exc.code})
