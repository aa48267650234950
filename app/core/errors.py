# app/core/errors.py
"""
Gateway error taxonomy and FastAPI exception handlers.

Every error the gateway reports to a client is a GatewayError subclass that
carries its HTTP status and a stable machine-readable code. Agents branch on
the code, never on the message text.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.gateway import audit

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base exception for errors reported to gateway clients."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize the gateway error.

        Args:
            message: Human-readable error message
            code: Overrides the class default error code
            details: Extra fields merged into the response body
        """
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "code": self.code}
        body.update(self.details)
        return body


class ValidationError(GatewayError):
    """Malformed request body or parameters."""
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(GatewayError):
    """Unknown invoice, account, or disabled feature."""
    status_code = 404
    code = "NOT_FOUND"


class PaymentPendingError(GatewayError):
    """Payment not confirmed yet; the client should poll and retry."""
    status_code = 402
    code = "AWAITING_CONFIRMATION"


class InvalidInvoiceError(GatewayError):
    """The payment proof does not name a known invoice."""
    status_code = 402
    code = "INVALID_INVOICE"


class InvoiceExpiredError(GatewayError):
    """Terminal: the client must request a new invoice."""
    status_code = 402
    code = "INVOICE_EXPIRED"


class DuplicatePaymentError(GatewayError):
    """An on-chain transaction was already credited."""
    status_code = 409
    code = "DUPLICATE_PAYMENT"


class UpstreamUnavailableError(GatewayError):
    status_code = 502
    code = "BAD_GATEWAY"


class InternalError(GatewayError):
    status_code = 500
    code = "INTERNAL_ERROR"


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Render a GatewayError as its JSON body and status."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all for programming faults and storage failures.

    The traceback is logged and an error audit event written; the client
    only sees a generic 500.
    """
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    audit.log_error(
        error_type=type(exc).__name__,
        error_message=str(exc),
        context={"method": request.method, "path": request.url.path},
        client_ip=request.client.host if request.client else None,
    )
    error = InternalError("An unexpected error occurred")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed bodies and parameters as 400 VALIDATION_ERROR."""
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    error = ValidationError("Invalid request", details={"detail": errors})
    logger.info(f"{request.method} {request.url.path} -> 400 {error.code}")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
