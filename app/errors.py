from typing import cast

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger


class BookingError(Exception):
    """
    Base class for every failure the booking core reports to its callers.

    Each subclass carries a stable `code` and the HTTP status the API boundary
    answers with, so the router never has to guess how to surface it.
    """

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "booking_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_body(self) -> dict:
        return {"detail": self.detail, "code": self.code}


class ValidationError(BookingError):
    """Missing/malformed fields, return <= pickup, duration below the minimum."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_error"


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class AvailabilityConflict(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "availability_conflict"


class PaymentVerificationFailed(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "payment_verification_failed"


class PaymentGatewayError(BookingError):
    """
    Provider unreachable or the order was rejected.
    A rejection that comes back with a provider reason is the caller's
    problem (400); anything else is a bad gateway.
    """

    code = "payment_gateway_error"

    def __init__(self, detail: str, provider_rejected: bool = False) -> None:
        super().__init__(detail)
        self.status_code = (
            status.HTTP_400_BAD_REQUEST
            if provider_rejected
            else status.HTTP_502_BAD_GATEWAY
        )


class PolicyViolation(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "policy_violation"


class StoreError(BookingError):
    """Transient read/write failure. Never to be read as 'unavailable'."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "store_error"


async def _booking_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = cast(BookingError, exc)
    if isinstance(error, (StoreError, PaymentVerificationFailed)):
        logger.warning(
            "{} on {} {}: {}", error.code, request.method, request.url.path, error.detail
        )
    return JSONResponse(status_code=error.status_code, content=error.to_body())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BookingError, _booking_error_handler)
