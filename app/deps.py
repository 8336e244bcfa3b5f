from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any
from urllib.parse import unquote
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from loguru import logger

from app import settings
from app.crud import booking_store
from app.errors import PaymentGatewayError
from app.events import SendResult
from app.scopes import BookingScope
from app.store import BookingStore


@dataclass
class CurrentUser:
    id: UUID
    username: str
    scopes: list[str] = field(default_factory=list)


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the headers injected by the gateway after token validation.
    The JWT has already been verified: we just trust these headers.
    """
    try:
        user_id = UUID(x_user_id)
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity from gateway",
        ) from None

    scopes = x_user_scopes.split(" ") if x_user_scopes else []

    return CurrentUser(id=user_id, username=unquote(x_username), scopes=scopes)


def require_scopes(*required: str):
    """
    Factory that returns a dependency enforcing one or more scopes.

    Usage:
        @router.get("/protected")
        async def route(user = Depends(require_scopes("bookings:read"))):
            ...
    """

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        missing = [s for s in required if s not in current_user.scopes]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scopes: {', '.join(missing)}",
            )
        return current_user

    return _dep


# ---------------------------------------------------------------------------
# Pre-built scope dependencies
# ---------------------------------------------------------------------------

can_write_booking = require_scopes(BookingScope.WRITE)
can_cancel_booking = require_scopes(BookingScope.CANCEL)
can_modify_booking = require_scopes(BookingScope.MODIFY)
can_admin_write_booking = require_scopes(BookingScope.ADMIN_WRITE)


def is_booking_admin(user: CurrentUser) -> bool:
    return BookingScope.ADMIN in user.scopes or BookingScope.ADMIN_READ in user.scopes


async def can_read_or_admin_booking(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """
    - bookings:read       → customer sees own bookings
    - admin:bookings*     → admin sees all
    """
    if not (BookingScope.READ in current_user.scopes or is_booking_admin(current_user)):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=(
                f"Requires '{BookingScope.READ}' (customers) "
                f"or '{BookingScope.ADMIN_READ}' (admin)."
            ),
        )
    return current_user


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def get_booking_store() -> BookingStore:
    return booking_store


# ---------------------------------------------------------------------------
# RazorpayClient: thin async wrapper around the payment provider's REST API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_razorpay_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.razorpay_api_url,
        timeout=httpx.Timeout(10.0),
        follow_redirects=True,
    )


class RazorpayClient:
    """
    Creates provider-side orders and reads them back at commit time.
    Checkout itself happens in the browser; the signed result comes back
    through POST /bookings/confirm.
    """

    def __init__(self, key_id: str | None = None, key_secret: str | None = None) -> None:
        self.key_id = key_id if key_id is not None else settings.RAZORPAY_KEY_ID
        self.key_secret = (
            key_secret if key_secret is not None else settings.RAZORPAY_KEY_SECRET
        )

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_razorpay_http_client()

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def _require_keys(self) -> None:
        if not self.configured:
            logger.error("Razorpay keys not configured")
            raise PaymentGatewayError(
                "Payment gateway not configured. Please contact support."
            )

    async def create_order(
        self, amount: int, currency: str, notes: dict[str, str]
    ) -> dict[str, Any]:
        """
        Returns the provider's order dict (`id`, `amount`, `currency`, ...).
        Raises PaymentGatewayError with the provider's reason when present.
        """
        self._require_keys()
        try:
            resp = await self._client.post(
                "/orders",
                json={
                    "amount": amount,
                    "currency": currency,
                    "payment_capture": 1,
                    "notes": notes,
                },
                auth=(self.key_id, self.key_secret),
            )
        except httpx.RequestError as exc:
            logger.error("Razorpay unreachable: {}", exc)
            raise PaymentGatewayError(
                "Failed to create payment order. Please try again."
            ) from exc

        return _order_body(resp)

    async def fetch_order(self, order_id: str) -> dict[str, Any]:
        """The provider's record of an order, notes included."""
        self._require_keys()
        try:
            resp = await self._client.get(
                f"/orders/{order_id}", auth=(self.key_id, self.key_secret)
            )
        except httpx.RequestError as exc:
            logger.error("Razorpay unreachable: {}", exc)
            raise PaymentGatewayError(
                "Could not verify the payment order. Please try again."
            ) from exc
        return _order_body(resp)


def _order_body(resp: httpx.Response) -> dict[str, Any]:
    if resp.status_code >= 400:
        reason = _provider_reason(resp)
        logger.warning("Razorpay rejected request ({}): {}", resp.status_code, reason)
        if reason and resp.status_code < 500:
            raise PaymentGatewayError(reason, provider_rejected=True)
        raise PaymentGatewayError("Payment gateway error")
    return resp.json()


def _provider_reason(resp: httpx.Response) -> str | None:
    try:
        error = resp.json().get("error") or {}
    except ValueError:
        return None
    return error.get("description") or error.get("reason")


_razorpay_client = RazorpayClient()


def get_payment_gateway() -> RazorpayClient:
    return _razorpay_client


def get_payment_secret() -> str:
    return settings.RAZORPAY_KEY_SECRET


# ---------------------------------------------------------------------------
# NotificationsClient: thin async wrapper around notifications-ms
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_notifications_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.notifications_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class NotificationsClient:
    """
    Hands booking emails to notifications-ms, which owns templates and SMTP.
    Failures are swallowed: a lost email must not fail the booking.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_notifications_http_client()

    async def send(self, kind: str, payload: dict[str, Any]) -> SendResult:
        try:
            resp = await self._client.post(
                "/notifications", json={"kind": kind, "payload": payload}
            )
        except httpx.RequestError as exc:
            return SendResult(success=False, error=str(exc) or type(exc).__name__)
        if resp.status_code >= 400:
            return SendResult(
                success=False, error=f"notifications-ms returned {resp.status_code}"
            )
        return SendResult(success=True)


_notifications_client = NotificationsClient()


def get_notifications_client() -> NotificationsClient:
    return _notifications_client
