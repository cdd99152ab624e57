from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any
from urllib.parse import quote, unquote
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from loguru import logger
from pydantic import ValidationError

from app import settings
from app.errors import (
    AuthorityError,
    BookingNotFound,
    CodeRejected,
    DeadlineElapsed,
    TransportError,
)
from app.schemas import Booking, ExchangeRates, Role, normalize_keys
from app.scopes import BookingScope


@dataclass
class CurrentUser:
    id: UUID
    username: str
    scopes: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return (
            "admin:scopes" in self.scopes
            or BookingScope.ADMIN in self.scopes
            or BookingScope.ADMIN_READ in self.scopes
        )

    @property
    def role(self) -> Role:
        """
        admin scopes        -> admin
        manage without read -> owner
        anything else       -> client
        """
        if self.is_admin:
            return Role.ADMIN
        if BookingScope.MANAGE in self.scopes and BookingScope.READ not in self.scopes:
            return Role.OWNER
        return Role.CLIENT


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the headers injected by the gateway after token validation.
    The token has already been verified; we just trust these headers.
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
        @router.post("/{booking_id}/cancel")
        async def route(user = Depends(require_scopes("bookings:cancel"))):
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

can_cancel_booking = require_scopes(BookingScope.CANCEL)
can_manage_booking = require_scopes(BookingScope.MANAGE)


async def can_read_or_manage_booking(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """
    Passes if the user can read bookings (client/admin) OR manage bookings (owner).
    - bookings:read       → client sees own bookings
    - bookings:manage     → owner sees bookings for their cars
    - admin:bookings[:read] → admin sees all
    """
    has_read = BookingScope.READ in current_user.scopes
    has_manage = BookingScope.MANAGE in current_user.scopes
    if not (has_read or has_manage or current_user.is_admin):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=(
                f"Requires '{BookingScope.READ}' (clients), "
                f"'{BookingScope.MANAGE}' (owners), "
                f"or '{BookingScope.ADMIN_READ}' (admin)."
            ),
        )
    return current_user


# ---------------------------------------------------------------------------
# BookingServiceClient: async wrapper around the authoritative booking API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_booking_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.booking_service_url,
        timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS),
        follow_redirects=True,
    )


async def close_http_clients() -> None:
    if _get_booking_http_client.cache_info().currsize:
        await _get_booking_http_client().aclose()
        _get_booking_http_client.cache_clear()


def _unwrap(body: Any, key: str) -> Any:
    """Strip the `{"success", "<key>"}` / `{"data"}` envelopes."""
    if isinstance(body, dict):
        for name in (key, "data"):
            if name in body and body[name] is not None:
                return body[name]
    return body


def _error_from_response(resp: httpx.Response) -> AuthorityError:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = (
        body.get("message")
        or body.get("detail")
        or f"booking service returned {resp.status_code}"
    )
    code = body.get("code")

    if resp.status_code == 404:
        return BookingNotFound(resp.status_code, message)
    if resp.status_code == 410 or code == "DEADLINE_ELAPSED":
        return DeadlineElapsed(resp.status_code, message)
    if code == "CODE_REJECTED":
        return CodeRejected(resp.status_code, message)
    return AuthorityError(resp.status_code, message)


class BookingServiceClient:
    """
    Thin async wrapper around the authoritative booking service.
    Forwards gateway-injected user headers so the authority applies its own
    auth rules.

    Transport failures surface as TransportError and refusals as
    AuthorityError; neither is retried here.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_booking_http_client()

    def _headers(self, user: CurrentUser) -> dict[str, str]:
        return {
            "X-User-Id": str(user.id),
            "X-Username": quote(user.username),
            "X-User-Scopes": " ".join(user.scopes),
        }

    async def _request(
        self, method: str, path: str, user: CurrentUser, **kwargs: Any
    ) -> Any:
        try:
            resp = await self._client.request(
                method, path, headers=self._headers(user), **kwargs
            )
        except httpx.TimeoutException as exc:
            raise TransportError(
                f"booking service timed out on {method} {path}", timeout=True
            ) from exc
        except httpx.RequestError as exc:
            raise TransportError(
                f"booking service unreachable on {method} {path}"
            ) from exc

        if resp.status_code >= 400:
            raise _error_from_response(resp)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            raise AuthorityError(
                status.HTTP_502_BAD_GATEWAY, "booking service returned invalid JSON"
            ) from None

    def _booking(self, body: Any) -> Booking:
        try:
            return Booking.model_validate(_unwrap(body, "booking"))
        except ValidationError as exc:
            raise AuthorityError(
                status.HTTP_502_BAD_GATEWAY,
                f"booking service returned a malformed booking: {exc.error_count()} errors",
            ) from exc

    # -----------------------------------------------------------------------
    # Lifecycle calls
    # -----------------------------------------------------------------------

    async def fetch_booking(self, booking_id: str, user: CurrentUser) -> Booking:
        body = await self._request("GET", f"/bookings/{booking_id}", user)
        return self._booking(body)

    async def accept_booking(self, booking_id: str, user: CurrentUser) -> Booking:
        body = await self._request("PUT", f"/bookings/{booking_id}/accept", user)
        return self._booking(body)

    async def reject_booking(self, booking_id: str, user: CurrentUser) -> Booking:
        body = await self._request("PUT", f"/bookings/{booking_id}/reject", user)
        return self._booking(body)

    async def cancel_booking(self, booking_id: str, user: CurrentUser) -> Booking:
        body = await self._request("PUT", f"/bookings/{booking_id}/cancel", user)
        return self._booking(body)

    async def fetch_delivery_code(self, booking_id: str, user: CurrentUser) -> str:
        body = await self._request("GET", f"/bookings/{booking_id}/delivery-code", user)
        data = _unwrap(body, "data")
        code = None
        if isinstance(data, dict):
            fields = normalize_keys(data)
            code = fields.get("delivery_code") or fields.get("code")
        elif isinstance(data, str):
            code = data
        if not code:
            raise AuthorityError(
                status.HTTP_502_BAD_GATEWAY, "booking service returned no delivery code"
            )
        return str(code)

    async def validate_delivery_code(
        self, booking_id: str, code: str, user: CurrentUser
    ) -> Booking:
        try:
            body = await self._request(
                "POST",
                f"/bookings/{booking_id}/validate-delivery-code",
                user,
                json={"code": code},
            )
        except AuthorityError as exc:
            if exc.status_code in (400, 422) and type(exc) is AuthorityError:
                raise CodeRejected(exc.status_code, exc.message) from exc
            raise
        return self._booking(body)

    # -----------------------------------------------------------------------
    # Read-only lookups: degrade to "not available" on error
    # -----------------------------------------------------------------------

    async def fetch_exchange_rates(self, user: CurrentUser) -> ExchangeRates:
        body = await self._request("GET", "/currency/rates", user)
        return ExchangeRates.model_validate(_unwrap(body, "data"))

    async def check_review_eligibility(self, booking_id: str, user: CurrentUser) -> bool:
        try:
            body = await self._request(
                "GET", f"/reviews/booking/{booking_id}/can-review", user
            )
        except (AuthorityError, TransportError) as exc:
            logger.warning("Review eligibility check failed: {}", exc)
            return False
        data = _unwrap(body, "data")
        return bool(normalize_keys(data).get("can_review")) if isinstance(data, dict) else False

    async def check_invoice_availability(self, booking_id: str, user: CurrentUser) -> bool:
        try:
            body = await self._request(
                "GET", f"/invoices/booking/{booking_id}/status", user
            )
        except BookingNotFound:
            return False
        except (AuthorityError, TransportError) as exc:
            logger.warning("Invoice availability check failed: {}", exc)
            return False
        data = _unwrap(body, "data")
        return bool(data.get("available")) if isinstance(data, dict) else False


_booking_client = BookingServiceClient()


def get_booking_client() -> BookingServiceClient:
    return _booking_client
