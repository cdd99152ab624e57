from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from app.cache import get_rates_cache, set_rates_cache
from app.deps import (
    BookingServiceClient,
    CurrentUser,
    can_cancel_booking,
    can_manage_booking,
    can_read_or_manage_booking,
    get_booking_client,
)
from app.errors import (
    AlreadyUsed,
    AuthorityError,
    BookingError,
    BookingNotFound,
    CodeRejected,
    DeadlineElapsed,
    InvalidTransition,
    TransportError,
    UnauthorizedAction,
)
from app.lifecycle import BookingLifecycle
from app.schemas import (
    Currency,
    DeliveryCodeResponse,
    DeliveryCodeSubmit,
    ExchangeRates,
    LifecycleView,
)

router = APIRouter(prefix="/bookings", tags=["bookings"])


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _http_error(exc: BookingError) -> HTTPException:
    """
    Map the lifecycle error taxonomy onto HTTP:
      UnauthorizedAction            → 403
      AlreadyUsed                   → 409
      InvalidTransition (local)     → 400
      InvalidTransition (authority) → 409
      other local validation        → 400
      BookingNotFound               → 404
      DeadlineElapsed               → 410
      CodeRejected                  → 422
      other authority errors        → 502
      TransportError                → 502, or 504 on timeout
    """
    if isinstance(exc, UnauthorizedAction):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, AlreadyUsed):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, InvalidTransition):
        code = status.HTTP_409_CONFLICT if exc.authoritative else status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, BookingNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, DeadlineElapsed):
        code = status.HTTP_410_GONE
    elif isinstance(exc, CodeRejected):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, AuthorityError):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(exc, TransportError):
        code = status.HTTP_504_GATEWAY_TIMEOUT if exc.timeout else status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(exc))


# ---------------------------------------------------------------------------
# Exchange rates
# ---------------------------------------------------------------------------


async def _load_rates(
    client: BookingServiceClient, current_user: CurrentUser
) -> ExchangeRates | None:
    """
    Rates from Redis, else from the authority. A missing table is not an
    error: amounts then fall back to MAD.
    """
    cached = await get_rates_cache()
    if cached is not None:
        logger.debug("Cache hit for exchange rates")
        return ExchangeRates.model_validate(cached)

    logger.debug("Cache miss for exchange rates")
    try:
        rates = await client.fetch_exchange_rates(current_user)
    except BookingError as exc:
        logger.warning("Exchange rates unavailable, amounts shown in MAD: {}", exc)
        return None
    await set_rates_cache(rates.model_dump(mode="json"))
    return rates


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/exchange-rates", response_model=ExchangeRates)
async def get_exchange_rates(
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
    client: BookingServiceClient = Depends(get_booking_client),
) -> ExchangeRates:
    rates = await _load_rates(client, current_user)
    if rates is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Exchange rates are currently unavailable",
        )
    return rates


@router.get("/{booking_id}/lifecycle", response_model=LifecycleView)
async def get_lifecycle(
    booking_id: str,
    currency: Currency = Currency.MAD,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
    client: BookingServiceClient = Depends(get_booking_client),
) -> LifecycleView:
    try:
        async with BookingLifecycle(booking_id, current_user, client, track=False) as lifecycle:
            rates = await _load_rates(client, current_user)
            return await lifecycle.view(currency, rates)
    except BookingError as exc:
        raise _http_error(exc) from exc


@router.post("/{booking_id}/accept", response_model=LifecycleView)
async def accept_booking(
    booking_id: str,
    current_user: CurrentUser = Depends(can_manage_booking),
    client: BookingServiceClient = Depends(get_booking_client),
) -> LifecycleView:
    try:
        async with BookingLifecycle(booking_id, current_user, client, track=False) as lifecycle:
            await lifecycle.accept()
            return await lifecycle.view()
    except BookingError as exc:
        raise _http_error(exc) from exc


@router.post("/{booking_id}/reject", response_model=LifecycleView)
async def reject_booking(
    booking_id: str,
    current_user: CurrentUser = Depends(can_manage_booking),
    client: BookingServiceClient = Depends(get_booking_client),
) -> LifecycleView:
    try:
        async with BookingLifecycle(booking_id, current_user, client, track=False) as lifecycle:
            await lifecycle.reject()
            return await lifecycle.view()
    except BookingError as exc:
        raise _http_error(exc) from exc


@router.post("/{booking_id}/cancel", response_model=LifecycleView)
async def cancel_booking(
    booking_id: str,
    currency: Currency = Currency.MAD,
    current_user: CurrentUser = Depends(can_cancel_booking),
    client: BookingServiceClient = Depends(get_booking_client),
) -> LifecycleView:
    try:
        async with BookingLifecycle(booking_id, current_user, client, track=False) as lifecycle:
            await lifecycle.cancel()
            rates = await _load_rates(client, current_user)
            return await lifecycle.view(currency, rates)
    except BookingError as exc:
        raise _http_error(exc) from exc


@router.get("/{booking_id}/delivery-code", response_model=DeliveryCodeResponse)
async def get_delivery_code(
    booking_id: str,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
    client: BookingServiceClient = Depends(get_booking_client),
) -> DeliveryCodeResponse:
    """Clients only, once the booking is confirmed. Owners receive it at handoff."""
    try:
        async with BookingLifecycle(booking_id, current_user, client, track=False) as lifecycle:
            code = await lifecycle.fetch_delivery_code()
    except BookingError as exc:
        raise _http_error(exc) from exc
    return DeliveryCodeResponse(booking_id=booking_id, code=code)


@router.post("/{booking_id}/delivery-code/validate", response_model=LifecycleView)
async def validate_delivery_code(
    booking_id: str,
    payload: DeliveryCodeSubmit,
    current_user: CurrentUser = Depends(can_manage_booking),
    client: BookingServiceClient = Depends(get_booking_client),
) -> LifecycleView:
    try:
        async with BookingLifecycle(booking_id, current_user, client, track=False) as lifecycle:
            await lifecycle.validate_delivery_code(payload.code)
            return await lifecycle.view()
    except BookingError as exc:
        raise _http_error(exc) from exc
