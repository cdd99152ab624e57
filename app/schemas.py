import re
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class BookingStatus(StrEnum):
    PENDING_OWNER = "pending_owner"  # awaiting the owner's answer (3h max)
    WAITING_PAYMENT = "waiting_payment"  # owner accepted, awaiting payment (1h max)
    CONFIRMED = "confirmed"  # paid, awaiting vehicle delivery
    IN_PROGRESS = "in_progress"  # vehicle handed over with the delivery code
    COMPLETED = "completed"  # vehicle returned
    REJECTED = "rejected"  # refused by the owner
    CANCELLED = "cancelled"  # cancelled by the client
    EXPIRED_OWNER = "expired_owner"  # owner deadline elapsed
    EXPIRED_PAYMENT = "expired_payment"  # payment deadline elapsed


TERMINAL_STATUSES = frozenset(
    {
        BookingStatus.COMPLETED,
        BookingStatus.REJECTED,
        BookingStatus.CANCELLED,
        BookingStatus.EXPIRED_OWNER,
        BookingStatus.EXPIRED_PAYMENT,
    }
)

# Statuses in which the owner's identity is disclosed to the client
DISCLOSED_STATUSES = frozenset(
    {BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED}
)

STATUS_LABELS: dict[BookingStatus, str] = {
    BookingStatus.PENDING_OWNER: "En attente propriétaire",
    BookingStatus.WAITING_PAYMENT: "En attente paiement",
    BookingStatus.CONFIRMED: "Confirmée",
    BookingStatus.IN_PROGRESS: "En cours",
    BookingStatus.COMPLETED: "Terminée",
    BookingStatus.CANCELLED: "Annulée",
    BookingStatus.REJECTED: "Rejetée",
    BookingStatus.EXPIRED_OWNER: "Délai propriétaire expiré",
    BookingStatus.EXPIRED_PAYMENT: "Délai paiement expiré",
}

STATUS_TONES: dict[BookingStatus, str] = {
    BookingStatus.PENDING_OWNER: "warning",
    BookingStatus.WAITING_PAYMENT: "warning",
    BookingStatus.CONFIRMED: "success",
    BookingStatus.IN_PROGRESS: "info",
    BookingStatus.COMPLETED: "success",
    BookingStatus.CANCELLED: "error",
    BookingStatus.REJECTED: "error",
    BookingStatus.EXPIRED_OWNER: "gray",
    BookingStatus.EXPIRED_PAYMENT: "gray",
}


class Role(StrEnum):
    CLIENT = "client"
    OWNER = "owner"
    ADMIN = "admin"


class Currency(StrEnum):
    MAD = "MAD"
    USD = "USD"
    EUR = "EUR"


class Action(StrEnum):
    ACCEPT = "accept"
    REJECT = "reject"
    PAY = "pay"
    CANCEL = "cancel"
    MESSAGE = "message"
    LEAVE_REVIEW = "leaveReview"
    DOWNLOAD_INVOICE = "downloadInvoice"
    VALIDATE_DELIVERY_CODE = "validateDeliveryCode"
    NONE = "none"


# ---------------------------------------------------------------------------
# Normalization: the single place where transport naming is handled
# ---------------------------------------------------------------------------

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

_DATE_FIELDS = ("start_date", "end_date")
_NESTED_FIELDS = ("car", "client", "owner")


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """
    Fold camelCase and snake_case spellings of the same field into snake_case.
    When both spellings are present, the first non-null value wins.
    """
    out: dict[str, Any] = {}
    for key, value in data.items():
        name = _snake(key)
        if out.get(name) is None:
            out[name] = value
    return out


def _to_utc_date(value: Any) -> Any:
    """Collapse ISO timestamps and datetimes to a UTC calendar date."""
    if isinstance(value, str) and "T" in value:
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def normalize_booking_payload(data: dict[str, Any]) -> dict[str, Any]:
    """
    Turn a raw booking payload from the authority into the canonical shape.

    - camelCase / snake_case duplicates are folded into snake_case
    - nested car / client / owner objects are folded the same way
    - start/end timestamps become UTC dates
    - deadlines that do not belong to the current status are dropped
    """
    out = normalize_keys(data)

    for name in _NESTED_FIELDS:
        if isinstance(out.get(name), dict):
            out[name] = normalize_keys(out[name])

    for name in _DATE_FIELDS:
        if name in out:
            out[name] = _to_utc_date(out[name])

    if out.get("client_id") is None and isinstance(out.get("client"), dict):
        out["client_id"] = out["client"].get("id")
    if out.get("owner_id") is None and isinstance(out.get("owner"), dict):
        out["owner_id"] = out["owner"].get("id")
    if out.get("owner_id") is None and isinstance(out.get("car"), dict):
        out["owner_id"] = out["car"].get("owner_id")

    status = out.get("status")
    if status != BookingStatus.PENDING_OWNER:
        out.pop("owner_response_deadline", None)
    if status != BookingStatus.WAITING_PAYMENT:
        out.pop("payment_deadline", None)

    return out


# ---------------------------------------------------------------------------
# Canonical records
# ---------------------------------------------------------------------------


class UserSummary(BaseModel):
    id: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)


class CarSummary(BaseModel):
    id: str
    brand: str | None = None
    model: str | None = None
    year: int | None = None
    plate_number: str | None = None
    owner_id: str | None = None

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)


class Booking(BaseModel):
    """
    Canonical booking record. Immutable: every change produces a new instance,
    and every instance coming from the authority goes through
    normalize_booking_payload() first.
    """

    id: str
    status: BookingStatus
    start_date: date
    end_date: date

    owner_response_deadline: datetime | None = None
    payment_deadline: datetime | None = None

    # Monetary amounts, canonical currency MAD
    price_per_day: Decimal = Field(default=Decimal("0"), ge=0)
    total_price: Decimal = Field(default=Decimal("0"), ge=0)
    deposit_amount: Decimal = Field(default=Decimal("0"), ge=0)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    online_payment_amount: Decimal = Field(default=Decimal("0"), ge=0)
    owner_payment_amount: Decimal = Field(default=Decimal("0"), ge=0)
    commission_amount: Decimal = Field(default=Decimal("0"), ge=0)

    delivery_code: str | None = None
    delivery_code_validated_at: datetime | None = None

    car_id: str | None = None
    client_id: str | None = None
    owner_id: str | None = None
    car: CarSummary | None = None
    client: UserSummary | None = None
    owner: UserSummary | None = None

    pickup_location: str | None = None
    dropoff_location: str | None = None
    notes: str | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None
    confirmed_at: datetime | None = None

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return normalize_booking_payload(data)
        return data

    @field_validator(
        "owner_response_deadline",
        "payment_deadline",
        "delivery_code_validated_at",
        "created_at",
        "updated_at",
        "confirmed_at",
        mode="after",
    )
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is None:
            return v
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def check_invariants(self) -> "Booking":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        if self.owner_payment_amount > self.total_price:
            raise ValueError("owner_payment_amount cannot exceed total_price")
        if self.status == BookingStatus.PENDING_OWNER:
            if self.owner_response_deadline is None:
                raise ValueError("pending_owner booking requires owner_response_deadline")
        if self.status == BookingStatus.WAITING_PAYMENT:
            if self.payment_deadline is None:
                raise ValueError("waiting_payment booking requires payment_deadline")
        return self

    @property
    def deadline(self) -> datetime | None:
        """The SLA deadline attached to the current status, if any."""
        return self.owner_response_deadline or self.payment_deadline

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def rental_days(self) -> int:
        return (self.end_date - self.start_date).days

    def evolve(self, **changes: Any) -> "Booking":
        """Return a validated copy with `changes` applied."""
        return Booking.model_validate({**self.model_dump(), **changes})


class ExchangeRates(BaseModel):
    """'1 unit of currency = N MAD', platform margin already applied."""

    rates: dict[Currency, Decimal] = Field(default_factory=dict)
    margin: Decimal | None = None

    @field_validator("rates", mode="before")
    @classmethod
    def drop_unknown_currencies(cls, v: Any) -> Any:
        if isinstance(v, dict):
            known = {c.value for c in Currency}
            return {k: r for k, r in v.items() if k in known and r is not None}
        return v


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class CountdownView(BaseModel):
    deadline: datetime
    remaining_seconds: int
    is_urgent: bool
    is_expired: bool
    label: str  # HH:MM:SS


class LifecycleView(BaseModel):
    """What a given role is allowed to see of a booking, formatted for display."""

    id: str
    status: BookingStatus
    status_label: str
    status_tone: str
    role: Role
    currency: Currency
    start_date: date
    end_date: date
    rental_days: int
    car: CarSummary | None = None
    client: UserSummary | None = None
    owner: UserSummary | None = None
    delivery_code: str | None = None
    financials: dict[str, str] = Field(default_factory=dict)
    actions: list[Action]
    countdown: CountdownView | None = None


class DeliveryCodeResponse(BaseModel):
    booking_id: str
    code: str


class DeliveryCodeSubmit(BaseModel):
    code: str = Field(max_length=64)
