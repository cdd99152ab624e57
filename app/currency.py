from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from loguru import logger

from app.schemas import Currency, ExchangeRates, Role

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class CurrencyInfo:
    code: Currency
    symbol: str
    name: str
    suffix: bool = False  # "1000.00 DH" rather than "$1000.00"


CURRENCIES: dict[Currency, CurrencyInfo] = {
    Currency.MAD: CurrencyInfo(Currency.MAD, "DH", "Moroccan Dirham", suffix=True),
    Currency.USD: CurrencyInfo(Currency.USD, "$", "US Dollar"),
    Currency.EUR: CurrencyInfo(Currency.EUR, "€", "Euro"),
}

Rates = ExchangeRates | Mapping[str, Decimal | float | str] | None


@dataclass(frozen=True)
class DisplayContext:
    """Everything needed to present money to one viewer."""

    role: Role
    currency: Currency = Currency.MAD
    rates: ExchangeRates | None = None


def _as_decimal(value: Decimal | float | int | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _rate_for(rates: Rates, currency: Currency) -> Decimal | None:
    if rates is None:
        return None
    table = rates.rates if isinstance(rates, ExchangeRates) else rates
    raw = table.get(currency)
    if raw is None:
        return None
    try:
        rate = _as_decimal(raw)
    except InvalidOperation:
        return None
    return rate if rate > 0 else None


class CurrencyPresentationEngine:
    """
    Presents canonical MAD amounts. Owners and admins always get MAD since
    payouts settle in MAD; clients get the currency they picked.
    """

    def display_currency(self, role: Role, requested: Currency) -> Currency:
        if role == Role.CLIENT:
            return Currency(requested)
        return Currency.MAD

    def convert_from_mad(
        self, amount: Decimal | float | str, currency: Currency, rates: Rates
    ) -> Decimal | None:
        """MAD -> `currency`, rounded half away from zero. None without a rate."""
        amount = _as_decimal(amount)
        if currency == Currency.MAD:
            return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
        rate = _rate_for(rates, currency)
        if rate is None:
            return None
        return (amount / rate).quantize(CENTS, rounding=ROUND_HALF_UP)

    def convert_to_mad(
        self, amount: Decimal | float | str, currency: Currency, rates: Rates
    ) -> Decimal | None:
        amount = _as_decimal(amount)
        if currency == Currency.MAD:
            return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
        rate = _rate_for(rates, currency)
        if rate is None:
            return None
        return (amount * rate).quantize(CENTS, rounding=ROUND_HALF_UP)

    def format(self, amount: Decimal, currency: Currency) -> str:
        info = CURRENCIES[Currency(currency)]
        value = f"{amount.quantize(CENTS, rounding=ROUND_HALF_UP):.2f}"
        if info.suffix:
            return f"{value} {info.symbol}"
        return f"{info.symbol}{value}"

    def display(
        self,
        amount: Decimal | float | str,
        role: Role,
        currency: Currency = Currency.MAD,
        rates: Rates = None,
    ) -> str:
        target = self.display_currency(Role(role), currency)
        converted = self.convert_from_mad(amount, target, rates)
        if converted is None:
            logger.warning(
                "No exchange rate for {}, showing canonical MAD amount", target
            )
            return self.format(_as_decimal(amount), Currency.MAD)
        return self.format(converted, target)

    def display_all(
        self, amounts: Mapping[str, Decimal], ctx: DisplayContext
    ) -> dict[str, str]:
        return {
            name: self.display(value, ctx.role, ctx.currency, ctx.rates)
            for name, value in amounts.items()
        }

    def effective_currency(self, ctx: DisplayContext) -> Currency:
        """The currency the viewer actually gets, after the rate fallback."""
        target = self.display_currency(ctx.role, ctx.currency)
        if target != Currency.MAD and _rate_for(ctx.rates, target) is None:
            return Currency.MAD
        return target
