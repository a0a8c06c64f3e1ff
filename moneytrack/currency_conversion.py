from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
import json
import time
from typing import Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from moneytrack import settings
from moneytrack.errors import UpstreamUnavailable, ValidationError
from moneytrack.logging_config import get_logger

logger = get_logger(__name__)

RATE_BASE_CURRENCY = "TWD"

# TWD units per 1 unit of each currency. Every rate table shares this base.
FALLBACK_RATES: dict[str, Decimal] = {
    "TWD": Decimal("1"),
    "USD": Decimal("30"),
    "JPY": Decimal("0.2"),
    "EUR": Decimal("33"),
    "GBP": Decimal("38"),
    "CNY": Decimal("4.3"),
    "HKD": Decimal("3.8"),
}
TRACKED_CURRENCIES = ("USD", "JPY", "EUR", "GBP", "CNY", "HKD")


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as base currency per 1 unit of the currency.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or FALLBACK_RATES))

    def get_rates(self) -> dict[str, Decimal]:
        return dict(self.rates)

    def get_rate(self, currency: str) -> Decimal:
        return _lookup(self.get_rates(), currency)


class RateProviderUnavailable(UpstreamUnavailable):
    """Raised when a rate provider cannot fetch live rates."""


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float


@dataclass
class ERApiRateProvider:
    base_currency: str = RATE_BASE_CURRENCY
    base_url: str = "https://open.er-api.com/v6/latest"
    cache_ttl_seconds: int = settings.RATE_CACHE_TTL_SECONDS
    currencies: tuple = TRACKED_CURRENCIES
    timeout_seconds: int = 8
    _cache: Optional[CachedRates] = field(default=None, repr=False)

    def get_rates(self) -> Mapping[str, Decimal]:
        now = time.monotonic()
        cached = self._cache
        if cached and cached.expires_at > now:
            return cached.rates

        try:
            rates = self._fetch_rates()
        except RateProviderUnavailable as exc:
            if cached is None:
                raise
            logger.warning("exchange_rates_stale", error=str(exc))
            return cached.rates

        self._cache = CachedRates(rates=rates, expires_at=now + self.cache_ttl_seconds)
        logger.info("exchange_rates_updated", currencies=sorted(rates))
        return rates

    def get_rate(self, currency: str) -> Decimal:
        return _lookup(self.get_rates(), currency)

    def invalidate(self) -> None:
        self._cache = None

    def _fetch_rates(self) -> Mapping[str, Decimal]:
        base = normalize_currency(self.base_currency)
        url = f"{self.base_url}/{base}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Exchange rate API unavailable") from exc

        quoted = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(quoted, dict):
            raise RateProviderUnavailable("Exchange rate response missing rates")

        # The API quotes foreign units per base unit; invert them.
        parsed: dict[str, Decimal] = {base: Decimal("1")}
        for code in self.currencies:
            value = quoted.get(code)
            if not value:
                continue
            try:
                parsed[normalize_currency(code)] = Decimal("1") / Decimal(str(value))
            except (InvalidOperation, ValidationError):
                continue
        return parsed


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: StaticRateProvider | ERApiRateProvider
    fallback: StaticRateProvider

    def get_rates(self) -> dict[str, Decimal]:
        fallback_rates = self.fallback.get_rates()
        try:
            live_rates = self.primary.get_rates()
        except RateProviderUnavailable as exc:
            logger.warning("exchange_rates_fallback", error=str(exc))
            return fallback_rates
        return {**fallback_rates, **live_rates}

    def get_rate(self, currency: str) -> Decimal:
        return _lookup(self.get_rates(), currency)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_provider: StaticRateProvider | ERApiRateProvider | CompositeRateProvider | None = None,
) -> Decimal:
    """Convert a monetary amount through the base currency."""
    provider = rate_provider or StaticRateProvider()
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = _coerce_amount(amount)

    if normalized_source == normalized_target:
        return coerced_amount

    source_rate = provider.get_rate(normalized_source)
    target_rate = provider.get_rate(normalized_target)
    amount_in_base = coerced_amount * source_rate
    return amount_in_base / target_rate


def reporting_rates(
    reporting_currency: str,
    rate_provider: StaticRateProvider | ERApiRateProvider | CompositeRateProvider | None = None,
) -> dict[str, Decimal]:
    """Rate table rebased so the reporting currency is worth exactly 1."""
    provider = rate_provider or StaticRateProvider()
    rates = provider.get_rates()
    base = _lookup(rates, reporting_currency)
    return {currency: rate / base for currency, rate in rates.items()}


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValidationError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _lookup(rates: Mapping[str, Decimal], currency: str) -> Decimal:
    normalized = normalize_currency(currency)
    try:
        return rates[normalized]
    except KeyError as exc:
        raise ValidationError(f"Unsupported currency: {normalized}") from exc


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
