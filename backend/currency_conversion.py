from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
import json
import threading
import time
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from backend.errors import ProviderFetchFailure, RateUnavailable
from backend.logging_config import get_logger

logger = get_logger("currency")

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "NZD": Decimal("1.64"),
    "CHF": Decimal("0.88"),
    "SEK": Decimal("10.45"),
    "BYN": Decimal("3.27"),
    "RUB": Decimal("92.10"),
}

FetchJson = Callable[[str, float], Any]


@dataclass(frozen=True)
class ExchangeRate:
    """Units of ``code`` bought by one unit of the provider's base currency.

    ``scale`` keeps the provider's quoting unit (e.g. 100 for JPY at NBRB);
    ``rate`` is already normalized by it.
    """

    code: str
    rate: Decimal
    scale: int = 1


@dataclass(frozen=True)
class RateSnapshot:
    base: str
    rates: Mapping[str, ExchangeRate]
    fetched_at: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", MappingProxyType(dict(self.rates)))

    def __contains__(self, code: object) -> bool:
        return code in self.rates

    def rate_of(self, code: str) -> Decimal:
        entry = self.rates.get(code)
        if entry is None:
            raise RateUnavailable(code)
        return entry.rate

    def as_dict(self) -> dict[str, Decimal]:
        return {code: entry.rate for code, entry in sorted(self.rates.items())}


class RateProvider(Protocol):
    base_currency: str

    def fetch_rates(self) -> Iterable[ExchangeRate]:
        ...


def fetch_json(url: str, timeout: float) -> Any:
    try:
        with urlopen(url, timeout=timeout) as response:
            return json.load(response)
    except (HTTPError, URLError, TimeoutError, OSError, json.JSONDecodeError) as exc:
        raise ProviderFetchFailure(f"Rate provider unavailable: {exc}") from exc


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 unit of ``base_currency``.
    """

    rates: Mapping[str, Decimal] = None
    base_currency: str = "USD"

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def fetch_rates(self) -> list[ExchangeRate]:
        return [
            ExchangeRate(code=code, rate=_coerce_amount(rate))
            for code, rate in self.rates.items()
        ]


@dataclass
class ExchangeRateApiProvider:
    """exchangerate-api.com style provider: ``{"conversion_rates": {code: rate}}``."""

    api_key: str | None = None
    base_currency: str = "USD"
    base_url: str = "https://v6.exchangerate-api.com/v6"
    timeout: float = 10
    attempts: int = 3
    retry_delay: float = 2
    fetch: FetchJson = fetch_json
    sleep: Callable[[float], None] = time.sleep

    @property
    def url(self) -> str:
        root = self.base_url.rstrip("/")
        if self.api_key:
            return f"{root}/{self.api_key}/latest/{self.base_currency}"
        return f"{root}/latest/{self.base_currency}"

    def fetch_rates(self) -> list[ExchangeRate]:
        return _fetch_with_retries(self, self.url, self.parse)

    def parse(self, payload: Any) -> list[ExchangeRate]:
        rates = payload.get("conversion_rates") if isinstance(payload, dict) else None
        if rates is None and isinstance(payload, dict):
            rates = payload.get("rates")
        if not isinstance(rates, dict) or not rates:
            raise ProviderFetchFailure("Rate provider response missing conversion_rates")

        parsed = []
        for code, value in rates.items():
            rate = _to_decimal(value)
            if rate is None:
                logger.warning("rate_unparseable", extra={"code": code, "value": value})
                continue
            parsed.append(ExchangeRate(code=str(code), rate=rate))
        return parsed


@dataclass
class NbrbRateProvider:
    """National Bank of Belarus style provider.

    The response is a list of ``{Cur_Abbreviation, Cur_Scale, Cur_OfficialRate}``
    records, each quoting how many BYN buy ``Cur_Scale`` units of the currency.
    """

    base_currency: str = "BYN"
    url: str = "https://api.nbrb.by/exrates/rates?periodicity=0"
    timeout: float = 10
    attempts: int = 3
    retry_delay: float = 2
    fetch: FetchJson = fetch_json
    sleep: Callable[[float], None] = time.sleep

    def fetch_rates(self) -> list[ExchangeRate]:
        return _fetch_with_retries(self, self.url, self.parse)

    def parse(self, payload: Any) -> list[ExchangeRate]:
        if not isinstance(payload, list) or not payload:
            raise ProviderFetchFailure("Rate provider response is not a rate list")

        parsed = []
        for record in payload:
            if not isinstance(record, dict):
                continue
            code = record.get("Cur_Abbreviation")
            official_rate = _to_decimal(record.get("Cur_OfficialRate"))
            try:
                scale = int(record.get("Cur_Scale") or 1)
            except (TypeError, ValueError):
                scale = 0
            if not code or official_rate is None or official_rate <= 0 or scale <= 0:
                logger.warning("rate_record_skipped", extra={"record": record})
                continue
            parsed.append(
                ExchangeRate(code=str(code), rate=Decimal(scale) / official_rate, scale=scale)
            )
        return parsed


class RateCache:
    """Process-wide table of exchange rates behind a TTL window.

    Warm lookups read the current snapshot reference without locking. A miss
    or expiry refreshes the whole table under a lock, so concurrent callers
    share one provider request. When a refresh fails the previous snapshot is
    served, and further refreshes wait out ``failure_backoff_seconds``.
    """

    def __init__(
        self,
        provider: RateProvider,
        ttl_seconds: float = 60 * 60,
        failure_backoff_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._ttl = ttl_seconds
        self._failure_backoff = failure_backoff_seconds
        self._clock = clock
        self._snapshot: RateSnapshot | None = None
        self._last_failure_at: float | None = None
        self._refresh_lock = threading.Lock()

    @property
    def current(self) -> RateSnapshot | None:
        return self._snapshot

    def get_rate(self, code: str) -> Decimal:
        normalized = normalize_currency(code)
        try:
            snapshot = self.snapshot()
        except ProviderFetchFailure as exc:
            raise RateUnavailable(normalized, str(exc)) from exc
        return snapshot.rate_of(normalized)

    def snapshot(self) -> RateSnapshot:
        """Return a snapshot, refreshing it first if it is missing or expired.

        Raises ProviderFetchFailure only when no snapshot was ever fetched.
        """
        snapshot = self._snapshot
        if self._is_fresh(snapshot, self._clock()):
            return snapshot
        return self._refresh(seen=snapshot, force=False)

    def refresh(self, force: bool = True) -> RateSnapshot:
        return self._refresh(seen=self._snapshot, force=force)

    def _is_fresh(self, snapshot: RateSnapshot | None, now: float) -> bool:
        return snapshot is not None and now - snapshot.fetched_at < self._ttl

    def _in_backoff(self, now: float) -> bool:
        return (
            self._last_failure_at is not None
            and now - self._last_failure_at < self._failure_backoff
        )

    def _refresh(self, seen: RateSnapshot | None, force: bool) -> RateSnapshot:
        with self._refresh_lock:
            current = self._snapshot
            if current is not seen:
                # Refreshed by another caller while this one waited on the lock.
                return current

            now = self._clock()
            if not force:
                if self._is_fresh(current, now):
                    return current
                if self._in_backoff(now):
                    if current is not None:
                        return current
                    raise ProviderFetchFailure("Rate provider recently failed; no rates cached")

            try:
                fresh = self._fetch_snapshot()
            except ProviderFetchFailure as exc:
                self._last_failure_at = self._clock()
                if current is None:
                    logger.error("rate_refresh_failed_no_snapshot", extra={"error": str(exc)})
                    raise
                logger.warning(
                    "rate_refresh_failed_serving_stale",
                    extra={
                        "error": str(exc),
                        "snapshot_age_seconds": round(now - current.fetched_at, 1),
                    },
                )
                return current

            self._snapshot = fresh
            self._last_failure_at = None
            logger.info(
                "rate_cache_refreshed",
                extra={"base": fresh.base, "currencies": len(fresh.rates)},
            )
            return fresh

    def _fetch_snapshot(self) -> RateSnapshot:
        accepted: dict[str, ExchangeRate] = {}
        for entry in self._provider.fetch_rates():
            code = (entry.code or "").strip().upper()
            if not code or entry.rate is None or entry.rate <= 0:
                logger.warning("rate_discarded", extra={"code": entry.code, "rate": entry.rate})
                continue
            accepted[code] = entry if entry.code == code else replace(entry, code=code)
        if not accepted:
            raise ProviderFetchFailure("Rate provider returned no usable rates")

        base = normalize_currency(self._provider.base_currency)
        accepted.setdefault(base, ExchangeRate(code=base, rate=Decimal("1")))
        return RateSnapshot(base=base, rates=accepted, fetched_at=self._clock())


@dataclass(frozen=True)
class CurrencyConverter:
    cache: RateCache

    def convert(
        self,
        amount: Decimal | int | float | str,
        source_currency: str,
        target_currency: str,
        snapshot: RateSnapshot | None = None,
    ) -> Decimal:
        """Convert an amount between currencies without rounding.

        Both rates come from one snapshot; pass ``snapshot`` to pin it across
        several conversions.
        """
        coerced_amount = _coerce_amount(amount)
        # Identity holds for any code, including ones no provider would accept.
        if (source_currency or "").strip().upper() == (target_currency or "").strip().upper():
            return coerced_amount

        normalized_source = normalize_currency(source_currency)
        normalized_target = normalize_currency(target_currency)

        if snapshot is None:
            try:
                snapshot = self.cache.snapshot()
            except ProviderFetchFailure as exc:
                raise RateUnavailable(normalized_source, str(exc)) from exc

        source_rate = snapshot.rate_of(normalized_source)
        target_rate = snapshot.rate_of(normalized_target)
        return coerced_amount * (target_rate / source_rate)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _fetch_with_retries(provider, url: str, parse: Callable[[Any], list[ExchangeRate]]) -> list[ExchangeRate]:
    last_error: ProviderFetchFailure | None = None
    attempts = max(1, int(provider.attempts))
    for attempt in range(1, attempts + 1):
        try:
            return parse(provider.fetch(url, provider.timeout))
        except ProviderFetchFailure as exc:
            last_error = exc
            logger.warning(
                "rate_fetch_attempt_failed",
                extra={"attempt": attempt, "attempts": attempts, "error": str(exc)},
            )
            if attempt < attempts:
                provider.sleep(provider.retry_delay)
    raise ProviderFetchFailure(
        f"Rate provider failed after {attempts} attempts: {last_error}"
    ) from last_error


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
