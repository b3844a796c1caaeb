from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation

import httpx
from loguru import logger

from royalties.core.config import settings
from royalties.core.http import request_with_retry
from royalties.domain.money import normalize_currency
from royalties.errors import ExternalError

from .client import decode_json


class ExchangeRateClient:
    """Pure rate lookup against the catalog's exchange-rate service.

    Rates are cached per (base, quote, date) for the lifetime of the client.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        rates_path: str = "/rates",
        timeout: float = 10.0,
        attempts: int | None = None,
        backoff: tuple[float, ...] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or str(settings.exchange_rate_base_url)
        self.rates_path = rates_path
        self.attempts = attempts or settings.external_retry_attempts
        self.backoff = backoff if backoff is not None else settings.external_retry_schedule
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)
        self._cache: dict[tuple[str, str, date | None], Decimal] = {}

    def rate(self, base: str, quote: str, *, on: date | None = None) -> Decimal:
        base = normalize_currency(base)
        quote = normalize_currency(quote)
        if base == quote:
            return Decimal("1")
        key = (base, quote, on)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        params = {"base": base, "quote": quote}
        if on is not None:
            params["date"] = on.isoformat()
        logger.debug("Rate lookup {} params={}", self.rates_path, params)
        response = request_with_retry(
            self.client,
            "GET",
            self.rates_path,
            attempts=self.attempts,
            backoff=self.backoff,
            params=params,
        )
        payload = decode_json(response)
        raw_rate = payload.get("rate") if isinstance(payload, dict) else None
        try:
            value = Decimal(str(raw_rate)) if raw_rate is not None else None
        except InvalidOperation:
            value = None
        if value is None or not value.is_finite() or value <= 0:
            raise ExternalError(
                "Rate service returned an unusable rate",
                retriable=False,
                base=base,
                quote=quote,
                rate=raw_rate,
            )
        self._cache[key] = value
        return value

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "ExchangeRateClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
