from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation

import requests

from stockcost.domain.errors import FxUnavailableError, ValidationError
from stockcost.config import SUPPORTED_CURRENCIES

log = logging.getLogger("stockcost.fx")

PRIMARY_URL = "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@latest/v1/currencies/{base}.json"
FALLBACK_URL = "https://latest.currency-api.pages.dev/v1/currencies/{base}.json"


class FxService:
    """Quotes ``<currency> -> local currency`` rates, cached per day."""

    def __init__(self, repo, local_currency: str = "ARS"):
        self.repo = repo
        self.local_currency = local_currency.upper()

    def _fetch_json(self, url: str) -> dict:
        r = requests.get(url, timeout=10)
        r.raise_for_status()
        return r.json()

    def _extract_rate(self, data: dict, base: str) -> Decimal:
        # common structure: {"date":"YYYY-MM-DD","usd":{"ars":1450.12, ...}}
        target = self.local_currency.lower()
        block = data.get(base)
        if isinstance(block, dict) and block.get(target) is not None:
            return self._validate_rate(block[target])

        for _k, v in data.items():
            if isinstance(v, dict) and target in v:
                return self._validate_rate(v[target])

        raise FxUnavailableError(f"FX API response missing {self.local_currency} rate. Raw: {data}")

    def _validate_rate(self, value: object) -> Decimal:
        try:
            rate = Decimal(str(value))
        except InvalidOperation as e:
            raise FxUnavailableError(f"FX rate is not a number. Received: {value!r}") from e
        if not rate.is_finite() or rate <= 0:
            raise FxUnavailableError(f"FX rate must be > 0. Received: {rate}")
        return rate

    def get_rate(self, currency: str, d: date | None = None) -> Decimal:
        currency = (currency or "").strip().upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency: {currency}", field="currency")
        if currency == self.local_currency:
            return Decimal("1")

        d_iso = (d or date.today()).isoformat()
        cached = self.repo.get_fx_rate(d_iso, currency)
        if cached is not None:
            return cached

        base = currency.lower()
        last_err = None
        for url in (PRIMARY_URL.format(base=base), FALLBACK_URL.format(base=base)):
            try:
                data = self._fetch_json(url)
                rate = self._extract_rate(data, base)
                self.repo.set_fx_rate(d_iso, currency, rate)
                log.info("fx_rate_fetched currency=%s date=%s rate=%s", currency, d_iso, rate)
                return rate
            except (requests.RequestException, ValueError, FxUnavailableError) as e:
                last_err = e
                log.warning("fx_source_failed url=%s error=%s", url, e)

        latest = self.repo.get_latest_fx_rate(currency)
        if latest is not None:
            log.warning("fx_fallback_cached currency=%s rate=%s", currency, latest)
            self.repo.set_fx_rate(d_iso, currency, latest)
            return latest

        raise FxUnavailableError(
            f"FX fetch failed for {currency} and no cached rate available. Last error: {last_err}",
            currency=currency,
        )

    def get_today_rate(self, currency: str) -> Decimal:
        return self.get_rate(currency, date.today())
