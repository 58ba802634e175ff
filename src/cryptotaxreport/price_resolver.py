# price_resolver.py
"""
Historical EUR prices for assets.

Lookup order for (asset, UTC day):
  1) manual override ("BTC:2023-12-01" -> unit price) from the report request
  2) in-process cache
  3) EUR itself (1)
  4) CoinGecko /coins/{id}/history; if the exact day has no market data, the
     latest prior day within `fallback_days` is used (same idea as a previous
     business day for FX rates)

A failed lookup is not an exception: `resolve` returns a PriceUnavailable
value and the pipeline decides whether the run can complete.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

import requests

from .config import Settings, get_settings
from .connectors.base import check_response, with_retries
from .errors import RateLimited, UpstreamUnavailable
from .schemas import Transaction, TxType, to_utc

logger = logging.getLogger(__name__)

SYMBOL_TO_COINGECKO_ID = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "USDT": "tether",
    "USDC": "usd-coin",
    "DAI": "dai",
    "FDUSD": "first-digital-usd",
    "BNB": "binancecoin",
    "SOL": "solana",
    "XRP": "ripple",
    "ADA": "cardano",
    "DOGE": "dogecoin",
    "DOT": "polkadot",
    "MATIC": "matic-network",
    "POL": "polygon-ecosystem-token",
    "AVAX": "avalanche-2",
    "LINK": "chainlink",
    "LTC": "litecoin",
    "TRX": "tron",
    "ATOM": "cosmos",
    "UNI": "uniswap",
    "ARB": "arbitrum",
    "OP": "optimism",
    "SHIB": "shiba-inu",
    "XLM": "stellar",
}


@dataclass(frozen=True)
class PriceUnavailable:
    asset: str
    day: date
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": "price_unavailable", "asset": self.asset, "day": self.day.isoformat(), "reason": self.reason}


PriceResult = Union[Decimal, PriceUnavailable]


def override_key(asset: str, day: date) -> str:
    return f"{asset.upper()}:{day.isoformat()}"


def _with_fee_value(t: Transaction) -> Transaction:
    if t.fee_share is None or t.fee_amount is not None or t.fiat_value is None:
        return t
    return t.model_copy(update={"fee_amount": t.fiat_value * t.fee_share})


class PriceResolver:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        settings: Optional[Settings] = None,
        overrides: Optional[Mapping[str, Decimal]] = None,
        sleep: Callable[[float], None] = time.sleep,
        fallback_days: int = 3,
    ) -> None:
        self.session = session or requests.Session()
        self.settings = settings or get_settings()
        self.overrides: Dict[str, Decimal] = {k.upper(): Decimal(str(v)) for k, v in (overrides or {}).items()}
        self.fallback_days = fallback_days
        self._sleep = sleep
        self._cache: Dict[Tuple[str, date], Optional[Decimal]] = {}
        self._lock = threading.Lock()

    def resolve(self, asset: str, timestamp: datetime) -> PriceResult:
        price, _ = self._lookup(asset.upper(), to_utc(timestamp).date())
        return price

    def _lookup(self, asset: str, day: date) -> Tuple[PriceResult, str]:
        key = override_key(asset, day)
        if key in self.overrides:
            return self.overrides[key], "override"
        if asset == "EUR":
            return Decimal("1"), "resolver"

        with self._lock:
            if (asset, day) in self._cache:
                cached = self._cache[(asset, day)]
                if cached is None:
                    return PriceUnavailable(asset, day, "no market data"), "resolver"
                return cached, "resolver"

        coin_id = SYMBOL_TO_COINGECKO_ID.get(asset)
        if coin_id is None:
            return PriceUnavailable(asset, day, "asset not supported by the price provider"), "resolver"

        try:
            price = self._fetch_with_fallback(coin_id, day)
        except (RateLimited, UpstreamUnavailable) as e:
            # transient: don't cache, a later run may succeed
            logger.warning("Price lookup for %s on %s failed: %s", asset, day, e.detail or e.message)
            return PriceUnavailable(asset, day, e.message), "resolver"

        with self._lock:
            self._cache[(asset, day)] = price
        if price is None:
            return PriceUnavailable(asset, day, "no market data"), "resolver"
        return price, "resolver"

    def _fetch_with_fallback(self, coin_id: str, day: date) -> Optional[Decimal]:
        for back in range(self.fallback_days + 1):
            price = self._fetch(coin_id, day - timedelta(days=back))
            if price is not None:
                return price
        return None

    def _fetch(self, coin_id: str, day: date) -> Optional[Decimal]:
        url = f"{self.settings.coingecko_base_url.rstrip('/')}/coins/{coin_id}/history"
        params = {"date": day.strftime("%d-%m-%Y"), "localization": "false"}
        headers = {"accept": "application/json"}
        if self.settings.coingecko_api_key:
            headers["x-cg-demo-api-key"] = self.settings.coingecko_api_key

        def call():
            try:
                resp = self.session.get(url, params=params, headers=headers, timeout=self.settings.http_timeout)
            except requests.RequestException as e:
                raise UpstreamUnavailable("The price provider is unreachable.", detail=str(e)) from e
            check_response(resp, "Price provider")
            return resp.json()

        data = with_retries(
            call,
            attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay,
            backoff=self.settings.retry_backoff,
            context=f"CoinGecko {coin_id}",
            sleep=self._sleep,
        )
        eur = ((data or {}).get("market_data") or {}).get("current_price", {}).get("eur")
        return Decimal(str(eur)) if eur is not None else None

    def price_transactions(self, transactions: List[Transaction]) -> Tuple[List[Transaction], List[PriceUnavailable]]:
        """
        Fill `fiat_value` (amount x unit price) where the source left it empty.
        `fee` movements don't need a value (zero proceeds). A `fee_share` turns into
        `fee_amount` once the value is known. Returns the priced list in the same
        order plus every missing (asset, day).
        """
        priced: List[Transaction] = []
        missing: List[PriceUnavailable] = []
        seen_missing = set()
        for t in transactions:
            if t.fiat_value is not None or t.type is TxType.FEE:
                priced.append(_with_fee_value(t))
                continue
            price, source = self._lookup(t.asset, t.timestamp.date())
            if isinstance(price, PriceUnavailable):
                if (price.asset, price.day) not in seen_missing:
                    seen_missing.add((price.asset, price.day))
                    missing.append(price)
                priced.append(t)
                continue
            priced.append(_with_fee_value(
                t.model_copy(update={"fiat_value": t.amount * price, "price_source": source})
            ))
        return priced, missing
