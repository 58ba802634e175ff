# exchange.py
"""
Exchange history through read-only API keys.

Supported platforms:
  - binance: HMAC-SHA256 signed REST calls (X-MBX-APIKEY header). Trades are
    pulled per trading pair, so the pairs to query are derived from balances,
    deposits and withdrawals intersected with the live symbol list.
    myTrades is paged by trade id from the first fill; deposit and withdrawal
    history is walked in 90-day windows.
  - coinbase: Advanced Trade fills, HMAC-SHA256 CB-ACCESS-* headers.
Other platforms are rejected with a hint to upload a CSV export instead.

The API keys `test` / `demo` return a fixed sample ledger without touching
the network, so the whole flow can be tried end to end.

A trade against a crypto quote (BTCUSDT) is two movements: the base asset is
bought and the quote asset is disposed of (or the reverse). Both legs are
emitted; EUR-quoted trades carry their fiat value directly, anything else is
left for the price resolver. A commission paid in another fiat currency (USD
on Coinbase) travels as a share of the fill and is valued with it.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Set
from urllib.parse import urlencode

import requests

from ..errors import AuthenticationFailure, RateLimited, UpstreamUnavailable, ValidationError
from ..schemas import ApiKeySource, DateRange, Transaction
from .base import FetchResult, HttpConnector, check_response, finalize

logger = logging.getLogger(__name__)

DEMO_KEYS = {"test", "demo"}
FIAT = {"EUR", "USD", "GBP", "TRY", "BRL", "AUD"}

# Binance error codes that mean "bad/insufficient key", never worth a retry
BINANCE_AUTH_CODES = {-2015, -1022, -2014, -2008}
BINANCE_RATE_CODES = {-1003, -1015}
BINANCE_INVALID_SYMBOL = -1121
BINANCE_QUOTES = ["EUR", "USDT", "USDC", "FDUSD", "BTC", "ETH", "BNB"]
MY_TRADES_LIMIT = 1000
# deposit/withdrawal history accepts at most 90 days per call
HISTORY_WINDOW_MS = 90 * 24 * 3600 * 1000
BINANCE_HISTORY_START = date(2017, 7, 1)


def _ms(day, end: bool = False) -> int:
    dt = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    if end:
        dt += timedelta(days=1)
    return int(dt.timestamp() * 1000)


def trade_legs(
    trade_id: str,
    ts: datetime,
    is_buy: bool,
    base: str,
    quote: str,
    qty: Decimal,
    quote_qty: Decimal,
    commission: Decimal,
    commission_asset: str,
    source_ref: str,
) -> List[Transaction]:
    """Split one exchange fill into canonical movements."""
    base, quote, commission_asset = base.upper(), quote.upper(), (commission_asset or "").upper()
    eur_quoted = quote == "EUR"
    fee_eur: Optional[Decimal] = None
    fee_share: Optional[Decimal] = None
    if commission > 0 and commission_asset == "EUR":
        fee_eur = commission
    elif commission > 0 and commission_asset in FIAT:
        if commission_asset == quote and quote_qty > 0:
            # valued in EUR together with the fill by the price resolver
            fee_share = commission / quote_qty
        else:
            logger.warning(
                "Fill %s: commission of %s %s cannot be valued and is ignored", trade_id, commission, commission_asset
            )

    legs = [
        Transaction(
            id=trade_id,
            timestamp=ts,
            asset=base,
            type="buy" if is_buy else "sell",
            amount=qty,
            fiat_value=quote_qty if eur_quoted else None,
            fee_amount=fee_eur,
            fee_share=fee_share,
            source_ref=source_ref,
            price_source="source" if eur_quoted else None,
        )
    ]
    if quote not in FIAT and quote_qty > 0:
        legs.append(
            Transaction(
                id=f"{trade_id}:quote",
                timestamp=ts,
                asset=quote,
                type="sell" if is_buy else "buy",
                amount=quote_qty,
                source_ref=source_ref,
            )
        )
    if commission > 0 and commission_asset and commission_asset not in FIAT:
        legs.append(
            Transaction(
                id=f"{trade_id}:fee",
                timestamp=ts,
                asset=commission_asset,
                type="fee",
                amount=commission,
                source_ref=source_ref,
            )
        )
    return legs


def demo_ledger(source_ref: str = "api-key:demo") -> List[Transaction]:
    """Sample account history anchored in the previous calendar year."""
    start = datetime(datetime.now(timezone.utc).year - 1, 1, 1, 9, 30, tzinfo=timezone.utc)
    rows = [
        ("deposit-1", 10, "transfer-in", "USDT", "10000", "10000", None),
        ("trade-1", 30, "buy", "BTC", "0.5", "17500", "8.75"),
        ("trade-2", 90, "buy", "ETH", "5", "10000", "5"),
        ("trade-3", 180, "sell", "BTC", "0.2", "8400", "4.2"),
        ("trade-4", 270, "sell", "ETH", "2", "5000", "2.5"),
        ("withdrawal-1", 300, "transfer-out", "USDT", "3000", "3000", "1"),
    ]
    return [
        Transaction(
            id=tx_id,
            timestamp=start + timedelta(days=offset),
            type=kind,
            asset=asset,
            amount=Decimal(amount),
            fiat_value=Decimal(value),
            fee_amount=Decimal(fee) if fee else None,
            source_ref=source_ref,
            price_source="source",
        )
        for tx_id, offset, kind, asset, amount, value, fee in rows
    ]


class BinanceApi(HttpConnector):
    def _check(self, resp: requests.Response, context: str) -> None:
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            code = body.get("code") if isinstance(body, dict) else None
            if code in BINANCE_AUTH_CODES:
                raise AuthenticationFailure(
                    "Binance rejected the API key. Check the key, secret and read permissions.",
                    detail=str(body),
                )
            if code in BINANCE_RATE_CODES:
                raise RateLimited(detail=str(body))
            if code == BINANCE_INVALID_SYMBOL:
                raise ValidationError(f"Invalid symbol: {body.get('msg')}")
        check_response(resp, context)

    def _signed(self, path: str, api_key: str, api_secret: str, params: Optional[Dict[str, Any]] = None) -> Any:
        def sign(p: Dict[str, Any], h: Dict[str, str]) -> None:
            p["timestamp"] = int(time.time() * 1000)
            p["recvWindow"] = 10000
            query = urlencode(p)
            p["signature"] = hmac.new(api_secret.encode(), query.encode(), hashlib.sha256).hexdigest()
            h["X-MBX-APIKEY"] = api_key

        return self._get_json(
            f"{self.settings.binance_base_url}{path}", params=params, context="Binance", prepare=sign
        )

    def test_connection(self, api_key: str, api_secret: str) -> bool:
        try:
            self._signed("/api/v3/account", api_key, api_secret)
        except AuthenticationFailure:
            return False
        return True

    def _windows(self, date_range: Optional[DateRange]) -> Iterator[Dict[str, int]]:
        """
        startTime/endTime pairs covering the range, at most 90 days each.
        Without a range the walk starts at BINANCE_HISTORY_START.
        """
        start = _ms(date_range.start) if date_range and date_range.start else _ms(BINANCE_HISTORY_START)
        end = _ms(date_range.end, end=True) if date_range and date_range.end else int(time.time() * 1000)
        while start < end:
            stop = min(start + HISTORY_WINDOW_MS, end)
            yield {"startTime": start, "endTime": stop - 1}
            start = stop

    def _history(self, path: str, api_key: str, api_secret: str, date_range: Optional[DateRange]) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for window in self._windows(date_range):
            rows.extend(self._signed(path, api_key, api_secret, dict(window)))
        return rows

    def _trades(self, symbol: str, api_key: str, api_secret: str) -> List[Dict[str, Any]]:
        """Every fill for one symbol, oldest first, paging by trade id."""
        trades: List[Dict[str, Any]] = []
        from_id = 0
        while True:
            page = self._signed(
                "/api/v3/myTrades", api_key, api_secret,
                {"symbol": symbol, "fromId": from_id, "limit": MY_TRADES_LIMIT},
            )
            trades.extend(page)
            if len(page) < MY_TRADES_LIMIT:
                return trades
            from_id = int(page[-1]["id"]) + 1

    def fetch_transactions(self, api_key: str, api_secret: str, date_range: Optional[DateRange]) -> List[Transaction]:
        account = self._signed("/api/v3/account", api_key, api_secret)
        held = {
            b["asset"]
            for b in account.get("balances", [])
            if Decimal(str(b.get("free", "0"))) > 0 or Decimal(str(b.get("locked", "0"))) > 0
        }

        ref = "api-key:binance"
        out: List[Transaction] = []
        assets: Set[str] = set(held)

        for d in self._history("/sapi/v1/capital/deposit/hisrec", api_key, api_secret, date_range):
            if int(d.get("status", 0)) != 1:
                continue
            assets.add(d["coin"])
            out.append(Transaction(
                id=f"deposit-{d.get('txId') or d.get('id')}",
                timestamp=datetime.fromtimestamp(int(d["insertTime"]) / 1000, tz=timezone.utc),
                type="transfer-in", asset=d["coin"], amount=Decimal(str(d["amount"])), source_ref=ref,
            ))

        for w in self._history("/sapi/v1/capital/withdraw/history", api_key, api_secret, date_range):
            if int(w.get("status", 0)) != 6:  # 6 == completed
                continue
            assets.add(w["coin"])
            ts = datetime.strptime(w["applyTime"], "%Y-%m-%d %H:%M:%S").replace(tzinfo=timezone.utc)
            out.append(Transaction(
                id=f"withdrawal-{w['id']}", timestamp=ts, type="transfer-out",
                asset=w["coin"], amount=Decimal(str(w["amount"])), source_ref=ref,
            ))
            fee = Decimal(str(w.get("transactionFee") or "0"))
            if fee > 0:
                out.append(Transaction(
                    id=f"withdrawal-{w['id']}:fee", timestamp=ts, type="fee",
                    asset=w["coin"], amount=fee, source_ref=ref,
                ))

        info = self._get_json(f"{self.settings.binance_base_url}/api/v3/exchangeInfo", context="Binance")
        pairs = {}
        for s in info.get("symbols", []):
            if s.get("status") != "TRADING":
                continue
            base, quote = s["baseAsset"], s["quoteAsset"]
            if quote in BINANCE_QUOTES and (base in assets or quote in assets):
                pairs[s["symbol"]] = (base, quote)
        logger.info("Binance: checking %d trading pairs for %d assets", len(pairs), len(assets))

        # myTrades rejects time windows wider than 24h, so trades are walked by id
        # from the first fill; finalize() applies the date range afterwards
        for symbol in sorted(pairs):
            base, quote = pairs[symbol]
            try:
                trades = self._trades(symbol, api_key, api_secret)
            except ValidationError:
                continue  # delisted between exchangeInfo and myTrades
            for t in trades:
                out.extend(trade_legs(
                    trade_id=f"trade-{symbol}-{t['id']}",
                    ts=datetime.fromtimestamp(int(t["time"]) / 1000, tz=timezone.utc),
                    is_buy=bool(t["isBuyer"]),
                    base=base,
                    quote=quote,
                    qty=Decimal(str(t["qty"])),
                    quote_qty=Decimal(str(t["quoteQty"])),
                    commission=Decimal(str(t.get("commission") or "0")),
                    commission_asset=t.get("commissionAsset") or "",
                    source_ref=ref,
                ))
        return out


class CoinbaseApi(HttpConnector):
    BROKERAGE = "/api/v3/brokerage"
    MAX_PAGES = 100

    def _signed(self, path: str, api_key: str, api_secret: str, params: Optional[Dict[str, Any]] = None) -> Any:
        def sign(p: Dict[str, Any], h: Dict[str, str]) -> None:
            timestamp = str(int(time.time()))
            full_path = f"{self.BROKERAGE}{path}" + (f"?{urlencode(p)}" if p else "")
            message = f"{timestamp}GET{full_path}"
            h["CB-ACCESS-KEY"] = api_key
            h["CB-ACCESS-SIGN"] = hmac.new(api_secret.encode(), message.encode(), hashlib.sha256).hexdigest()
            h["CB-ACCESS-TIMESTAMP"] = timestamp
            h["CB-VERSION"] = "2023-01-01"

        return self._get_json(
            f"{self.settings.coinbase_base_url}{self.BROKERAGE}{path}",
            params=params,
            context="Coinbase",
            prepare=sign,
        )

    def test_connection(self, api_key: str, api_secret: str) -> bool:
        try:
            self._signed("/accounts", api_key, api_secret)
        except AuthenticationFailure:
            return False
        return True

    def fetch_transactions(self, api_key: str, api_secret: str, date_range: Optional[DateRange]) -> List[Transaction]:
        params: Dict[str, Any] = {"limit": 250}
        if date_range and date_range.start:
            params["start_sequence_timestamp"] = f"{date_range.start.isoformat()}T00:00:00Z"
        if date_range and date_range.end:
            params["end_sequence_timestamp"] = f"{date_range.end.isoformat()}T23:59:59Z"

        out: List[Transaction] = []
        for _ in range(self.MAX_PAGES):
            data = self._signed("/orders/historical/fills", api_key, api_secret, dict(params))
            for fill in data.get("fills", []):
                base, _, quote = fill["product_id"].partition("-")
                size = Decimal(str(fill["size"]))
                price = Decimal(str(fill["price"]))
                out.extend(trade_legs(
                    trade_id=f"fill-{fill['trade_id']}",
                    ts=datetime.fromisoformat(fill["trade_time"].replace("Z", "+00:00")),
                    is_buy=str(fill["side"]).upper() == "BUY",
                    base=base,
                    quote=quote,
                    qty=size,
                    quote_qty=size * price,
                    commission=Decimal(str(fill.get("commission") or "0")),
                    commission_asset=quote,
                    source_ref="api-key:coinbase",
                ))
            cursor = data.get("cursor")
            if not cursor:
                break
            params["cursor"] = cursor
        return out


class ExchangeConnector(HttpConnector):
    data_source = "api-key"

    def _client(self, platform: str) -> HttpConnector:
        if platform == "binance":
            return BinanceApi(self.session, self.settings, self._sleep)
        if platform == "coinbase":
            return CoinbaseApi(self.session, self.settings, self._sleep)
        raise ValidationError(
            f"API-key import is not available for {platform} yet. Upload a CSV export instead."
        )

    def test_connection(self, platform: str, api_key: str, api_secret: str, passphrase: Optional[str] = None) -> bool:
        if api_key in DEMO_KEYS:
            return True
        try:
            return self._client(platform).test_connection(api_key, api_secret)
        except (RateLimited, UpstreamUnavailable):
            logger.warning("Connection test for %s could not reach the exchange", platform)
            return False

    def fetch(self, payload: ApiKeySource, date_range: Optional[DateRange] = None) -> FetchResult:
        date_range = date_range or payload.date_range
        if payload.api_key in DEMO_KEYS:
            return FetchResult(transactions=finalize(demo_ledger(f"api-key:{payload.platform}:demo"), date_range))
        client = self._client(payload.platform)
        txs = client.fetch_transactions(payload.api_key, payload.api_secret, date_range)
        logger.info("Fetched %d movements from %s", len(txs), payload.platform)
        return FetchResult(transactions=finalize(txs, date_range))
