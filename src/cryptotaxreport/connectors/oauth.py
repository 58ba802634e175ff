from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..errors import AuthenticationFailure, ValidationError
from ..schemas import DateRange, OAuthSource, Transaction
from .base import FetchResult, HttpConnector, finalize

logger = logging.getLogger(__name__)

MAX_PAGES = 100

# Coinbase v2 transaction types; anything else falls back to the amount sign
COINBASE_TYPES = {
    "buy": "buy",
    "sell": "sell",
    "staking_reward": "stake-reward",
    "inflation_reward": "stake-reward",
    "interest": "stake-reward",
    "earn_payout": "stake-reward",
    "airdrop": "airdrop",
}
TRADE_TYPES = {"advanced_trade_fill", "trade"}
SKIPPED_TYPES = {"fiat_deposit", "fiat_withdrawal", "exchange_deposit", "exchange_withdrawal"}


def map_coinbase_transaction(row: Dict[str, Any], account_currency: str) -> Optional[Transaction]:
    """One Coinbase v2 transaction -> canonical movement (None when not a crypto movement)."""
    kind = str(row.get("type", "")).lower()
    if kind in SKIPPED_TYPES:
        return None
    amount = Decimal(str(row["amount"]["amount"]))
    if amount == 0:
        return None
    currency = str(row["amount"].get("currency") or account_currency).upper()
    if currency == "EUR":
        return None

    tx_type = COINBASE_TYPES.get(kind)
    if kind in TRADE_TYPES:
        tx_type = "buy" if amount > 0 else "sell"
    elif tx_type is None:
        tx_type = "transfer-in" if amount > 0 else "transfer-out"

    native = row.get("native_amount") or {}
    fiat_value = None
    if str(native.get("currency", "")).upper() == "EUR":
        fiat_value = abs(Decimal(str(native["amount"])))

    return Transaction(
        id=str(row["id"]),
        timestamp=datetime.fromisoformat(str(row["created_at"]).replace("Z", "+00:00")),
        asset=currency,
        type=tx_type,
        amount=abs(amount),
        fiat_value=fiat_value,
        source_ref="oauth:coinbase",
        price_source="source" if fiat_value is not None else None,
    )


class OAuthConnector(HttpConnector):
    """Coinbase account history through an OAuth access token (v2 API)."""

    data_source = "oauth"

    def fetch(self, payload: OAuthSource, date_range: Optional[DateRange] = None) -> FetchResult:
        if payload.platform != "coinbase":
            raise ValidationError(f"OAuth import is not available for {payload.platform}.")
        if payload.expires_at is not None and payload.expires_at <= datetime.now(timezone.utc):
            raise AuthenticationFailure("The exchange authorization has expired. Reconnect the account and retry.")

        headers = {"Authorization": f"Bearer {payload.access_token}", "CB-VERSION": "2024-01-01"}
        base = self.settings.coinbase_base_url.rstrip("/")

        out: List[Transaction] = []
        for account in self._paged(f"{base}/v2/accounts", headers):
            cur = account.get("currency")
            currency = str((cur.get("code") if isinstance(cur, dict) else cur) or "")
            for row in self._paged(f"{base}/v2/accounts/{account['id']}/transactions", headers):
                tx = map_coinbase_transaction(row, currency)
                if tx is not None:
                    out.append(tx)
        logger.info("Fetched %d movements from Coinbase (OAuth)", len(out))
        return FetchResult(transactions=finalize(out, date_range or payload.date_range))

    def _paged(self, url: str, headers: Dict[str, str]) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        base = self.settings.coinbase_base_url.rstrip("/")
        next_url: Optional[str] = url
        for _ in range(MAX_PAGES):
            if not next_url:
                break
            data = self._get_json(next_url, params={"limit": 100} if next_url == url else None,
                                  headers=headers, context="Coinbase")
            rows.extend(data.get("data", []))
            next_uri = (data.get("pagination") or {}).get("next_uri")
            next_url = f"{base}{next_uri}" if next_uri else None
        return rows
