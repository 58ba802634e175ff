# wallet.py
"""
On-chain wallet history.

EVM chains go through the Etherscan v2 multichain API (one endpoint, `chainid`
selects the network); Bitcoin goes through the Blockstream Esplora API.
Only native-coin movements are imported: incoming value becomes transfer-in,
outgoing value transfer-out, and gas / miner fees paid by the wallet become
separate `fee` transactions. Fiat values are left empty for the price
resolver to fill.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..errors import AuthenticationFailure, RateLimited, UpstreamUnavailable
from ..schemas import DateRange, Transaction, WalletSource
from .base import FetchResult, HttpConnector, finalize

logger = logging.getLogger(__name__)

WEI = Decimal(10) ** 18
SATOSHI = Decimal(10) ** 8

EVM_CHAIN_IDS = {
    "ethereum": 1,
    "optimism": 10,
    "bsc": 56,
    "polygon": 137,
    "base": 8453,
    "arbitrum": 42161,
}

NATIVE_ASSET = {
    "ethereum": "ETH",
    "optimism": "ETH",
    "arbitrum": "ETH",
    "base": "ETH",
    "bsc": "BNB",
    "polygon": "POL",
    "bitcoin": "BTC",
}

# Esplora returns 25 confirmed txs per page
BTC_PAGE_SIZE = 25
BTC_MAX_PAGES = 200


def _ts(seconds: Any) -> datetime:
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


class WalletConnector(HttpConnector):
    data_source = "wallet"

    def fetch(self, payload: WalletSource, date_range: Optional[DateRange] = None) -> FetchResult:
        if payload.chain == "bitcoin":
            txs = self._fetch_bitcoin(payload.address)
        else:
            txs = self._fetch_evm(payload.address, payload.chain)
        logger.info("Fetched %d %s movements for %s", len(txs), payload.chain, payload.address)
        return FetchResult(transactions=finalize(txs, date_range or payload.date_range))

    # ---------- EVM ----------

    def _fetch_evm(self, address: str, chain: str) -> List[Transaction]:
        params = {
            "chainid": EVM_CHAIN_IDS[chain],
            "module": "account",
            "action": "txlist",
            "address": address,
            "startblock": 0,
            "endblock": 99999999,
            "sort": "asc",
            "apikey": self.settings.etherscan_api_key,
        }
        data = self._get_json(self.settings.etherscan_base_url, params=params, context="Block explorer")
        return self.parse_evm(address, chain, data)

    @staticmethod
    def parse_evm(address: str, chain: str, data: Dict[str, Any]) -> List[Transaction]:
        status = str(data.get("status", ""))
        message = str(data.get("message", ""))
        result = data.get("result")
        if status != "1":
            if "No transactions found" in message:
                return []
            text = f"{message} {result if isinstance(result, str) else ''}".lower()
            if "rate limit" in text:
                raise RateLimited(detail=text)
            if "api key" in text:
                raise AuthenticationFailure("The block explorer rejected the API key.", detail=text)
            raise UpstreamUnavailable("The block explorer returned an error.", detail=text)

        me = address.lower()
        asset = NATIVE_ASSET[chain]
        out: List[Transaction] = []
        for row in result or []:
            ts = _ts(row["timeStamp"])
            tx_hash = row["hash"]
            value = Decimal(str(row.get("value") or "0")) / WEI
            failed = str(row.get("isError", "0")) == "1"
            sender = str(row.get("from") or "").lower()
            receiver = str(row.get("to") or "").lower()

            if value > 0 and not failed:
                if receiver == me and sender != me:
                    out.append(Transaction(
                        id=f"{tx_hash}:in", timestamp=ts, asset=asset, type="transfer-in",
                        amount=value, source_ref=f"wallet:{chain}:{address}",
                    ))
                elif sender == me and receiver != me:
                    out.append(Transaction(
                        id=f"{tx_hash}:out", timestamp=ts, asset=asset, type="transfer-out",
                        amount=value, source_ref=f"wallet:{chain}:{address}",
                    ))

            if sender == me:
                gas = Decimal(str(row.get("gasUsed") or "0")) * Decimal(str(row.get("gasPrice") or "0")) / WEI
                if gas > 0:
                    out.append(Transaction(
                        id=f"{tx_hash}:fee", timestamp=ts, asset=asset, type="fee",
                        amount=gas, source_ref=f"wallet:{chain}:{address}",
                    ))
        return out

    # ---------- Bitcoin ----------

    def _fetch_bitcoin(self, address: str) -> List[Transaction]:
        base = self.settings.blockstream_base_url.rstrip("/")
        rows: List[Dict[str, Any]] = []
        last_txid: Optional[str] = None
        for _ in range(BTC_MAX_PAGES):
            url = f"{base}/address/{address}/txs/chain"
            if last_txid:
                url = f"{url}/{last_txid}"
            page = self._get_json(url, context="Bitcoin explorer")
            if not page:
                break
            rows.extend(page)
            if len(page) < BTC_PAGE_SIZE:
                break
            last_txid = page[-1]["txid"]
        return self.parse_bitcoin(address, rows)

    @staticmethod
    def parse_bitcoin(address: str, rows: List[Dict[str, Any]]) -> List[Transaction]:
        out: List[Transaction] = []
        for row in rows:
            status = row.get("status") or {}
            if not status.get("confirmed"):
                continue
            ts = _ts(status["block_time"])
            txid = row["txid"]
            spent = sum(
                (int((vin.get("prevout") or {}).get("value", 0)) for vin in row.get("vin", [])
                 if (vin.get("prevout") or {}).get("scriptpubkey_address") == address),
                0,
            )
            received = sum(
                (int(vout.get("value", 0)) for vout in row.get("vout", [])
                 if vout.get("scriptpubkey_address") == address),
                0,
            )
            ref = f"wallet:bitcoin:{address}"
            if spent == 0:
                if received > 0:
                    out.append(Transaction(
                        id=f"{txid}:in", timestamp=ts, asset="BTC", type="transfer-in",
                        amount=Decimal(received) / SATOSHI, source_ref=ref,
                    ))
                continue
            # we funded this tx: the miner fee is ours, the rest minus change left the wallet
            fee = int(row.get("fee", 0))
            sent = spent - received - fee
            if sent > 0:
                out.append(Transaction(
                    id=f"{txid}:out", timestamp=ts, asset="BTC", type="transfer-out",
                    amount=Decimal(sent) / SATOSHI, source_ref=ref,
                ))
            if fee > 0:
                out.append(Transaction(
                    id=f"{txid}:fee", timestamp=ts, asset="BTC", type="fee",
                    amount=Decimal(fee) / SATOSHI, source_ref=ref,
                ))
        return out
