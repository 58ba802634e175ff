# audit_digest.py
from __future__ import annotations
import json, hashlib
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from .cost_basis import DisposalEvent
from .schemas import ReportTotals, Transaction


def _dec_to_str(x: Decimal) -> str:
    s = format(x, "f")
    return s.rstrip("0").rstrip(".") if "." in s else s


def _json_c14n(obj: Any) -> str:
    """
    Canonical JSON dump:
      - sort keys
      - no spaces (compact separators)
      - decimals rendered as plain strings, datetimes as ISO
    """
    def normalize(o: Any):
        if isinstance(o, dict):
            return {str(k): normalize(o[k]) for k in sorted(o.keys())}
        elif isinstance(o, (list, tuple)):
            return [normalize(v) for v in o]
        elif isinstance(o, Decimal):
            return _dec_to_str(o)
        elif isinstance(o, datetime):
            return o.isoformat()
        else:
            return o
    return json.dumps(normalize(obj), sort_keys=True, separators=(",", ":"))


def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def input_digest(transactions: List[Transaction], config: Dict[str, Any]) -> str:
    """
    Hash over the normalized, priced transactions (in processing order) plus
    the generation parameters that affect the numbers.
    """
    part = {
        "config": config,
        "transactions": [
            {
                "id": t.id,
                "timestamp": t.timestamp,
                "asset": t.asset,
                "type": t.type.value,
                "amount": t.amount,
                "fiat_value": t.fiat_value,
                "fee_amount": t.fee_amount,
            }
            for t in transactions
        ],
    }
    return _sha256_hex(_json_c14n(part))


def output_digest(events: List[DisposalEvent], totals: ReportTotals) -> str:
    part = {
        "disposals": [e.to_dict() for e in events],
        "totals": totals.model_dump(mode="json"),
    }
    return _sha256_hex(_json_c14n(part))


def compute_digests(
    transactions: List[Transaction],
    config: Dict[str, Any],
    events: List[DisposalEvent],
    totals: ReportTotals,
) -> Dict[str, str]:
    return {
        "input_hash": input_digest(transactions, config),
        "output_hash": output_digest(events, totals),
    }
