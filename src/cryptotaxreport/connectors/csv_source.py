# csv_source.py
"""
CSV parsing and normalization to the canonical Transaction schema.

Responsibilities:
- Read uploaded CSV text/bytes safely.
- Normalize header names (case-insensitive, common synonyms accepted).
- Validate required columns are present.
- Convert empty strings to None for optional fields.
- Validate each row using Pydantic (Transaction), returning
  (valid_rows, errors) so the API can preview and the pipeline can continue
  past bad rows.

Expected columns (case-insensitive):
  timestamp,type,asset,amount[,fiat_value,fee,id]
Rows without an id get a deterministic SHA-256 id built from their fields,
so re-uploading the same export does not double count.
"""

from __future__ import annotations

import csv
import hashlib
from io import StringIO
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from ..errors import MalformedInput, ValidationError
from ..schemas import CsvSource, DateRange, Transaction
from .base import FetchResult, finalize

REQUIRED_COLUMNS = {"timestamp", "type", "asset", "amount"}

HEADER_SYNONYMS = {
    "date": "timestamp",
    "time": "timestamp",
    "datetime": "timestamp",
    "date(utc)": "timestamp",
    "kind": "type",
    "operation": "type",
    "side": "type",
    "base_asset": "asset",
    "coin": "asset",
    "currency": "asset",
    "symbol": "asset",
    "base_amount": "amount",
    "quantity": "amount",
    "qty": "amount",
    "fiat": "fiat_value",
    "value_eur": "fiat_value",
    "total_eur": "fiat_value",
    "quote_amount": "fiat_value",
    "fee_amount": "fee",
    "fee_eur": "fee",
    "txid": "id",
    "tx_id": "id",
    "hash": "id",
    "transaction_id": "id",
}

OPTIONAL_DECIMAL_FIELDS = {"fiat_value", "fee"}


def _normalize_header(h: str) -> str:
    """Lowercase and strip whitespace so headers are matched flexibly."""
    key = h.strip().lower().replace(" ", "_")
    return HEADER_SYNONYMS.get(key, key)


def row_hash(row: Dict[str, Any]) -> str:
    """
    Deterministic SHA-256 over the meaningful fields of a row. Even tiny
    differences (fee=1 vs fee=1.0) give a different id.
    """
    base_string = "|".join(
        str(row.get(k) or "") for k in ("timestamp", "type", "asset", "amount", "fiat_value", "fee")
    )
    return hashlib.sha256(base_string.encode("utf-8")).hexdigest()


def parse_csv(
    data: Union[str, bytes], source_ref: str = "csv", encoding: str = "utf-8"
) -> Tuple[List[Transaction], List[MalformedInput]]:
    """
    Parse CSV content into Transaction objects.
    Returns:
      valid_rows: list[Transaction]
      errors: list[MalformedInput]; row_index is the physical line (header = 1),
              row_index 0 means the file as a whole is unusable.
    """
    valid: List[Transaction] = []
    errors: List[MalformedInput] = []

    # undecodable bytes become U+FFFD; rows holding one are reported below
    text = data.decode(encoding, errors="replace") if isinstance(data, bytes) else data
    # utf-8-sig exports from Excel start with a BOM
    text = text.lstrip("\ufeff")
    reader = csv.DictReader(StringIO(text, newline=""))

    if not reader.fieldnames:
        errors.append(MalformedInput(row_index=0, reason="CSV has no header"))
        return valid, errors

    header_map = {orig: _normalize_header(orig) for orig in reader.fieldnames if orig is not None}
    missing = REQUIRED_COLUMNS - set(header_map.values())
    if missing:
        errors.append(MalformedInput(row_index=0, reason=f"Missing required columns: {sorted(missing)}"))
        return valid, errors

    for row in reader:
        i = reader.line_num  # physical line of the row end; the header is line 1
        normalized: Dict[str, Any] = {}
        for orig_key, value in row.items():
            if orig_key is None:
                # more cells than headers
                continue
            value = value.strip() if isinstance(value, str) else value  # be forgiving with whitespace
            normalized[header_map.get(orig_key, orig_key)] = value

        if not any(normalized.values()):
            continue  # blank line

        if any(isinstance(v, str) and "\ufffd" in v for v in normalized.values()):
            errors.append(MalformedInput(row_index=i, reason="Row contains bytes that are not valid UTF-8", raw=normalized))
            continue

        for k in OPTIONAL_DECIMAL_FIELDS:
            if k in normalized and normalized[k] == "":
                normalized[k] = None

        tx_id = normalized.get("id") or row_hash(normalized)
        try:
            tx = Transaction(
                id=tx_id,
                timestamp=normalized.get("timestamp"),
                type=normalized.get("type"),
                asset=normalized.get("asset"),
                amount=normalized.get("amount"),
                fiat_value=normalized.get("fiat_value"),
                fee_amount=normalized.get("fee"),
                source_ref=source_ref,
                price_source="source" if normalized.get("fiat_value") is not None else None,
            )
            valid.append(tx)
        except PydanticValidationError as ve:
            reason = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'row'}: {err['msg']}" for err in ve.errors()
            )
            errors.append(MalformedInput(row_index=i, reason=reason, raw=normalized))

    return valid, errors


class CsvConnector:
    data_source = "csv"

    def fetch(self, payload: CsvSource, date_range: Optional[DateRange] = None) -> FetchResult:
        source_ref = f"csv:{payload.platform}:{payload.filename or 'upload'}"
        valid, errors = parse_csv(payload.content, source_ref=source_ref)
        fatal = [e for e in errors if e.row_index == 0]
        if fatal:
            raise ValidationError(f"CSV file rejected: {fatal[0].reason}")
        return FetchResult(
            transactions=finalize(valid, date_range or payload.date_range),
            warnings=errors,
        )
