from __future__ import annotations

"""
Pydantic schemas (data models) used by the pipeline and the API.
- The canonical `Transaction` is what every connector produces and what the
  cost-basis engine consumes.
- Source payloads form a tagged union keyed by `data_source`; each variant
  carries only the fields that source needs.
- Keep schemas separate from database models (ORM) to avoid coupling business
  logic to storage.
"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_serializer,
    field_validator,
    model_validator,
)


def _dec_str(v: Decimal | None) -> str | None:
    if v is None:
        return None
    s = format(v, "f")
    return s.rstrip("0").rstrip(".") if "." in s else s


def to_utc(ts: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# ---------- canonical transaction ----------

class TxType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    TRANSFER_IN = "transfer-in"
    TRANSFER_OUT = "transfer-out"
    STAKE_REWARD = "stake-reward"
    AIRDROP = "airdrop"
    FEE = "fee"


ACQUISITION_TYPES = frozenset({TxType.BUY, TxType.TRANSFER_IN, TxType.STAKE_REWARD, TxType.AIRDROP})
DISPOSAL_TYPES = frozenset({TxType.SELL, TxType.TRANSFER_OUT, TxType.FEE})

# Exchanges and CSV exports disagree on naming; normalize before validating.
_TYPE_SYNONYMS = {
    "buy": "buy",
    "purchase": "buy",
    "spot_buy": "buy",
    "sell": "sell",
    "sale": "sell",
    "spot_sell": "sell",
    "transfer_in": "transfer-in",
    "deposit": "transfer-in",
    "receive": "transfer-in",
    "transfer_out": "transfer-out",
    "withdrawal": "transfer-out",
    "withdraw": "transfer-out",
    "send": "transfer-out",
    "stake_reward": "stake-reward",
    "stake": "stake-reward",
    "staking": "stake-reward",
    "reward": "stake-reward",
    "income": "stake-reward",
    "airdrop": "airdrop",
    "fee": "fee",
}


def normalize_tx_type(value: Any) -> str:
    if isinstance(value, TxType):
        return value.value
    key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    if key not in _TYPE_SYNONYMS:
        raise ValueError(f"invalid transaction type: {value!r}")
    return _TYPE_SYNONYMS[key]


class Transaction(BaseModel):
    """
    Normalized transaction shape used throughout the pipeline.

    Fields:
      id: provider-native id, unique within its source.
      timestamp: UTC datetime of the event.
      asset: upper-case symbol (BTC, ETH, ...).
      amount: quantity of `asset`, always positive; `type` gives the direction.
      fiat_value: total EUR value of the movement; None until priced.
      fee_amount: fee in EUR, if any.
      fee_share: fee as a fraction of fiat_value, for fees charged in a non-EUR
        fiat; becomes fee_amount once the movement is priced.
      source_ref: connector/account that produced the row.
      sequence: ingestion order, the tie-breaker for equal timestamps.
      price_source: where fiat_value came from ("source", "resolver", "override").
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(..., min_length=1)
    timestamp: datetime
    asset: str = Field(..., min_length=1, max_length=32)
    type: TxType
    amount: Decimal = Field(..., gt=0)
    fiat_value: Optional[Decimal] = Field(None, ge=0)
    fee_amount: Optional[Decimal] = Field(None, ge=0)
    fee_share: Optional[Decimal] = Field(None, ge=0)
    source_ref: str = ""
    sequence: int = 0
    price_source: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    @field_validator("asset", mode="before")
    @classmethod
    def _upper_asset(cls, v):
        return None if v is None else str(v).strip().upper()

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v):
        return normalize_tx_type(v)

    @field_serializer("amount", "fiat_value", "fee_amount", "fee_share")
    def _dec_to_str(self, v: Decimal | None) -> str | None:
        return _dec_str(v)

    @property
    def is_acquisition(self) -> bool:
        return self.type in ACQUISITION_TYPES

    @property
    def is_disposal(self) -> bool:
        return self.type in DISPOSAL_TYPES


# ---------- source payloads (tagged union on data_source) ----------

EVM_CHAINS = ("ethereum", "bsc", "polygon", "arbitrum", "optimism", "base")
EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
BTC_ADDRESS_RE = re.compile(r"^(bc1[a-z0-9]{25,87}|[13][a-km-zA-HJ-NP-Z1-9]{25,34})$")

Platform = Literal["binance", "coinbase", "kraken", "whitebit", "other"]


class DateRange(BaseModel):
    start: Optional[date] = None
    end: Optional[date] = None

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.start and self.end and self.end < self.start:
            raise ValueError("date_range.end must not be before date_range.start")
        return self

    def contains(self, ts: datetime) -> bool:
        day = to_utc(ts).date()
        if self.start and day < self.start:
            return False
        if self.end and day > self.end:
            return False
        return True


class WalletSource(BaseModel):
    data_source: Literal["wallet"]
    address: str
    chain: Literal["ethereum", "bsc", "polygon", "arbitrum", "optimism", "base", "bitcoin"] = "ethereum"
    date_range: Optional[DateRange] = None

    @field_validator("address", mode="before")
    @classmethod
    def _strip(cls, v):
        return str(v).strip() if v is not None else v

    @model_validator(mode="after")
    def _address_format(self) -> "WalletSource":
        if self.chain == "bitcoin":
            if not BTC_ADDRESS_RE.match(self.address):
                raise ValueError("invalid Bitcoin address")
        elif not EVM_ADDRESS_RE.match(self.address):
            raise ValueError(f"invalid {self.chain} address (expected 0x followed by 40 hex characters)")
        return self


class CsvSource(BaseModel):
    data_source: Literal["csv"]
    platform: Platform = "other"
    content: str = Field(..., min_length=1)
    filename: Optional[str] = None
    date_range: Optional[DateRange] = None


class ApiKeySource(BaseModel):
    data_source: Literal["api-key"]
    platform: Platform
    api_key: str = Field(..., min_length=1)
    api_secret: str = Field(..., min_length=1)
    passphrase: Optional[str] = None
    date_range: Optional[DateRange] = None


class OAuthSource(BaseModel):
    data_source: Literal["oauth"]
    platform: Platform
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    date_range: Optional[DateRange] = None

    @field_validator("expires_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc(v) if v is not None else None


class ManualEntry(BaseModel):
    id: str = Field(..., min_length=1)
    date: datetime
    type: Literal["buy", "sell", "transfer", "transfer-in", "transfer-out", "stake", "airdrop", "fee"]
    asset: str = Field(..., min_length=1, max_length=32)
    amount: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., ge=0)
    fee: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None

    @field_validator("asset", mode="before")
    @classmethod
    def _upper_asset(cls, v):
        return None if v is None else str(v).strip().upper()


class ManualSource(BaseModel):
    data_source: Literal["manual"]
    # entries stay loosely typed so one bad row becomes a warning, not a 422
    entries: List[Dict[str, Any]] = Field(..., min_length=1)
    date_range: Optional[DateRange] = None


SourcePayload = Annotated[
    Union[WalletSource, CsvSource, ApiKeySource, OAuthSource, ManualSource],
    Field(discriminator="data_source"),
]

SOURCE_ADAPTER: TypeAdapter = TypeAdapter(SourcePayload)

_SECRET_FIELDS = {"api_key", "api_secret", "passphrase", "access_token", "refresh_token"}


def parse_source(data: Dict[str, Any]):
    return SOURCE_ADAPTER.validate_python(data)


def redact_source(data: Dict[str, Any] | None) -> Dict[str, Any]:
    """Copy of a stored source payload safe to return to clients."""
    if not data:
        return {}
    out: Dict[str, Any] = {}
    for k, v in data.items():
        if k in _SECRET_FIELDS and v:
            out[k] = "****" + str(v)[-4:] if k == "api_key" and len(str(v)) > 8 else "****"
        elif k == "content" and isinstance(v, str):
            out[k] = f"<{len(v)} characters>"
        else:
            out[k] = v
    return out


# ---------- report request ----------

NIF_RE = re.compile(r"^[0-9]{8}[A-Z]$")
NIE_RE = re.compile(r"^[XYZ][0-9]{7}[A-Z]$")
MIN_FISCAL_YEAR = 2009  # first Bitcoin block
OVERRIDE_KEY_RE = re.compile(r"^[A-Z0-9]{1,32}:\d{4}-\d{2}-\d{2}$")

ReportType = Literal["model-100", "model-720", "model-714"]
FileFormat = Literal["pdf", "csv", "json"]
LotMethodName = Literal["FIFO", "LIFO"]


def _check_fiscal_year(v: int) -> int:
    current = datetime.now(timezone.utc).year
    if v < MIN_FISCAL_YEAR or v > current:
        raise ValueError(f"fiscal_year must be between {MIN_FISCAL_YEAR} and {current}")
    return v


def _check_overrides(v: Dict[str, Decimal]) -> Dict[str, Decimal]:
    cleaned: Dict[str, Decimal] = {}
    for key, price in v.items():
        k = key.strip().upper()
        if not OVERRIDE_KEY_RE.match(k):
            raise ValueError(f"price override key {key!r} must look like 'BTC:2023-12-01'")
        if price < 0:
            raise ValueError(f"price override for {key!r} must be >= 0")
        cleaned[k] = price
    return cleaned


class TaxpayerInfo(BaseModel):
    nif: str
    name: Optional[str] = Field(None, max_length=128)
    surname: Optional[str] = Field(None, max_length=128)

    @field_validator("nif", mode="before")
    @classmethod
    def _nif_format(cls, v):
        s = str(v).strip().upper()
        if not (NIF_RE.match(s) or NIE_RE.match(s)):
            raise ValueError("invalid NIF/NIE format")
        return s


class ReportRequestCreate(BaseModel):
    source: SourcePayload
    report_type: ReportType = "model-100"
    fiscal_year: int
    file_format: FileFormat = "pdf"
    # None: the server's DEFAULT_LOT_METHOD
    lot_method: Optional[LotMethodName] = None
    taxpayer: Optional[TaxpayerInfo] = None
    price_overrides: Dict[str, Decimal] = Field(default_factory=dict)

    @field_validator("fiscal_year")
    @classmethod
    def _fy(cls, v: int) -> int:
        return _check_fiscal_year(v)

    @field_validator("price_overrides")
    @classmethod
    def _po(cls, v: Dict[str, Decimal]) -> Dict[str, Decimal]:
        return _check_overrides(v)


class ReportRequestUpdate(BaseModel):
    """
    Partial update, all fields optional. Only configuration fields are
    accepted; status, progress and results are owned by the state machine.
    """

    model_config = ConfigDict(extra="forbid")

    source: Optional[SourcePayload] = None
    report_type: Optional[ReportType] = None
    fiscal_year: Optional[int] = None
    file_format: Optional[FileFormat] = None
    lot_method: Optional[LotMethodName] = None
    taxpayer: Optional[TaxpayerInfo] = None
    price_overrides: Optional[Dict[str, Decimal]] = None

    @field_validator("fiscal_year")
    @classmethod
    def _fy(cls, v: Optional[int]) -> Optional[int]:
        return None if v is None else _check_fiscal_year(v)

    @field_validator("price_overrides")
    @classmethod
    def _po(cls, v: Optional[Dict[str, Decimal]]) -> Optional[Dict[str, Decimal]]:
        return None if v is None else _check_overrides(v)


class ReportTotals(BaseModel):
    total_transactions: int = 0
    total_gains: Decimal = Decimal("0")
    total_losses: Decimal = Decimal("0")  # magnitude, never negative
    net_result: Decimal = Decimal("0")

    @field_serializer("total_gains", "total_losses", "net_result")
    def _dec_to_str(self, v: Decimal) -> str:
        return _dec_str(v) or "0"


class ReportRequestRead(BaseModel):
    id: str
    data_source: str
    source: Dict[str, Any]
    report_type: str
    fiscal_year: int
    file_format: str
    lot_method: str
    taxpayer_nif: Optional[str] = None
    taxpayer_name: Optional[str] = None
    taxpayer_surname: Optional[str] = None
    status: str
    progress: int
    progress_message: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    attempt: int
    artifact_ref: Optional[str] = None
    totals: ReportTotals
    warnings: List[Any] = Field(default_factory=list)
    input_hash: Optional[str] = None
    output_hash: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Any) -> "ReportRequestRead":
        return cls(
            id=row.id,
            data_source=row.data_source,
            source=redact_source(row.source_data),
            report_type=row.report_type,
            fiscal_year=row.fiscal_year,
            file_format=row.file_format,
            lot_method=row.lot_method,
            taxpayer_nif=row.taxpayer_nif,
            taxpayer_name=row.taxpayer_name,
            taxpayer_surname=row.taxpayer_surname,
            status=row.status,
            progress=row.progress,
            progress_message=row.progress_message,
            error_code=row.error_code,
            error_message=row.error_message,
            attempt=row.attempt,
            artifact_ref=row.artifact_ref,
            totals=ReportTotals(
                total_transactions=row.total_transactions or 0,
                total_gains=row.total_gains or Decimal("0"),
                total_losses=row.total_losses or Decimal("0"),
                net_result=row.net_result or Decimal("0"),
            ),
            warnings=row.warnings or [],
            input_hash=row.input_hash,
            output_hash=row.output_hash,
            started_at=row.started_at,
            finished_at=row.finished_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class ReportRequestList(BaseModel):
    items: List[ReportRequestRead]


class GenerateResponse(BaseModel):
    id: str
    status: str
    attempt: int


class CSVPreviewResponse(BaseModel):
    """
    API response model for /upload/csv (preview only).
    """

    filename: str
    total_valid: int
    total_errors: int
    preview_first_5: List[Transaction]
    errors: List[Any]


class ConnectionTestRequest(BaseModel):
    platform: Platform
    api_key: str = Field(..., min_length=1)
    api_secret: str = Field(..., min_length=1)
    passphrase: Optional[str] = None


class ConnectionTestResponse(BaseModel):
    platform: str
    ok: bool
    message: str
