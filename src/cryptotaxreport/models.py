from __future__ import annotations
import datetime
import uuid
from decimal import Decimal
from enum import Enum
from typing import Any
from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import Numeric, TypeDecorator


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp; SQLite has no tz-aware column type."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# ---------- Base ----------
class Base(DeclarativeBase):
    pass

# ---------- Decimal helper (fixed 6 dp) ----------
class SqliteDecimal(TypeDecorator):
    impl = Numeric(38, 6, asdecimal=True)
    cache_ok = True
    SCALE = Decimal("0.000001")
    def process_bind_param(self, value, dialect):
        if value is None: return None
        return Decimal(value).quantize(self.SCALE)
    def process_result_value(self, value, dialect):
        if value is None: return None
        return Decimal(value).quantize(self.SCALE)


class ReportStatus(str, Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


# ---------- ORM models ----------
class ReportRequest(Base):
    __tablename__ = "report_requests"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # configuration (editable while draft/error)
    data_source: Mapped[str] = mapped_column(String(16), nullable=False)
    source_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    report_type: Mapped[str] = mapped_column(String(16), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    file_format: Mapped[str] = mapped_column(String(8), nullable=False, default="pdf")
    lot_method: Mapped[str] = mapped_column(String(8), nullable=False, default="FIFO")
    taxpayer_nif: Mapped[str | None] = mapped_column(String(16), nullable=True)
    taxpayer_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    taxpayer_surname: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # "ASSET:YYYY-MM-DD" -> unit price in EUR (stored as strings)
    price_overrides: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)

    # lifecycle (owned by state_machine)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ReportStatus.DRAFT.value, index=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    finished_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # results (written on completion)
    generated_report: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    artifact_ref: Mapped[str | None] = mapped_column(String(512), nullable=True)
    artifact_content_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_gains: Mapped[Decimal] = mapped_column(SqliteDecimal, nullable=False, default=Decimal("0"))
    total_losses: Mapped[Decimal] = mapped_column(SqliteDecimal, nullable=False, default=Decimal("0"))
    net_result: Mapped[Decimal] = mapped_column(SqliteDecimal, nullable=False, default=Decimal("0"))
    warnings: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    input_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    output_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow
    )

Index("idx_report_requests_created", ReportRequest.created_at)
