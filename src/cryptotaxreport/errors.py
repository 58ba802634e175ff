# errors.py
"""
Error taxonomy for report generation.

Every exception carries a stable `code` (persisted on the report request and
returned by the API) and a user-facing `message`. Internal detail goes to
`detail`, which is logged but never shown to clients.

Two conditions are *warnings*, not exceptions, because the run continues:
  - MalformedInput: one bad CSV/manual row (the rest of the batch proceeds)
  - InsufficientCostBasis: a disposal larger than the open lots
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional


class ReportGenerationError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False
    default_message = "Report generation failed due to an internal error."

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(ReportGenerationError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "The request data is invalid."


class NotFound(ReportGenerationError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Report request not found."


class AuthenticationFailure(ReportGenerationError):
    code = "AUTHENTICATION_FAILURE"
    status_code = 401
    default_message = "The data source rejected the supplied credentials."


class RateLimited(ReportGenerationError):
    code = "RATE_LIMITED"
    status_code = 503
    retryable = True
    default_message = "The data source is rate limiting requests. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        retry_after: Optional[float] = None,
        detail: Optional[str] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = retry_after


class UpstreamUnavailable(ReportGenerationError):
    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503
    retryable = True
    default_message = "The data source is temporarily unavailable. Please try again later."


class PriceUnavailableError(ReportGenerationError):
    code = "PRICE_UNAVAILABLE"
    status_code = 503
    default_message = "Historical prices could not be resolved for some transactions."

    def __init__(self, missing: list, message: Optional[str] = None) -> None:
        self.missing = list(missing)
        if message is None:
            keys = sorted({f"{m.asset}:{m.day.isoformat()}" for m in self.missing})
            shown = ", ".join(keys[:5]) + (" ..." if len(keys) > 5 else "")
            message = (
                f"No historical price for {shown}. "
                "Add a manual price override for these entries and retry."
            )
        super().__init__(message)


class InsufficientCostBasisError(ReportGenerationError):
    code = "INSUFFICIENT_COST_BASIS"
    status_code = 422
    default_message = "A disposal exceeds the holdings recorded for that asset."


class ReportFormatError(ReportGenerationError):
    code = "REPORT_FORMAT_ERROR"
    status_code = 500
    default_message = "The report could not be rendered."


class GenerationTimeout(ReportGenerationError):
    code = "TIMEOUT"
    status_code = 504
    default_message = "Report generation exceeded the time budget."


class InvalidTransition(ReportGenerationError):
    code = "CONFLICT"
    status_code = 409
    default_message = "The report request is not in a state that allows this operation."


class GenerationConflict(InvalidTransition):
    default_message = "A generation for this report request is already running or finished."


# ---------- warnings ----------

@dataclass(frozen=True)
class MalformedInput:
    """A single input row that failed validation; the rest of the batch continues."""

    row_index: int
    reason: str
    raw: Optional[Dict[str, Any]] = None
    kind: str = field(default="malformed_input", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "row_index": self.row_index, "reason": self.reason, "raw": self.raw}


@dataclass(frozen=True)
class InsufficientCostBasis:
    asset: str
    transaction_id: str
    disposed_at: datetime
    requested: Decimal
    matched: Decimal
    kind: str = field(default="insufficient_cost_basis", init=False)

    @property
    def unmatched(self) -> Decimal:
        return self.requested - self.matched

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "asset": self.asset,
            "transaction_id": self.transaction_id,
            "disposed_at": self.disposed_at.isoformat(),
            "requested": format(self.requested, "f"),
            "matched": format(self.matched, "f"),
            "unmatched": format(self.unmatched, "f"),
        }
