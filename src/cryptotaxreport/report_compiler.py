# report_compiler.py
"""
Fiscal-year aggregation and artifact rendering.

compile_report():
  1) keep disposals whose disposed_at falls in the fiscal year (calendar year
     in the jurisdiction's timezone, Europe/Madrid unless configured)
  2) let the form rule decide which disposal kinds it covers; the rest are
     excluded with a note
  3) per-asset totals plus total_gains / total_losses / net_result
     (total_losses is a non-negative magnitude, net = gains - losses)
  4) the form rule maps the aggregates into its field layout
  5) render CSV / JSON directly or PDF through report_pdf

Any failure while building or rendering is a ReportFormatError.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from decimal import Decimal
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from .config import DEFAULT_FISCAL_TIMEZONE
from .cost_basis import DisposalEvent
from .errors import ReportFormatError
from .report_pdf import build_report_pdf
from .rules import FormContext, FormResult, rule_for
from .schemas import ReportTotals, Transaction

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
FISCAL_TZ = ZoneInfo(DEFAULT_FISCAL_TIMEZONE)

CONTENT_TYPES = {
    "pdf": "application/pdf",
    "csv": "text/csv",
    "json": "application/json",
}

ASSET_TOTALS_SECTION = "Per-asset totals"
SUMMARY_SECTION = "Summary"


@dataclass
class CompiledReport:
    payload: bytes
    content_type: str
    filename: str
    totals: ReportTotals
    report: Dict[str, Any]
    notes: List[str] = field(default_factory=list)


def _dec(v: Decimal) -> str:
    s = format(v, "f")
    return s.rstrip("0").rstrip(".") if "." in s else s


def jsonable(obj: Any) -> Any:
    """Decimals -> plain strings, datetimes -> ISO, recursively."""
    if isinstance(obj, dict):
        return {str(k): jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [jsonable(v) for v in obj]
    if isinstance(obj, Decimal):
        return _dec(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return obj


def in_fiscal_year(ts: datetime, year: int, tz: tzinfo = FISCAL_TZ) -> bool:
    return ts.astimezone(tz).year == year


def aggregate(events: List[DisposalEvent]) -> tuple[Dict[str, Dict[str, Decimal]], ReportTotals]:
    per_asset: Dict[str, Dict[str, Decimal]] = {}
    gains = losses = ZERO
    for ev in events:
        agg = per_asset.setdefault(
            ev.asset,
            {"quantity": ZERO, "proceeds": ZERO, "cost_basis": ZERO, "gains": ZERO, "losses": ZERO, "net": ZERO},
        )
        agg["quantity"] += ev.quantity
        agg["proceeds"] += ev.proceeds
        agg["cost_basis"] += ev.cost_basis
        if ev.gain_or_loss > 0:
            agg["gains"] += ev.gain_or_loss
            gains += ev.gain_or_loss
        elif ev.gain_or_loss < 0:
            agg["losses"] += -ev.gain_or_loss
            losses += -ev.gain_or_loss
        agg["net"] = agg["gains"] - agg["losses"]
    totals = ReportTotals(total_gains=gains, total_losses=losses, net_result=gains - losses)
    return dict(sorted(per_asset.items())), totals


def compile_report(
    *,
    events: List[DisposalEvent],
    transactions: List[Transaction],
    fiscal_year: int,
    report_type: str,
    file_format: str,
    ctx: FormContext,
    holdings: Optional[Dict[str, Dict[str, Decimal]]] = None,
    extra_notes: Optional[List[str]] = None,
    generated_at: Optional[datetime] = None,
    tz: tzinfo = FISCAL_TZ,
) -> CompiledReport:
    if file_format not in CONTENT_TYPES:
        raise ReportFormatError(f"Unsupported file format: {file_format}")
    try:
        rule = rule_for(report_type)
    except ValueError as e:
        raise ReportFormatError(f"Unsupported report type: {report_type}") from e

    try:
        year_events = [e for e in events if in_fiscal_year(e.disposed_at, fiscal_year, tz)]
        included = [e for e in year_events if rule.includes(e)]
        excluded = Counter(e.kind.value for e in year_events if not rule.includes(e))
        year_txs = [t for t in transactions if in_fiscal_year(t.timestamp, fiscal_year, tz)]

        notes: List[str] = list(extra_notes or [])
        for kind, n in sorted(excluded.items()):
            notes.append(
                f"{n} '{kind}' movement(s) excluded from {rule.report_type}: "
                "they reduce holdings but are not reported as transfers on this form."
            )

        per_asset, totals = aggregate(included)
        totals = totals.model_copy(update={"total_transactions": len(year_txs)})
        form: FormResult = rule.build(included, ctx)
        notes.extend(form.notes)

        report = {
            "report_type": rule.report_type,
            "title": rule.title,
            "fiscal_year": fiscal_year,
            "lot_method": ctx.lot_method,
            "taxpayer": ctx.taxpayer,
            "generated_at": (generated_at or datetime.now(timezone.utc)).isoformat(),
            "totals": totals.model_dump(mode="json"),
            "per_asset": jsonable(per_asset),
            "form": jsonable(form.fields),
            "disposals": jsonable([e.to_dict() for e in included]),
            "holdings": jsonable(holdings or {}),
            "notes": notes,
        }

        if file_format == "json":
            payload = json.dumps(report, indent=2, ensure_ascii=False).encode("utf-8")
        elif file_format == "csv":
            payload = render_csv(report, year_txs, included, per_asset, totals, holdings or {}, form)
        else:
            payload = build_report_pdf(report, form.sections)
    except ReportFormatError:
        raise
    except Exception as e:
        logger.exception("Rendering %s/%s for %s failed", report_type, file_format, fiscal_year)
        raise ReportFormatError(detail=f"{type(e).__name__}: {e}") from e

    filename = f"{rule.report_type}_{fiscal_year}.{file_format}"
    return CompiledReport(
        payload=payload,
        content_type=CONTENT_TYPES[file_format],
        filename=filename,
        totals=totals,
        report=report,
        notes=notes,
    )


def render_csv(
    report: Dict[str, Any],
    transactions: List[Transaction],
    events: List[DisposalEvent],
    per_asset: Dict[str, Dict[str, Decimal]],
    totals: ReportTotals,
    holdings: Dict[str, Dict[str, Decimal]],
    form: FormResult,
) -> bytes:
    """
    Sectioned CSV: each section is a title row, a header row, data rows and a
    blank separator. Amounts are written at full precision so the per-asset
    totals can be read back exactly (read_csv_asset_totals).
    """
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")

    w.writerow([report["title"]])
    w.writerow(["Fiscal year", report["fiscal_year"]])
    w.writerow(["Cost-basis method", report["lot_method"]])
    w.writerow([])

    w.writerow(["Transactions"])
    w.writerow(["Date", "Type", "Asset", "Amount", "Fiat value (EUR)", "Fee (EUR)", "Id", "Source"])
    for t in transactions:
        w.writerow([
            t.timestamp.isoformat(), t.type.value, t.asset, _dec(t.amount),
            _dec(t.fiat_value) if t.fiat_value is not None else "",
            _dec(t.fee_amount) if t.fee_amount is not None else "",
            t.id, t.source_ref,
        ])
    w.writerow([])

    w.writerow(["Gains and losses"])
    w.writerow(["Date", "Asset", "Quantity", "Proceeds", "Cost basis", "Gain/Loss", "Matched lots", "Flag"])
    for e in events:
        w.writerow([
            e.disposed_at.isoformat(), e.asset, _dec(e.quantity), _dec(e.proceeds),
            _dec(e.cost_basis), _dec(e.gain_or_loss), " ".join(e.matched_lot_ids),
            "INSUFFICIENT_COST_BASIS" if e.insufficient_cost_basis else "",
        ])
    w.writerow([])

    w.writerow([ASSET_TOTALS_SECTION])
    w.writerow(["Asset", "Quantity", "Proceeds", "Cost basis", "Gains", "Losses", "Net"])
    for asset, agg in per_asset.items():
        w.writerow([asset] + [_dec(agg[k]) for k in ("quantity", "proceeds", "cost_basis", "gains", "losses", "net")])
    w.writerow([])

    w.writerow([SUMMARY_SECTION])
    w.writerow(["Field", "Value"])
    w.writerow(["total_transactions", totals.total_transactions])
    w.writerow(["total_gains", _dec(totals.total_gains)])
    w.writerow(["total_losses", _dec(totals.total_losses)])
    w.writerow(["net_result", _dec(totals.net_result)])
    w.writerow([])

    w.writerow(["Holdings at year end"])
    w.writerow(["Asset", "Quantity", "Average cost (EUR)", "Total cost (EUR)"])
    for asset, h in holdings.items():
        w.writerow([asset, _dec(h["quantity"]), _dec(h["average_cost"]), _dec(h["total_cost"])])
    w.writerow([])

    for section in form.sections:
        w.writerow([section.title])
        w.writerow(section.header)
        for row in section.rows:
            w.writerow([_dec(c) if isinstance(c, Decimal) else ("" if c is None else c) for c in row])
        w.writerow([])

    if report["notes"]:
        w.writerow(["Notes"])
        for note in report["notes"]:
            w.writerow([note])

    return buf.getvalue().encode("utf-8")


def _read_section(payload: bytes, title: str) -> List[Dict[str, str]]:
    rows = list(csv.reader(io.StringIO(payload.decode("utf-8"))))
    out: List[Dict[str, str]] = []
    for i, row in enumerate(rows):
        if row == [title]:
            header = rows[i + 1]
            for data in rows[i + 2:]:
                if not data:
                    break
                out.append(dict(zip(header, data)))
            break
    return out


def read_csv_asset_totals(payload: bytes) -> Dict[str, Dict[str, Decimal]]:
    """Parse the per-asset totals section of a CSV artifact back into Decimals."""
    keys = {"Quantity": "quantity", "Proceeds": "proceeds", "Cost basis": "cost_basis",
            "Gains": "gains", "Losses": "losses", "Net": "net"}
    return {
        row["Asset"]: {keys[k]: Decimal(v) for k, v in row.items() if k in keys}
        for row in _read_section(payload, ASSET_TOTALS_SECTION)
    }


def read_csv_summary(payload: bytes) -> Dict[str, str]:
    return {row["Field"]: row["Value"] for row in _read_section(payload, SUMMARY_SECTION)}
