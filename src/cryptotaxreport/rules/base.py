from __future__ import annotations
from typing import Any, Dict, List, Optional, Protocol
from decimal import Decimal
from dataclasses import dataclass, field
from datetime import date
from cryptotaxreport.cost_basis import DisposalEvent
from cryptotaxreport.schemas import TxType

# Disposals that realize a gain/loss on every form; `fee` movements only reduce holdings
TAXABLE_KINDS = frozenset({TxType.SELL, TxType.TRANSFER_OUT})


@dataclass
class Section:
    title: str
    header: List[str]
    rows: List[List[Any]]


@dataclass
class FormContext:
    fiscal_year: int
    lot_method: str
    taxpayer: Dict[str, Optional[str]] = field(default_factory=dict)
    # asset -> {"quantity", "total_cost", "average_cost"} at valuation_date
    holdings: Dict[str, Dict[str, Decimal]] = field(default_factory=dict)
    # asset -> EUR unit price at valuation_date
    holding_prices: Dict[str, Decimal] = field(default_factory=dict)
    valuation_date: Optional[date] = None
    location: str = ""


@dataclass
class FormResult:
    report_type: str
    title: str
    fields: Dict[str, Any] = field(default_factory=dict)
    sections: List[Section] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


class FormRule(Protocol):
    report_type: str
    title: str
    needs_holdings: bool

    def includes(self, event: DisposalEvent) -> bool: ...
    def build(self, events: List[DisposalEvent], ctx: FormContext) -> FormResult: ...


class DisposalFilter:
    """Shared `includes`: sells and outbound transfers count, fee movements don't."""

    def includes(self, event: DisposalEvent) -> bool:
        return event.kind in TAXABLE_KINDS


def valued_holdings(ctx: FormContext) -> List[Dict[str, Any]]:
    """Holdings at the valuation date with their EUR value, sorted by asset."""
    out: List[Dict[str, Any]] = []
    for asset in sorted(ctx.holdings):
        qty = ctx.holdings[asset]["quantity"]
        price = ctx.holding_prices.get(asset)
        out.append({
            "asset": asset,
            "quantity": qty,
            "unit_value": price,
            "total_value": (qty * price) if price is not None else None,
        })
    return out
