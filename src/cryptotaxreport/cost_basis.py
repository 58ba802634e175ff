# cost_basis.py
"""
Deterministic FIFO/LIFO cost-basis engine.

Rules:
- Transactions are grouped per asset and processed in timestamp order; equal
  timestamps keep ingestion order (`Transaction.sequence`).
- Acquisitions (buy, transfer-in, airdrop, stake-reward) open a Lot whose unit
  cost is (fiat_value + fee) / amount.
- Disposals (sell, transfer-out, fee) consume open lots from the head (FIFO)
  or the tail (LIFO). Fees reduce proceeds, floored at zero; a `fee`
  transaction has zero proceeds.
- Selling more than the open lots hold: the excess is matched at zero cost
  and flagged (InsufficientCostBasis warning), or rejected, depending on the
  configured ExcessDisposalPolicy.

Design:
- This file is *pure logic* (no DB calls, no network). Give it a list of
  priced Transactions; get back a CostBasisResult. Same ordered input, same
  output, whatever the worker count.
"""

from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, getcontext
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from .errors import InsufficientCostBasis, InsufficientCostBasisError
from .schemas import ACQUISITION_TYPES, DISPOSAL_TYPES, Transaction, TxType

# Use sufficient precision for money math (increase if you need sub-satoshi granularity).
getcontext().prec = 28

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class LotMethod(str, Enum):
    FIFO = "FIFO"
    LIFO = "LIFO"


class ExcessDisposalPolicy(str, Enum):
    ZERO_BASIS = "zero-basis"
    REJECT = "reject"


@dataclass
class Lot:
    """
    An open acquisition. `quantity_remaining` only ever decreases; the lot
    leaves the open set when it reaches zero.
    """

    lot_id: str
    asset: str
    acquired_at: datetime
    quantity_remaining: Decimal
    unit_cost_basis: Decimal  # EUR per unit, fees included

    @property
    def total_cost(self) -> Decimal:
        return self.quantity_remaining * self.unit_cost_basis


@dataclass(frozen=True)
class LotMatch:
    """
    How much of one lot a disposal consumed. `lot_id` is None for the
    unmatched excess of an oversell (zero cost).
    """

    lot_id: Optional[str]
    acquired_at: Optional[datetime]
    quantity: Decimal
    unit_cost: Decimal
    cost: Decimal

    def holding_days(self, disposed_at: datetime) -> Optional[int]:
        if self.acquired_at is None:
            return None
        return max(0, (disposed_at - self.acquired_at).days)


@dataclass(frozen=True)
class DisposalEvent:
    transaction_id: str
    asset: str
    kind: TxType
    disposed_at: datetime
    quantity: Decimal
    proceeds: Decimal
    cost_basis: Decimal
    gain_or_loss: Decimal
    matched_lot_ids: Tuple[str, ...]
    components: Tuple[LotMatch, ...] = ()
    unmatched_quantity: Decimal = ZERO

    @property
    def insufficient_cost_basis(self) -> bool:
        return self.unmatched_quantity > 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "transaction_id": self.transaction_id,
            "asset": self.asset,
            "kind": self.kind.value,
            "disposed_at": self.disposed_at.isoformat(),
            "quantity": self.quantity,
            "proceeds": self.proceeds,
            "cost_basis": self.cost_basis,
            "gain_or_loss": self.gain_or_loss,
            "matched_lot_ids": list(self.matched_lot_ids),
            "unmatched_quantity": self.unmatched_quantity,
            "insufficient_cost_basis": self.insufficient_cost_basis,
            "components": [
                {
                    "lot_id": c.lot_id,
                    "acquired_at": c.acquired_at.isoformat() if c.acquired_at else None,
                    "quantity": c.quantity,
                    "unit_cost": c.unit_cost,
                    "cost": c.cost,
                }
                for c in self.components
            ],
        }


@dataclass
class CostBasisResult:
    disposals: List[DisposalEvent] = field(default_factory=list)
    open_lots: Dict[str, List[Lot]] = field(default_factory=dict)
    warnings: List[InsufficientCostBasis] = field(default_factory=list)

    def holdings(self) -> Dict[str, Dict[str, Decimal]]:
        return holdings_summary(self.open_lots)


def _ordered(transactions: Iterable[Transaction]) -> List[Transaction]:
    # id breaks the remaining ties so re-ingested input sorts the same way
    return sorted(transactions, key=lambda t: (t.timestamp, t.sequence, t.id))


def _consume(
    lots: Deque[Lot], qty: Decimal, method: LotMethod
) -> Tuple[List[LotMatch], Decimal]:
    """Take `qty` from the open lots; returns (matches, unmatched remainder)."""
    matches: List[LotMatch] = []
    remaining = qty
    while remaining > 0 and lots:
        lot = lots[0] if method is LotMethod.FIFO else lots[-1]
        take = min(lot.quantity_remaining, remaining)
        matches.append(
            LotMatch(
                lot_id=lot.lot_id,
                acquired_at=lot.acquired_at,
                quantity=take,
                unit_cost=lot.unit_cost_basis,
                cost=lot.unit_cost_basis * take,
            )
        )
        lot.quantity_remaining -= take
        remaining -= take
        if lot.quantity_remaining == 0:
            if method is LotMethod.FIFO:
                lots.popleft()
            else:
                lots.pop()
    return matches, remaining


def match_asset(
    asset: str,
    transactions: List[Transaction],
    method: LotMethod = LotMethod.FIFO,
    policy: ExcessDisposalPolicy = ExcessDisposalPolicy.ZERO_BASIS,
) -> Tuple[List[DisposalEvent], List[Lot], List[InsufficientCostBasis]]:
    """
    Run the matcher for a single asset. `transactions` must already be in
    processing order and all belong to `asset`.
    """
    lots: Deque[Lot] = deque()
    events: List[DisposalEvent] = []
    warnings: List[InsufficientCostBasis] = []

    for t in transactions:
        fee = t.fee_amount or ZERO

        if t.type in ACQUISITION_TYPES:
            if t.fiat_value is None:
                raise ValueError(f"Transaction {t.id} ({asset}) has no fiat value; price it first.")
            lots.append(
                Lot(
                    lot_id=t.id,
                    asset=asset,
                    acquired_at=t.timestamp,
                    quantity_remaining=t.amount,
                    unit_cost_basis=(t.fiat_value + fee) / t.amount,
                )
            )
            continue

        if t.type not in DISPOSAL_TYPES:
            continue

        if t.type is TxType.FEE:
            proceeds = ZERO
        else:
            if t.fiat_value is None:
                raise ValueError(f"Transaction {t.id} ({asset}) has no fiat value; price it first.")
            proceeds = max(ZERO, t.fiat_value - fee)

        matches, unmatched = _consume(lots, t.amount, method)
        if unmatched > 0:
            flag = InsufficientCostBasis(
                asset=asset,
                transaction_id=t.id,
                disposed_at=t.timestamp,
                requested=t.amount,
                matched=t.amount - unmatched,
            )
            if policy is ExcessDisposalPolicy.REJECT:
                raise InsufficientCostBasisError(
                    f"Disposal of {t.amount} {asset} on {t.timestamp.date().isoformat()} exceeds "
                    f"recorded holdings by {unmatched} {asset}."
                )
            logger.warning(
                "Disposal %s sells %s %s but only %s available; assuming zero basis for %s",
                t.id, t.amount, asset, flag.matched, unmatched,
            )
            warnings.append(flag)
            matches.append(
                LotMatch(lot_id=None, acquired_at=None, quantity=unmatched, unit_cost=ZERO, cost=ZERO)
            )

        cost_total = sum((m.cost for m in matches), ZERO)
        events.append(
            DisposalEvent(
                transaction_id=t.id,
                asset=asset,
                kind=t.type,
                disposed_at=t.timestamp,
                quantity=t.amount,
                proceeds=proceeds,
                cost_basis=cost_total,
                gain_or_loss=proceeds - cost_total,
                matched_lot_ids=tuple(m.lot_id for m in matches if m.lot_id is not None),
                components=tuple(matches),
                unmatched_quantity=unmatched,
            )
        )

    return events, list(lots), warnings


def compute_cost_basis(
    transactions: Iterable[Transaction],
    method: LotMethod | str = LotMethod.FIFO,
    policy: ExcessDisposalPolicy | str = ExcessDisposalPolicy.ZERO_BASIS,
    until: Optional[datetime] = None,
    max_workers: int = 1,
) -> CostBasisResult:
    """
    Match every asset independently. With `until`, only transactions at or
    before that instant are considered (year-end holdings snapshots).
    Assets are independent, so `max_workers > 1` fans them out to threads;
    results are merged in asset order so the output never depends on timing.
    """
    method = LotMethod(method)
    policy = ExcessDisposalPolicy(policy)

    by_asset: Dict[str, List[Transaction]] = {}
    for t in _ordered(transactions):
        if until is not None and t.timestamp > until:
            continue
        by_asset.setdefault(t.asset, []).append(t)

    assets = sorted(by_asset)

    def run(asset: str):
        return match_asset(asset, by_asset[asset], method, policy)

    if max_workers > 1 and len(assets) > 1:
        with ThreadPoolExecutor(max_workers=min(max_workers, len(assets))) as pool:
            outcomes = list(pool.map(run, assets))
    else:
        outcomes = [run(a) for a in assets]

    result = CostBasisResult()
    for asset, (events, lots, warnings) in zip(assets, outcomes):
        result.disposals.extend(events)
        if lots:
            result.open_lots[asset] = lots
        result.warnings.extend(warnings)

    # chronological across assets; per-asset order is already fixed
    result.disposals.sort(key=lambda e: (e.disposed_at, e.asset))
    return result


def holdings_summary(open_lots: Dict[str, List[Lot]]) -> Dict[str, Dict[str, Decimal]]:
    """Per-asset quantity, total cost and average unit cost of the open lots."""
    out: Dict[str, Dict[str, Decimal]] = {}
    for asset in sorted(open_lots):
        qty = sum((l.quantity_remaining for l in open_lots[asset]), ZERO)
        cost = sum((l.total_cost for l in open_lots[asset]), ZERO)
        if qty <= 0:
            continue
        out[asset] = {"quantity": qty, "total_cost": cost, "average_cost": cost / qty}
    return out
