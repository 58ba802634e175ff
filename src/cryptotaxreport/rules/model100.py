from __future__ import annotations
from decimal import Decimal
from typing import Dict, List, Tuple
from .base import DisposalFilter, FormContext, FormResult, Section
from cryptotaxreport.cost_basis import DisposalEvent

ONE_YEAR_DAYS = 365
ZERO = Decimal("0")


def split_by_term(event: DisposalEvent) -> Tuple[Decimal, Decimal, Decimal, Decimal]:
    """
    Split one disposal into (short_proceeds, short_cost, long_proceeds, long_cost)
    using each matched lot's holding period. Proceeds are allocated pro rata
    by quantity; the last component takes the remainder so the parts add up
    exactly. Unmatched (zero-basis) quantity has no holding period and counts
    as short term.
    """
    sp = sc = lp = lc = ZERO
    allocated = ZERO
    comps = list(event.components)
    for i, comp in enumerate(comps):
        if i == len(comps) - 1:
            share = event.proceeds - allocated
        else:
            share = event.proceeds * comp.quantity / event.quantity
            allocated += share
        days = comp.holding_days(event.disposed_at)
        if days is not None and days >= ONE_YEAR_DAYS:
            lp += share
            lc += comp.cost
        else:
            sp += share
            sc += comp.cost
    return sp, sc, lp, lc


class Model100Rule(DisposalFilter):
    """IRPF annual return: capital gains from virtual currency transfers."""

    report_type = "model-100"
    title = "Modelo 100 - IRPF: ganancias y pérdidas patrimoniales (monedas virtuales)"
    needs_holdings = False

    def build(self, events: List[DisposalEvent], ctx: FormContext) -> FormResult:
        by_asset: Dict[str, Dict[str, Decimal]] = {}
        st_gains = st_losses = lt_gains = lt_losses = ZERO
        rows = []
        unmatched = 0

        for ev in events:
            sp, sc, lp, lc = split_by_term(ev)
            st, lt = sp - sc, lp - lc
            if st > 0:
                st_gains += st
            else:
                st_losses += -st
            if lt > 0:
                lt_gains += lt
            else:
                lt_losses += -lt
            if ev.insufficient_cost_basis:
                unmatched += 1

            agg = by_asset.setdefault(
                ev.asset, {"transfer_value": ZERO, "acquisition_value": ZERO, "gain_or_loss": ZERO}
            )
            agg["transfer_value"] += ev.proceeds
            agg["acquisition_value"] += ev.cost_basis
            agg["gain_or_loss"] += ev.gain_or_loss
            terms = {
                "long" if (c.holding_days(ev.disposed_at) or 0) >= ONE_YEAR_DAYS else "short"
                for c in ev.components
            }
            rows.append([
                ev.disposed_at.date().isoformat(), ev.asset, ev.quantity, ev.proceeds,
                ev.cost_basis, ev.gain_or_loss, terms.pop() if len(terms) == 1 else "mixed",
            ])

        entries = [
            {"virtual_currency": asset, **vals} for asset, vals in sorted(by_asset.items())
        ]
        fields = {
            "entries": entries,
            "total_short_term_gains": st_gains,
            "total_short_term_losses": st_losses,
            "total_long_term_gains": lt_gains,
            "total_long_term_losses": lt_losses,
            "net_short_term": st_gains - st_losses,
            "net_long_term": lt_gains - lt_losses,
            "net_total": (st_gains - st_losses) + (lt_gains - lt_losses),
        }
        notes = []
        if unmatched:
            notes.append(
                f"{unmatched} disposal(s) exceed recorded acquisitions; the excess is reported "
                "with zero acquisition value and should be reviewed."
            )
        return FormResult(
            report_type=self.report_type,
            title=self.title,
            fields=fields,
            sections=[
                Section(
                    "Capital gains by asset",
                    ["Asset", "Transfer value (EUR)", "Acquisition value (EUR)", "Gain/Loss (EUR)"],
                    [[e["virtual_currency"], e["transfer_value"], e["acquisition_value"], e["gain_or_loss"]]
                     for e in entries],
                ),
                Section(
                    "Holding period summary",
                    ["Term", "Gains (EUR)", "Losses (EUR)", "Net (EUR)"],
                    [
                        ["Short term (< 1 year)", st_gains, st_losses, st_gains - st_losses],
                        ["Long term (>= 1 year)", lt_gains, lt_losses, lt_gains - lt_losses],
                    ],
                ),
                Section(
                    "Disposals",
                    ["Date", "Asset", "Quantity", "Proceeds", "Cost basis", "Gain/Loss", "Term"],
                    rows,
                ),
            ],
            notes=notes,
        )
