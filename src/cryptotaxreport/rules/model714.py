from __future__ import annotations
from decimal import Decimal
from typing import List
from .base import DisposalFilter, FormContext, FormResult, Section, valued_holdings
from cryptotaxreport.cost_basis import DisposalEvent

# General exempt amount; regions may set their own
DEFAULT_EXEMPT_THRESHOLD_EUR = Decimal("700000")


class Model714Rule(DisposalFilter):
    """Wealth tax: virtual currencies valued at year end against the exempt amount."""

    report_type = "model-714"
    title = "Modelo 714 - Impuesto sobre el Patrimonio (monedas virtuales)"
    needs_holdings = True

    def __init__(self, threshold: Decimal = DEFAULT_EXEMPT_THRESHOLD_EUR) -> None:
        self.threshold = threshold

    def build(self, events: List[DisposalEvent], ctx: FormContext) -> FormResult:
        holdings = valued_holdings(ctx)
        total = sum((h["total_value"] for h in holdings if h["total_value"] is not None), Decimal("0"))
        taxable = max(Decimal("0"), total - self.threshold)
        return FormResult(
            report_type=self.report_type,
            title=self.title,
            fields={
                "valuation_date": ctx.valuation_date.isoformat() if ctx.valuation_date else None,
                "assets": holdings,
                "total_wealth_eur": total,
                "exempt_threshold_eur": self.threshold,
                "taxable_wealth_eur": taxable,
            },
            sections=[
                Section(
                    "Virtual currencies at year end",
                    ["Asset", "Quantity", "Unit value (EUR)", "Total value (EUR)"],
                    [[h["asset"], h["quantity"], h["unit_value"], h["total_value"]] for h in holdings],
                ),
                Section(
                    "Wealth summary",
                    ["Total wealth (EUR)", "Exempt threshold (EUR)", "Taxable wealth (EUR)"],
                    [[total, self.threshold, taxable]],
                ),
            ],
            notes=[
                "Only crypto holdings are included; other assets and debts must be added to the return.",
            ],
        )
