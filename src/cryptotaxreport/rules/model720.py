from __future__ import annotations
from decimal import Decimal
from typing import List
from .base import DisposalFilter, FormContext, FormResult, Section, valued_holdings
from cryptotaxreport.cost_basis import DisposalEvent

# Declaration is due when assets held abroad exceed this value at year end
REPORTING_THRESHOLD_EUR = Decimal("50000")


class Model720Rule(DisposalFilter):
    """Informative declaration of virtual currencies held abroad, valued at year end."""

    report_type = "model-720"
    title = "Modelo 720 - Declaración informativa de bienes en el extranjero (monedas virtuales)"
    needs_holdings = True

    def build(self, events: List[DisposalEvent], ctx: FormContext) -> FormResult:
        holdings = valued_holdings(ctx)
        total = sum((h["total_value"] for h in holdings if h["total_value"] is not None), Decimal("0"))
        location = ctx.location or "Unknown custodian"
        entries = [
            {
                "description": h["asset"],
                "quantity": h["quantity"],
                "value_eur": h["total_value"],
                "location": location,
            }
            for h in holdings
        ]
        notes = [
            "Only balances with a custodian outside Spain must be declared; "
            "self-custody wallets are listed for completeness."
        ]
        if total <= REPORTING_THRESHOLD_EUR:
            notes.append(
                f"Year-end value {total} EUR does not exceed the {REPORTING_THRESHOLD_EUR} EUR threshold; "
                "filing is not required."
            )
        return FormResult(
            report_type=self.report_type,
            title=self.title,
            fields={
                "valuation_date": ctx.valuation_date.isoformat() if ctx.valuation_date else None,
                "entries": entries,
                "total_value_eur": total,
                "threshold_eur": REPORTING_THRESHOLD_EUR,
                "declaration_required": total > REPORTING_THRESHOLD_EUR,
            },
            sections=[
                Section(
                    "Virtual currencies held at year end",
                    ["Description", "Quantity", "Value (EUR)", "Location"],
                    [[e["description"], e["quantity"], e["value_eur"], e["location"]] for e in entries],
                )
            ],
            notes=notes,
        )
