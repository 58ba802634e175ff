from datetime import date
from decimal import Decimal

import pytest

from cryptotaxreport.cost_basis import compute_cost_basis
from cryptotaxreport.rules import FormContext, rule_for
from cryptotaxreport.rules.model100 import split_by_term


@pytest.fixture
def mixed_term_sale(make_tx):
    txs = [
        make_tx("old", "2021-01-01T00:00:00", "BTC", "buy", "1", fiat="10000"),
        make_tx("new", "2023-01-01T00:00:00", "BTC", "buy", "1", fiat="20000"),
        make_tx("s1", "2023-06-01T00:00:00", "BTC", "sell", "1.5", fiat="30000"),
        make_tx("gas", "2023-06-02T00:00:00", "BTC", "fee", "0.01"),
    ]
    return compute_cost_basis(txs)


def test_split_by_term_allocates_proceeds_per_lot(mixed_term_sale):
    sale = mixed_term_sale.disposals[0]
    sp, sc, lp, lc = split_by_term(sale)
    assert (lp, lc) == (Decimal("20000"), Decimal("10000"))
    assert (sp, sc) == (Decimal("10000"), Decimal("10000"))
    assert sp + lp == sale.proceeds


def test_model100_fields_and_sections(mixed_term_sale):
    rule = rule_for("model-100")
    included = [e for e in mixed_term_sale.disposals if rule.includes(e)]
    assert [e.transaction_id for e in included] == ["s1"]

    form = rule.build(included, FormContext(fiscal_year=2023, lot_method="FIFO"))
    f = form.fields
    assert f["entries"] == [{
        "virtual_currency": "BTC",
        "transfer_value": Decimal("30000"),
        "acquisition_value": Decimal("20000"),
        "gain_or_loss": Decimal("10000"),
    }]
    assert f["total_long_term_gains"] == Decimal("10000")
    assert f["total_short_term_gains"] == Decimal("0")
    assert f["net_total"] == Decimal("10000")
    disposals = next(s for s in form.sections if s.title == "Disposals")
    assert disposals.rows[0][-1] == "mixed"


def test_model100_flags_unmatched_disposals(make_tx):
    result = compute_cost_basis([
        make_tx("b", "2023-01-01T00:00:00", "ETH", "buy", "1", fiat="1000"),
        make_tx("s", "2023-02-01T00:00:00", "ETH", "sell", "2", fiat="4000"),
    ])
    form = rule_for("model-100").build(result.disposals, FormContext(fiscal_year=2023, lot_method="FIFO"))
    assert any("zero acquisition value" in n for n in form.notes)
    # unmatched quantity has no holding period and counts as short term
    assert form.fields["total_short_term_gains"] == Decimal("3000")


def _holdings_ctx(qty: str, price: str) -> FormContext:
    return FormContext(
        fiscal_year=2023,
        lot_method="FIFO",
        holdings={"BTC": {"quantity": Decimal(qty), "total_cost": Decimal("1"), "average_cost": Decimal("1")}},
        holding_prices={"BTC": Decimal(price)},
        valuation_date=date(2023, 12, 31),
        location="Binance (Malta)",
    )


def test_model720_threshold():
    rule = rule_for("model-720")
    assert rule.needs_holdings

    above = rule.build([], _holdings_ctx("2", "30000"))
    assert above.fields["declaration_required"] is True
    assert above.fields["total_value_eur"] == Decimal("60000")
    assert above.fields["entries"][0]["location"] == "Binance (Malta)"
    assert above.fields["valuation_date"] == "2023-12-31"

    below = rule.build([], _holdings_ctx("1", "30000"))
    assert below.fields["declaration_required"] is False
    assert any("filing is not required" in n for n in below.notes)


def test_model714_taxable_wealth():
    form = rule_for("model-714").build([], _holdings_ctx("20", "40000"))
    assert form.fields["total_wealth_eur"] == Decimal("800000")
    assert form.fields["taxable_wealth_eur"] == Decimal("100000")

    small = rule_for("model-714").build([], _holdings_ctx("1", "40000"))
    assert small.fields["taxable_wealth_eur"] == Decimal("0")


def test_unknown_report_type():
    with pytest.raises(ValueError):
        rule_for("model-999")
