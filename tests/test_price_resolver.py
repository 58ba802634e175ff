from datetime import datetime, timezone
from decimal import Decimal

from cryptotaxreport.connectors.exchange import trade_legs
from cryptotaxreport.price_resolver import PriceResolver, PriceUnavailable

from conftest import FakeResponse

NOON = datetime(2023, 12, 1, 12, 0, tzinfo=timezone.utc)


def _price(eur):
    return FakeResponse(200, {"id": "bitcoin", "market_data": {"current_price": {"eur": eur, "usd": 1}}})


def test_override_wins_without_network(settings, fake_session):
    resolver = PriceResolver(fake_session, settings, overrides={"btc:2023-12-01": Decimal("36000")})
    assert resolver.resolve("BTC", NOON) == Decimal("36000")
    assert fake_session.calls == []


def test_eur_is_one(settings, fake_session):
    assert PriceResolver(fake_session, settings).resolve("eur", NOON) == Decimal("1")


def test_coingecko_history_and_cache(settings, fake_session):
    fake_session.queue(_price(35123.45))
    resolver = PriceResolver(fake_session, settings)

    assert resolver.resolve("BTC", NOON) == Decimal("35123.45")
    # same UTC day, different time: served from the cache
    assert resolver.resolve("BTC", NOON.replace(hour=23)) == Decimal("35123.45")

    assert len(fake_session.calls) == 1
    url, params, _ = fake_session.calls[0]
    assert url.endswith("/coins/bitcoin/history")
    assert params["date"] == "01-12-2023"


def test_falls_back_to_prior_day(settings, fake_session):
    fake_session.queue(FakeResponse(200, {"id": "bitcoin"}), _price(34000))
    resolver = PriceResolver(fake_session, settings)
    assert resolver.resolve("BTC", NOON) == Decimal("34000")
    assert [c[1]["date"] for c in fake_session.calls] == ["01-12-2023", "30-11-2023"]


def test_unsupported_asset_is_unavailable(settings, fake_session):
    result = PriceResolver(fake_session, settings).resolve("NOPE", NOON)
    assert isinstance(result, PriceUnavailable)
    assert result.asset == "NOPE"
    assert result.day.isoformat() == "2023-12-01"
    assert fake_session.calls == []


def test_transient_failure_is_not_cached(settings, fake_session, sleeps):
    fake_session.queue(*[FakeResponse(503, {"error": "busy"}) for _ in range(settings.retry_attempts)])
    resolver = PriceResolver(fake_session, settings, sleep=sleeps.append)

    assert isinstance(resolver.resolve("ETH", NOON), PriceUnavailable)
    assert sleeps == [0.5, 1.0]

    fake_session.queue(_price(2000))
    assert resolver.resolve("ETH", NOON) == Decimal("2000")


def test_price_transactions_fills_only_missing_values(settings, fake_session, make_tx):
    txs = [
        make_tx("a", "2023-12-01T08:00:00", "BTC", "buy", "0.5", fiat="15000"),
        make_tx("b", "2023-12-01T09:00:00", "BTC", "transfer-in", "0.1"),
        make_tx("c", "2023-12-01T10:00:00", "ETH", "fee", "0.01"),
        make_tx("d", "2023-12-01T11:00:00", "XYZ", "transfer-in", "5"),
        make_tx("e", "2023-12-01T12:00:00", "XYZ", "transfer-in", "6"),
    ]
    resolver = PriceResolver(fake_session, settings, overrides={"BTC:2023-12-01": Decimal("30000")})
    priced, missing = resolver.price_transactions(txs)

    by_id = {t.id: t for t in priced}
    assert [t.id for t in priced] == ["a", "b", "c", "d", "e"]
    assert by_id["a"].fiat_value == Decimal("15000")
    assert by_id["b"].fiat_value == Decimal("3000")
    assert by_id["b"].price_source == "override"
    assert by_id["c"].fiat_value is None
    assert by_id["d"].fiat_value is None
    # one entry per (asset, day)
    assert [(m.asset, m.day.isoformat()) for m in missing] == [("XYZ", "2023-12-01")]
    assert fake_session.calls == []


def test_usd_commission_is_valued_with_the_fill(settings, fake_session):
    sell, = trade_legs("fill-9", NOON, False, "ETH", "USD", Decimal("1"), Decimal("2000"), Decimal("4"), "USD", "coinbase")
    resolver = PriceResolver(fake_session, settings, overrides={"ETH:2023-12-01": Decimal("1800")})
    (priced,), missing = resolver.price_transactions([sell])

    assert missing == []
    assert priced.fiat_value == Decimal("1800")
    # 4 USD on a 2000 USD fill is 0.2% of the EUR value
    assert priced.fee_amount == Decimal("3.6")
