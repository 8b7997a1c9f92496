import asyncio

import pytest

from funding_hedge.execution import ExecutionService
from funding_hedge.hedge_monitor import HedgeMonitor, classify_quality
from funding_hedge.types import HedgeKind, HedgeNeed, HedgeQuality, PerpPosition

from conftest import NOW, make_pair

MIDS = {"BTC": 100.0, "ETH": 100.0, "SOL": 100.0}


def _monitor(connector, config) -> HedgeMonitor:
    return HedgeMonitor(connector, ExecutionService(connector, config, clock=lambda: NOW), config)


@pytest.mark.parametrize(
    "mismatch, quality",
    [
        (0.0, HedgeQuality.PERFECT),
        (4.99, HedgeQuality.PERFECT),
        (5.0, HedgeQuality.GOOD),
        (14.9, HedgeQuality.GOOD),
        (15.0, HedgeQuality.PARTIAL),
        (30.0, HedgeQuality.PARTIAL),
        (30.1, HedgeQuality.WEAK),
    ],
)
def test_quality_bands(mismatch, quality):
    assert classify_quality(mismatch) == quality


def test_detect_classifies_each_kind(connector, config):
    connector.hold_pair("BTC", short=1.0, spot=1.0)
    connector.hold_pair("ETH", short=1.0, spot=0.5)
    connector.hold_pair("SOL", short=0.0, spot=2.0)

    needs = {n.symbol: n for n in _monitor(connector, config).detect(connector.positions, MIDS)}

    assert set(needs) == {"ETH", "SOL"}
    assert needs["ETH"].kind == HedgeKind.WEAK_HEDGE
    assert needs["ETH"].required_correction_size == pytest.approx(0.5)
    assert needs["ETH"].mismatch_pct == pytest.approx(50.0)
    assert needs["SOL"].kind == HedgeKind.UNHEDGED_SPOT
    assert needs["SOL"].required_correction_size == 2.0


def test_detect_unhedged_derivative_and_ignores_partial(connector, config):
    connector.hold_pair("BTC", short=1.0, spot=0.0)
    connector.hold_pair("ETH", short=1.0, spot=0.8)

    needs = _monitor(connector, config).detect(connector.positions, MIDS)

    assert [(n.symbol, n.kind) for n in needs] == [("BTC", HedgeKind.UNHEDGED_DERIVATIVE)]


def test_detect_ignores_dust_and_long_perps(connector, config):
    connector.hold_pair("BTC", short=0.0, spot=0.05)
    connector.positions.perps["ETH"] = PerpPosition(coin="ETH", size=2.0, entry_price=100.0)

    assert _monitor(connector, config).detect(connector.positions, MIDS) == []


def test_detect_bridged_spot_token(connector, config):
    connector.pairs["BTC"] = make_pair("BTC", spot_index=142, bridged=True)
    connector.mids["@142"] = 100.0
    connector.hold_pair("BTC", short=0.0, spot=1.0)

    needs = _monitor(connector, config).detect(connector.positions, MIDS)

    assert needs[0].symbol == "BTC"
    assert needs[0].kind == HedgeKind.UNHEDGED_SPOT


def test_weak_hedge_strengthens_smaller_spot_leg_and_is_idempotent(connector, config):
    connector.hold_pair("ETH", short=1.0, spot=0.5)
    monitor = _monitor(connector, config)

    first = asyncio.run(monitor.run())
    second = asyncio.run(monitor.run())

    assert [r.action for r in first] == ["STRENGTHENED_SPOT"]
    assert connector.orders == [("@2", True, 0.5, False)]
    assert second == []


def test_weak_hedge_strengthens_smaller_perp_leg(connector, config):
    connector.hold_pair("ETH", short=0.5, spot=1.0)
    results = asyncio.run(_monitor(connector, config).run())

    assert results[0].action == "STRENGTHENED_PERP"
    assert connector.positions.perps["ETH"].size == pytest.approx(-1.0)


def test_weak_hedge_falls_back_to_trimming(connector, config):
    connector.hold_pair("ETH", short=1.0, spot=0.5)
    connector.fail_legs.add("@2")

    results = asyncio.run(_monitor(connector, config).run())

    assert results[0].action == "TRIMMED_PERP"
    assert connector.orders[-1] == ("ETH", True, 0.5, True)
    assert connector.positions.perps["ETH"].size == pytest.approx(-0.5)


def test_unhedged_spot_opens_short_at_1x(connector, config):
    connector.hold_pair("SOL", short=0.0, spot=2.0)
    monitor = _monitor(connector, config)

    results = asyncio.run(monitor.run())

    assert results[0].action == "OPENED_PERP_HEDGE"
    assert connector.leverage_calls == [("SOL", 1, "isolated")]
    assert connector.positions.perps["SOL"].size == -2.0
    assert asyncio.run(monitor.run()) == []


def test_unhedged_spot_closes_spot_when_short_fails(connector, config):
    connector.hold_pair("SOL", short=0.0, spot=2.0)
    connector.fail_legs.add("SOL")

    results = asyncio.run(_monitor(connector, config).run())

    assert results[0].action == "CLOSED_SPOT"
    assert results[0].success
    assert connector.orders[-1] == ("@3", False, 2.0, False)
    assert "SOL" not in connector.positions.spot


def test_unhedged_derivative_closes_perp_when_spot_buy_fails(connector, config):
    connector.hold_pair("BTC", short=1.0, spot=0.0)
    connector.fail_legs.add("@1")

    results = asyncio.run(_monitor(connector, config).run())

    assert results[0].action == "CLOSED_PERP"
    assert connector.orders[-1] == ("BTC", True, 1.0, True)


def test_repair_failure_is_reported(connector, config):
    connector.hold_pair("BTC", short=1.0, spot=0.0)
    connector.fail_legs.update({"@1", "BTC"})

    results = asyncio.run(_monitor(connector, config).run())

    assert not results[0].success
    assert results[0].action == "FAILED"


def test_repairs_ignore_position_ceiling(connector, config):
    config.max_position_usd = 1.0
    connector.hold_pair("SOL", short=0.0, spot=2.0)

    results = asyncio.run(_monitor(connector, config).run())

    assert results[0].success
    assert connector.positions.perps["SOL"].size == -2.0


def test_repair_below_venue_minimum_is_skipped(connector, config):
    need = HedgeNeed(symbol="BTC", kind=HedgeKind.UNHEDGED_SPOT, mismatch_pct=100.0, required_correction_size=0.05)

    result = asyncio.run(_monitor(connector, config).repair_one(need))

    assert not result.success
    assert result.skipped_reason == "BELOW_VENUE_MINIMUM"
    assert connector.orders == []
