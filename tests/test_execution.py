import asyncio

import pytest

from funding_hedge.errors import TransientNetworkError
from funding_hedge.execution import (
    PERP_ROLLED_BACK,
    ROLLBACK_FAILED,
    SPOT_ROLLED_BACK,
    ExecutionService,
)
from funding_hedge.types import OrderStatus, OrderStatusKind

from conftest import NOW, FakeConnector


def _svc(connector, config) -> ExecutionService:
    return ExecutionService(connector, config, clock=lambda: NOW)


def _no_reduce_only_on_spot(connector: FakeConnector) -> bool:
    return all(not reduce_only for name, _, _, reduce_only in connector.orders if name.startswith("@"))


def test_open_pair_fills_both_legs(connector, config):
    pair = connector.pairs["BTC"]
    result = asyncio.run(_svc(connector, config).open_pair(pair, 0.5))

    assert result.success
    assert connector.leverage_calls == [("BTC", 1, "isolated")]
    assert ("BTC", False, 0.5, False) in connector.orders
    assert ("@1", True, 0.5, False) in connector.orders

    pos = result.position
    assert pos.derivative_size == -0.5 and pos.spot_size == 0.5
    assert pos.is_delta_neutral()
    assert pos.opened_at == NOW
    assert pos.position_value_usd == pytest.approx(50.0)


def test_spot_failure_rolls_back_perp_with_reduce_only(connector, config):
    connector.fail_legs.add("@1")
    pair = connector.pairs["BTC"]

    result = asyncio.run(_svc(connector, config).open_pair(pair, 0.5))

    assert not result.success
    assert result.error == "SPOT_LEG_FAILED"
    assert result.recovery_action == PERP_ROLLED_BACK
    assert connector.orders[-1] == ("BTC", True, 0.5, True)
    assert "BTC" not in connector.positions.perps
    assert _no_reduce_only_on_spot(connector)


def test_spot_exception_is_treated_as_failed_leg(connector, config):
    connector.raise_on["@1"] = TransientNetworkError("connection failed")
    result = asyncio.run(_svc(connector, config).open_pair(connector.pairs["BTC"], 0.5))

    assert result.recovery_action == PERP_ROLLED_BACK
    assert result.leg_results[1].kind == OrderStatusKind.ERROR
    assert "BTC" not in connector.positions.perps


def test_perp_failure_sells_spot_without_reduce_only(connector, config):
    connector.fail_legs.add("BTC")
    result = asyncio.run(_svc(connector, config).open_pair(connector.pairs["BTC"], 0.5))

    assert result.error == "PERP_LEG_FAILED"
    assert result.recovery_action == SPOT_ROLLED_BACK
    assert connector.orders[-1] == ("@1", False, 0.5, False)
    assert "BTC" not in connector.positions.spot


def test_failed_rollback_is_reported(config):
    class StuckPerp(FakeConnector):
        async def place_order(self, leg, is_buy, size, reduce_only=False):
            if reduce_only:
                self.orders.append((leg.name, is_buy, size, reduce_only))
                return OrderStatus(OrderStatusKind.ERROR, leg.name, is_buy, size, error="timeout")
            return await super().place_order(leg, is_buy, size, reduce_only)

    connector = StuckPerp()
    connector.fail_legs.add("@1")
    result = asyncio.run(_svc(connector, config).open_pair(connector.pairs["BTC"], 0.5))

    assert result.recovery_action == ROLLBACK_FAILED
    assert connector.positions.perps["BTC"].size == -0.5


def test_both_legs_failing_needs_no_rollback(connector, config):
    connector.fail_legs.update({"BTC", "@1"})
    result = asyncio.run(_svc(connector, config).open_pair(connector.pairs["BTC"], 0.5))

    assert result.error == "BOTH_LEGS_FAILED"
    assert result.recovery_action is None
    assert len(connector.orders) == 2


def test_size_mismatch_is_reported_not_corrected(connector, config):
    connector.fill_ratio["@1"] = 0.9
    result = asyncio.run(_svc(connector, config).open_pair(connector.pairs["BTC"], 1.0))

    assert result.success
    assert result.size_mismatch_pct == pytest.approx(10.0)
    assert len(connector.orders) == 2


def test_size_rounding_to_zero_places_nothing(connector, config):
    result = asyncio.run(_svc(connector, config).open_pair(connector.pairs["BTC"], 0.004))

    assert result.error == "SIZE_TOO_SMALL"
    assert connector.orders == []
    assert connector.leverage_calls == []


def test_legs_are_dispatched_concurrently(config):
    class Barrier(FakeConnector):
        def __init__(self):
            super().__init__()
            self.started = 0
            self.both_started = None

        async def place_order(self, leg, is_buy, size, reduce_only=False):
            if self.both_started is None:
                self.both_started = asyncio.Event()
            self.started += 1
            if self.started == 2:
                self.both_started.set()
            await asyncio.wait_for(self.both_started.wait(), timeout=1.0)
            return await super().place_order(leg, is_buy, size, reduce_only)

    connector = Barrier()
    result = asyncio.run(_svc(connector, config).open_pair(connector.pairs["BTC"], 0.5))
    assert result.success


def test_close_pair_uses_reduce_only_perp_and_plain_spot(connector, config):
    svc = _svc(connector, config)
    opened = asyncio.run(svc.open_pair(connector.pairs["BTC"], 0.5))
    connector.orders.clear()

    result = asyncio.run(svc.close_pair(connector.pairs["BTC"], opened.position))

    assert result.success
    assert sorted(connector.orders) == [("@1", False, 0.5, False), ("BTC", True, 0.5, True)]
    assert connector.positions.perps == {} and connector.positions.spot == {}


def test_close_pair_retries_failed_leg_once(connector, config):
    svc = _svc(connector, config)
    opened = asyncio.run(svc.open_pair(connector.pairs["BTC"], 0.5))
    connector.fail_counts["@1"] = 1

    result = asyncio.run(svc.close_pair(connector.pairs["BTC"], opened.position))

    assert result.success
    assert len(result.leg_results) == 3


def test_close_pair_reports_remaining_imbalance(connector, config):
    svc = _svc(connector, config)
    opened = asyncio.run(svc.open_pair(connector.pairs["BTC"], 0.5))
    connector.fail_legs.add("@1")

    result = asyncio.run(svc.close_pair(connector.pairs["BTC"], opened.position))

    assert not result.success
    assert result.error == "SPOT_LEG_FAILED"
    assert "BTC" not in connector.positions.perps
    assert connector.positions.spot["BTC"].total == 0.5
