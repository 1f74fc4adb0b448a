"""
Tests for the slippage model and the trade execution simulator.

Coverage:
- Daily volume, market impact and slippage arithmetic
- LIMIT price clamping (BUY <= limit, SELL >= limit)
- Partial fills above the 10%-of-volume threshold
- Order validation errors surfaced on FAILED executions
- Random failures, batch submission and statistics
"""

import random
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from core.execution import TradeExecutionSimulator
from core.models import OrderType, TradeAction, TradeOrder, TradeStatus
from core.slippage_model import SlippageModel
from tests.helpers import FixedClock, make_asset, make_simulator


def _order(asset, quantity, action=TradeAction.SELL, order_type=OrderType.SMART,
           tolerance=0.005, limit_price=None):
    return TradeOrder(
        asset=asset,
        action=action,
        quantity=quantity,
        order_type=order_type,
        slippage_tolerance=tolerance,
        limit_price=limit_price,
    )


class TestSlippageModel:
    """Impact, slippage, price and fill arithmetic"""

    def test_daily_volume_uses_class_multiplier(self):
        bond = make_asset("B", price=100.0, quantity=200_000)  # 20M market value
        assert SlippageModel().estimate_daily_volume(bond) == pytest.approx(4_000_000)

    def test_market_impact_scales_with_notional(self):
        bond = make_asset("B", price=100.0, quantity=200_000)
        assert SlippageModel().market_impact(bond, 1_000_000) == pytest.approx(0.00025)

    def test_market_impact_capped(self):
        loan = make_asset("L", asset_type="LOAN", loan_type="AUTO_LOAN", quantity=1_000)
        assert SlippageModel().market_impact(loan, 10_000_000) == pytest.approx(0.05)

    def test_zero_volume_uses_max_impact(self):
        empty = make_asset("E", quantity=0)
        assert SlippageModel().market_impact(empty, 1_000) == pytest.approx(0.05)

    def test_smart_slippage_within_band(self):
        model = SlippageModel(rng=random.Random(3))
        for _ in range(50):
            assert 0.00056 - 1e-12 <= model.slippage(OrderType.SMART, 0.01) <= 0.00084 + 1e-12

    def test_slippage_capped_at_tolerance(self):
        model = SlippageModel(rng=random.Random(3))
        assert model.slippage(OrderType.MARKET, 0.0001) == pytest.approx(0.0001)

    def test_price_moves_against_trader(self):
        model = SlippageModel()
        buy = model.execution_price(100.0, TradeAction.BUY, 0.001, 0.001, OrderType.MARKET)
        sell = model.execution_price(100.0, TradeAction.SELL, 0.001, 0.001, OrderType.MARKET)
        assert buy == pytest.approx(100.2)
        assert sell == pytest.approx(99.8)

    def test_limit_buy_clamped_to_limit(self):
        price = SlippageModel().execution_price(100.0, TradeAction.BUY, 0.01, 0.001, OrderType.LIMIT, 100.5)
        assert price == pytest.approx(100.5)

    def test_limit_sell_clamped_to_limit(self):
        price = SlippageModel().execution_price(100.0, TradeAction.SELL, 0.01, 0.001, OrderType.LIMIT, 99.5)
        assert price == pytest.approx(99.5)

    def test_rounding_never_crosses_limit(self):
        model = SlippageModel()
        limit = 100.00004
        price = model.execution_price(100.0, TradeAction.BUY, 0.0, 0.00000049, OrderType.LIMIT, limit)
        assert price <= limit

    def test_small_order_fills_fully(self):
        bond = make_asset("B", price=100.0, quantity=200_000)  # volume 4M
        assert SlippageModel().fill_quantity(bond, 1_000, 100_000) == 1_000

    def test_large_order_fills_partially(self):
        bond = make_asset("B", price=100.0, quantity=200_000)
        model = SlippageModel(rng=random.Random(5))
        filled = model.fill_quantity(bond, 10_000, 1_000_000)
        assert 6_000 <= filled <= 10_000
        assert filled == int(filled)


class TestOrderValidation:
    """Pre-submission checks"""

    def test_valid_order(self):
        simulator = make_simulator()
        assert simulator.validate_order(_order(make_asset("B"), 100)).valid

    def test_non_positive_quantity(self):
        result = make_simulator().validate_order(_order(make_asset("B"), 0))
        assert not result.valid
        assert "Quantity must be positive" in result.errors

    def test_limit_without_price(self):
        result = make_simulator().validate_order(_order(make_asset("B"), 10, order_type=OrderType.LIMIT))
        assert "Limit price required for limit orders" in result.errors

    def test_tolerance_out_of_range(self):
        result = make_simulator().validate_order(_order(make_asset("B"), 10, tolerance=0.2))
        assert any("Slippage tolerance" in e for e in result.errors)

    def test_loan_minimum_notional(self):
        loan = make_asset("L", asset_type="LOAN", loan_type="COMMERCIAL_MORTGAGE", price=100.0, quantity=5_000)
        result = make_simulator().validate_order(_order(loan, 500))  # 50k notional
        assert any("Minimum trade size for loans" in e for e in result.errors)

    def test_stock_outside_market_hours(self):
        late = FixedClock(datetime(2026, 10, 14, 23, 30, tzinfo=timezone.utc))  # 19:30 New York
        stock = make_asset("S", security_type="STOCK")
        result = make_simulator(clock=late).validate_order(_order(stock, 10))
        assert any("outside market hours" in e for e in result.errors)

    def test_stock_inside_market_hours(self):
        stock = make_asset("S", security_type="STOCK")
        assert make_simulator().validate_order(_order(stock, 10)).valid

    def test_multiple_errors_collected(self):
        result = make_simulator().validate_order(
            _order(make_asset("B"), -1, order_type=OrderType.LIMIT, tolerance=0.5)
        )
        assert len(result.errors) == 3


class TestExecuteTrade:
    """Single-order execution"""

    def test_invalid_order_fails_with_errors(self):
        simulator = make_simulator()

        execution = simulator.execute_trade(_order(make_asset("B"), 0))

        assert execution.status == TradeStatus.FAILED
        assert execution.quantity == 0
        assert "Quantity must be positive" in execution.errors

    def test_simulated_failure(self):
        simulator = make_simulator(failure_probability=1.0)

        execution = simulator.execute_trade(_order(make_asset("B"), 100))

        assert execution.status == TradeStatus.FAILED
        assert execution.price == 0
        assert execution.errors == ("Simulated execution failure",)

    def test_full_fill_below_volume_threshold(self):
        bond = make_asset("B", price=100.0, quantity=200_000)
        execution = make_simulator().execute_trade(_order(bond, 1_000))

        assert execution.status == TradeStatus.FILLED
        assert execution.quantity == execution.requested_quantity == 1_000
        assert execution.price < 100.0  # SELL receives less
        assert execution.market_impact > 0
        assert execution.slippage > 0

    def test_partial_fill_above_volume_threshold(self):
        bond = make_asset("B", price=100.0, quantity=20_000)  # volume 400k
        execution = make_simulator().execute_trade(_order(bond, 10_000))  # 1M notional

        assert execution.status == TradeStatus.PARTIAL
        assert 6_000 <= execution.quantity < 10_000

    @pytest.mark.parametrize("seed", range(5))
    def test_limit_buy_never_above_limit(self, seed):
        bond = make_asset("B", price=100.0, quantity=5_000)
        order = _order(bond, 4_000, action=TradeAction.BUY, order_type=OrderType.LIMIT, limit_price=100.05)

        execution = make_simulator(seed=seed).execute_trade(order)

        assert execution.executed
        assert execution.price <= 100.05

    @pytest.mark.parametrize("seed", range(5))
    def test_limit_sell_never_below_limit(self, seed):
        bond = make_asset("B", price=100.0, quantity=5_000)
        order = _order(bond, 4_000, order_type=OrderType.LIMIT, limit_price=99.95)

        execution = make_simulator(seed=seed).execute_trade(order)

        assert execution.executed
        assert execution.price >= 99.95

    def test_latency_simulated_with_injected_sleep(self):
        sleep = Mock()
        simulator = make_simulator()
        simulator.execution_delay_seconds = 0.25
        simulator._sleep = sleep

        simulator.execute_trade(_order(make_asset("B"), 10))

        sleep.assert_called_once_with(0.25)

    def test_metrics_recorded(self):
        metrics = Mock()
        simulator = make_simulator(metrics=metrics)

        simulator.execute_trade(_order(make_asset("B"), 10))

        metrics.record_trade.assert_called_once()
        assert metrics.record_trade.call_args[0][0] == "FILLED"


class TestExecuteBatch:
    def test_results_in_submission_order(self):
        assets = [make_asset(f"B{i}", quantity=100_000) for i in range(4)]
        simulator = make_simulator()

        results = simulator.execute_batch([_order(a, 10) for a in assets])

        assert [r.asset.id for r in results] == ["B0", "B1", "B2", "B3"]
        assert all(r.status == TradeStatus.FILLED for r in results)

    def test_empty_batch(self):
        assert make_simulator().execute_batch([]) == []

    def test_exception_in_one_order_fails_only_that_order(self):
        simulator = make_simulator()
        original = simulator.slippage_model.market_impact

        def impact(asset, notional):
            if asset.id == "BAD":
                raise RuntimeError("pricing blew up")
            return original(asset, notional)

        simulator.slippage_model.market_impact = impact

        results = simulator.execute_batch([
            _order(make_asset("GOOD", quantity=100_000), 10),
            _order(make_asset("BAD", quantity=100_000), 10),
        ])

        assert results[0].status == TradeStatus.FILLED
        assert results[1].status == TradeStatus.FAILED
        assert "pricing blew up" in results[1].errors[0]


class TestQueries:
    def test_order_status_and_statistics(self):
        simulator = make_simulator()
        filled = simulator.execute_trade(_order(make_asset("B", quantity=100_000), 100))
        failed = simulator.execute_trade(_order(make_asset("B", quantity=100_000), 0))

        assert simulator.get_order_status(filled.id) == filled
        assert simulator.get_order_status("missing") is None

        stats = simulator.get_statistics()
        assert stats.total_trades == 2
        assert stats.success_rate == pytest.approx(0.5)
        assert stats.total_volume == pytest.approx(filled.notional)
        assert failed.status == TradeStatus.FAILED

    def test_order_history_is_bounded(self):
        simulator = TradeExecutionSimulator(
            rng=random.Random(1), failure_probability=0.0, execution_delay_seconds=0.0,
            sleep=lambda _: None, max_order_history=3,
        )
        asset = make_asset("B", quantity=100_000)
        executions = [simulator.execute_trade(_order(asset, 10)) for _ in range(500)]

        assert len(simulator._executions) == 3
        assert simulator.get_order_status(executions[0].id) is None
        assert simulator.get_order_status(executions[-1].id) == executions[-1]

        stats = simulator.get_statistics()
        assert stats.total_trades == 500
        assert stats.success_rate == pytest.approx(1.0)
        assert stats.total_volume == pytest.approx(sum(e.notional for e in executions))

    def test_order_history_must_be_positive(self):
        with pytest.raises(ValueError, match="max_order_history"):
            TradeExecutionSimulator(max_order_history=0)

    def test_statistics_empty(self):
        stats = make_simulator().get_statistics()
        assert stats.total_trades == 0
        assert stats.success_rate == 0.0
