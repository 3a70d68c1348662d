"""Tests for quote placement rules and price rounding."""

import pytest

from makerpoints.core.models import Order, OrderSide, OrderStatus, PriceSnapshot
from makerpoints.execution.order_gateway import (
    calculate_order_price,
    generate_client_order_id,
    round_quantity,
    round_to_tick,
)
from makerpoints.strategy.quoting import (
    GateDecision,
    ReplaceReason,
    VolatilityGate,
    band_violation,
    crosses_spread,
    distance_bp,
    gap_bp,
)


def make_order(side: OrderSide, price: float) -> Order:
    return Order(side=side, client_order_id="mp_test", price=price, quantity=0.1, status=OrderStatus.OPEN)


class TestOrderPricing:
    """Tests for order price calculation."""

    def test_target_distance_example(self):
        """$90,000 mark at 20 bp quotes 89,820 / 90,180."""
        assert calculate_order_price(OrderSide.BUY, 90000.0, 20.0, 0.01) == 89820.00
        assert calculate_order_price(OrderSide.SELL, 90000.0, 20.0, 0.01) == 90180.00

    def test_buy_below_mark_sell_above(self):
        for mark in (1.2345, 101.37, 2999.99, 64123.457):
            buy = calculate_order_price(OrderSide.BUY, mark, 20.0, 0.01)
            sell = calculate_order_price(OrderSide.SELL, mark, 20.0, 0.01)
            assert buy < mark < sell

    def test_rounding_moves_away_from_mark(self):
        assert round_to_tick(100.019, 0.01, OrderSide.BUY) == 100.01
        assert round_to_tick(100.011, 0.01, OrderSide.SELL) == 100.02
        assert round_to_tick(100.5, 1.0, OrderSide.BUY) == 100.0
        assert round_to_tick(100.5, 1.0, OrderSide.SELL) == 101.0

    def test_on_grid_price_unchanged(self):
        assert round_to_tick(89820.0, 0.01, OrderSide.BUY) == 89820.0
        assert round_to_tick(89820.0, 0.01, OrderSide.SELL) == 89820.0

    def test_round_quantity(self):
        assert round_quantity(0.12345, 0.0001) == 0.1234
        assert round_quantity(0.00009, 0.0001) == 0.0

    def test_client_order_id_format(self):
        client_id = generate_client_order_id(OrderSide.SELL)
        prefix, side, timestamp, nonce = client_id.split("_")
        assert prefix == "mp"
        assert side == "s"
        assert timestamp.isdigit()
        assert len(nonce) == 6
        assert generate_client_order_id(OrderSide.BUY) != generate_client_order_id(OrderSide.BUY)


class TestDistanceBand:
    """Tests for distance checks."""

    def test_too_close_example(self):
        """Buy at 89,820 with mark moving to 89,830 is ~1.1 bp away."""
        distance = distance_bp(89830.0, 89820.0)
        assert distance == pytest.approx(1.113, abs=0.001)
        assert band_violation(distance, 10.0, 30.0) is ReplaceReason.TOO_CLOSE

    def test_in_band(self):
        distance = distance_bp(90000.0, 89820.0)
        assert distance == pytest.approx(20.04, abs=0.01)
        assert band_violation(distance, 10.0, 30.0) is None

    def test_too_far(self):
        distance = distance_bp(90500.0, 90180.0)
        assert band_violation(distance, 10.0, 30.0) is ReplaceReason.TOO_FAR

    def test_band_edges_are_valid(self):
        assert band_violation(10.0, 10.0, 30.0) is None
        assert band_violation(30.0, 10.0, 30.0) is None


class TestSpreadCrossing:
    """Tests for touch detection."""

    def test_buy_at_or_above_bid(self):
        assert crosses_spread(make_order(OrderSide.BUY, 100.0), 100.0, 100.5)
        assert crosses_spread(make_order(OrderSide.BUY, 100.2), 100.0, 100.5)
        assert not crosses_spread(make_order(OrderSide.BUY, 99.9), 100.0, 100.5)

    def test_sell_at_or_below_ask(self):
        assert crosses_spread(make_order(OrderSide.SELL, 100.5), 100.0, 100.5)
        assert not crosses_spread(make_order(OrderSide.SELL, 100.6), 100.0, 100.5)

    def test_no_spread_never_crosses(self):
        assert not crosses_spread(make_order(OrderSide.BUY, 100.0), None, None)


class TestVolatilityGate:
    """Tests for the hysteresis gate."""

    @pytest.fixture
    def gate(self):
        return VolatilityGate(threshold_bp=20.0, resume_ratio=0.8)

    def test_gap(self):
        assert gap_bp(90200.0, 90000.0) == pytest.approx(22.22, abs=0.01)

    def test_pause_example(self, gate):
        """Last 90,200 against mark 90,000 is a 22 bp gap."""
        decision = gate.update(PriceSnapshot(mark_price=90000.0, last_price=90200.0))
        assert decision is GateDecision.PAUSE
        assert gate.paused

    def test_hysteresis(self, gate):
        assert gate.update(PriceSnapshot(90000.0, last_price=90100.0)) is GateDecision.OPEN
        assert gate.update(PriceSnapshot(90000.0, last_price=90200.0)) is GateDecision.PAUSE
        assert gate.update(PriceSnapshot(90000.0, last_price=90250.0)) is GateDecision.HOLD
        # 18.9 bp: below the threshold but above the 16 bp re-entry level
        assert gate.update(PriceSnapshot(90000.0, last_price=90170.0)) is GateDecision.HOLD
        assert gate.paused
        assert gate.update(PriceSnapshot(90000.0, last_price=90100.0)) is GateDecision.RESUME
        assert not gate.paused
        assert gate.update(PriceSnapshot(90000.0, last_price=90170.0)) is GateDecision.OPEN

    def test_missing_last_price_keeps_state(self, gate):
        assert gate.update(PriceSnapshot(90000.0)) is GateDecision.OPEN
        gate.update(PriceSnapshot(90000.0, last_price=90200.0))
        assert gate.update(PriceSnapshot(90000.0)) is GateDecision.HOLD
        assert gate.paused

    def test_reset(self, gate):
        gate.update(PriceSnapshot(90000.0, last_price=90200.0))
        gate.reset()
        assert not gate.paused
        assert gate.last_gap_bp is None
        assert gate.resume_below_bp == pytest.approx(16.0)
