"""Tests for feed message normalization."""

from makerpoints.core.models import OrderSide, OrderStatus, OrderUpdate, PositionUpdate, PriceSnapshot
from makerpoints.ingestion.normalization import (
    normalize_message,
    parse_float,
    parse_order_update,
    parse_price_snapshot,
    parse_timestamp,
)


class TestParseFloat:
    """Tests for numeric field parsing."""

    def test_numbers_and_strings(self):
        assert parse_float(1.5) == 1.5
        assert parse_float("90000.25") == 90000.25
        assert parse_float(3) == 3.0

    def test_invalid_values(self):
        assert parse_float(None) is None
        assert parse_float("abc") is None
        assert parse_float(True) is None
        assert parse_float("nan") is None
        assert parse_float("inf") is None

    def test_timestamp_units(self):
        assert parse_timestamp(1_700_000_000_000) == 1_700_000_000.0
        assert parse_timestamp(1_700_000_000) == 1_700_000_000.0
        assert parse_timestamp(None) > 0


class TestPriceSnapshot:
    """Tests for price channel parsing."""

    def test_full_message(self):
        snapshot = parse_price_snapshot({
            "mark_price": "90000",
            "last_price": "90010.5",
            "spread": ["89999.5", "90000.5"],
            "time": 1_700_000_000_000,
        })

        assert isinstance(snapshot, PriceSnapshot)
        assert snapshot.mark_price == 90000.0
        assert snapshot.last_price == 90010.5
        assert snapshot.best_bid == 89999.5
        assert snapshot.best_ask == 90000.5
        assert snapshot.observed_at == 1_700_000_000.0
        assert snapshot.has_spread

    def test_camel_case_aliases(self):
        snapshot = parse_price_snapshot({"markPrice": 100, "lastPrice": 101, "bid": 99, "ask": 100.5})
        assert snapshot.mark_price == 100
        assert snapshot.last_price == 101
        assert snapshot.best_bid == 99

    def test_missing_mark_is_dropped(self):
        assert parse_price_snapshot({"last_price": "90000"}) is None
        assert parse_price_snapshot({"mark_price": "0"}) is None
        assert parse_price_snapshot({"mark_price": "-5"}) is None

    def test_optional_fields_absent(self):
        snapshot = parse_price_snapshot({"mark_price": 90000})
        assert snapshot.last_price is None
        assert snapshot.best_bid is None
        assert snapshot.best_ask is None
        assert not snapshot.has_spread

    def test_crossed_spread_is_discarded(self):
        snapshot = parse_price_snapshot({"mark_price": 90000, "spread": [90001, 90000]})
        assert snapshot.mark_price == 90000
        assert snapshot.best_bid is None
        assert snapshot.best_ask is None


class TestOrderUpdate:
    """Tests for order channel parsing."""

    def test_fill(self):
        update = parse_order_update({
            "id": 12345,
            "cl_ord_id": "mp_b_1_abc",
            "status": "filled",
            "side": "BUY",
            "symbol": "BTC-USD",
            "price": "89820",
            "qty": "0.1",
            "fill_qty": "0.1",
            "avg_fill_price": "89820",
        })

        assert update.order_id == "12345"
        assert update.client_order_id == "mp_b_1_abc"
        assert update.status is OrderStatus.FILLED
        assert update.side is OrderSide.BUY
        assert update.filled_quantity == 0.1
        assert update.fill_price == 89820.0

    def test_partial_fill_stays_open(self):
        update = parse_order_update({"id": "1", "status": "PARTIALLY_FILLED", "side": "sell"})
        assert update.status is OrderStatus.OPEN

    def test_client_id_only(self):
        update = parse_order_update({"cl_ord_id": "mp_s_1_abc", "status": "CANCELLED", "side": "sell"})
        assert update.order_id == "mp_s_1_abc"
        assert update.status is OrderStatus.CANCELED

    def test_invalid_messages(self):
        assert parse_order_update({"status": "FILLED", "side": "buy"}) is None
        assert parse_order_update({"id": "1", "status": "WEIRD", "side": "buy"}) is None
        assert parse_order_update({"id": "1", "status": "FILLED", "side": "long"}) is None


class TestNormalizeMessage:
    """Tests for channel routing."""

    def test_routes_channels(self):
        assert isinstance(
            normalize_message({"channel": "price", "data": {"mark_price": 1}}), PriceSnapshot
        )
        assert isinstance(
            normalize_message({"channel": "order", "data": {"id": 1, "status": "NEW", "side": "buy"}}),
            OrderUpdate,
        )
        position = normalize_message({"channel": "position", "data": {"position_amt": "-0.1"}})
        assert isinstance(position, PositionUpdate)
        assert position.quantity == -0.1

    def test_ignores_unknown_and_malformed(self):
        assert normalize_message({"channel": "auth", "data": {"code": 0}}) is None
        assert normalize_message({"channel": "price", "data": "oops"}) is None
        assert normalize_message([1, 2, 3]) is None
        assert normalize_message("pong") is None
        assert normalize_message({"channel": "price", "data": {"mark_price": "x"}}) is None
