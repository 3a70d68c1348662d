"""
Quote placement rules.

Pure functions over prices and basis points. The controller decides
what to do with the answers; nothing here talks to the venue.
"""

from dataclasses import dataclass
from enum import Enum

from makerpoints.core.models import Order, OrderSide, PriceSnapshot


class ReplaceReason(str, Enum):
    """Why a resting order is being replaced."""

    SPREAD_CROSS = "spread_cross"
    TOO_CLOSE = "too_close"
    TOO_FAR = "too_far"
    MISSING = "missing"
    FILLED = "filled"
    RECONNECT = "reconnect"


class GateDecision(Enum):
    """Volatility gate outcome for one snapshot."""

    OPEN = "open"  # Quote normally
    PAUSE = "pause"  # Just crossed the threshold
    HOLD = "hold"  # Still paused
    RESUME = "resume"  # Back inside the re-entry band


def distance_bp(mark_price: float, order_price: float) -> float:
    """Distance of a resting order from the mark, in bp of the order price."""
    return abs(mark_price - order_price) / order_price * 10000


def gap_bp(last_price: float, mark_price: float) -> float:
    """Last-trade vs. mark gap, in bp of the mark."""
    return abs(last_price - mark_price) / mark_price * 10000


def crosses_spread(order: Order, best_bid: float | None, best_ask: float | None) -> bool:
    """True when a resting order sits at or through the near touch."""
    if best_bid is None or best_ask is None:
        return False
    if order.side is OrderSide.BUY:
        return order.price >= best_bid
    return order.price <= best_ask


def band_violation(distance: float, min_bp: float, max_bp: float) -> ReplaceReason | None:
    if distance < min_bp:
        return ReplaceReason.TOO_CLOSE
    if distance > max_bp:
        return ReplaceReason.TOO_FAR
    return None


@dataclass
class VolatilityGate:
    """
    Pause/resume with hysteresis on the last/mark gap.

    Pauses when the gap exceeds `threshold_bp` and only resumes once it
    drops below `threshold_bp * resume_ratio`. Between the two bounds the
    current state is kept.
    """

    threshold_bp: float
    resume_ratio: float = 0.8
    paused: bool = False
    last_gap_bp: float | None = None

    @property
    def resume_below_bp(self) -> float:
        return self.threshold_bp * self.resume_ratio

    def update(self, snapshot: PriceSnapshot) -> GateDecision:
        if snapshot.last_price is None:
            # No trade print to compare against
            return GateDecision.HOLD if self.paused else GateDecision.OPEN

        gap = gap_bp(snapshot.last_price, snapshot.mark_price)
        self.last_gap_bp = gap

        if gap > self.threshold_bp:
            if self.paused:
                return GateDecision.HOLD
            self.paused = True
            return GateDecision.PAUSE

        if self.paused:
            if gap < self.resume_below_bp:
                self.paused = False
                return GateDecision.RESUME
            return GateDecision.HOLD

        return GateDecision.OPEN

    def reset(self) -> None:
        self.paused = False
        self.last_gap_bp = None
