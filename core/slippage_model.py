"""
Market Impact and Slippage Model for Simulated Execution

Prices a simulated order accounting for:
- Estimated daily volume by asset liquidity class
- Market impact (price moves against large orders)
- Order-type dependent slippage with a random volatility band
- Partial fills for orders large relative to daily volume

All randomness goes through an injected `random.Random` so tests can pin it.
"""
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Dict, Optional

from core.models import Asset, OrderType, TradeAction

logger = logging.getLogger(__name__)


@dataclass
class SlippageConfig:
    """Configuration for impact/slippage simulation"""
    # Daily volume heuristic: base fraction of market value x class multiplier
    volume_base_fraction: float = 0.10
    volume_multipliers: Dict[str, float] = field(default_factory=lambda: {
        "TREASURY": 10.0,
        "STOCK": 5.0,
        "BOND": 2.0,
        "MBS": 0.5,
        "ABS": 0.5,
        "LOAN": 0.1,
    })
    default_volume_multiplier: float = 1.0  # ETF and unclassified securities

    # Impact = notional / volume x coefficient, then class adjustment, then cap
    impact_coefficient: float = 0.001
    impact_adjustments: Dict[str, float] = field(default_factory=lambda: {
        "LOAN": 3.0,
        "TREASURY": 0.3,
        "MBS": 2.0,
        "ABS": 2.0,
    })
    max_market_impact: float = 0.05

    # Slippage = base x order-type multiplier x U(1 - band, 1 + band), capped at tolerance
    base_slippage: float = 0.001
    order_type_multipliers: Dict[str, float] = field(default_factory=lambda: {
        "MARKET": 1.5,
        "SMART": 0.7,
        "LIMIT": 1.0,
    })
    volatility_band: float = 0.2

    # Orders above this share of daily volume fill partially
    partial_fill_volume_share: float = 0.10
    partial_fill_min_pct: float = 0.6

    price_precision: int = 4


class SlippageModel:
    """
    Impact, slippage and fill model for the trade execution simulator.

    Example:
        SELL 10,000 of a BOND priced 100 (market value 20M):
        - Daily volume: 20M x 10% x 2 = 4M
        - Impact: 1M / 4M x 0.001 = 0.00025
        - SMART slippage: 0.001 x 0.7 x ~1.0 = 0.0007
        - Fill price: 100 x (1 - 0.00095) = 99.905
    """

    def __init__(self, config: Optional[SlippageConfig] = None, rng: Optional[random.Random] = None):
        self.config = config or SlippageConfig()
        self._rng = rng or random.Random()

    def estimate_daily_volume(self, asset: Asset) -> float:
        multiplier = self.config.volume_multipliers.get(
            asset.liquidity_class, self.config.default_volume_multiplier
        )
        return max(asset.market_value, 0.0) * self.config.volume_base_fraction * multiplier

    def market_impact(self, asset: Asset, notional: float) -> float:
        """Fractional adverse price move caused by the order's size."""
        volume = self.estimate_daily_volume(asset)
        if volume <= 0:
            return self.config.max_market_impact

        impact = notional / volume * self.config.impact_coefficient
        impact *= self.config.impact_adjustments.get(asset.liquidity_class, 1.0)
        return min(impact, self.config.max_market_impact)

    def slippage(self, order_type: OrderType, tolerance: float) -> float:
        multiplier = self.config.order_type_multipliers.get(order_type.value, 1.0)
        band = self.config.volatility_band
        noise = self._rng.uniform(1 - band, 1 + band)
        return min(self.config.base_slippage * multiplier * noise, tolerance)

    def execution_price(self, price: float, action: TradeAction, impact: float, slippage: float,
                        order_type: OrderType, limit_price: Optional[float] = None) -> float:
        """
        Price adjusted against the trader, clamped to the limit for LIMIT orders.

        Buy = pay more, Sell = receive less.
        """
        adjustment = impact + slippage
        if action == TradeAction.BUY:
            fill = price * (1 + adjustment)
            if order_type == OrderType.LIMIT and limit_price is not None:
                fill = min(fill, limit_price)
        else:
            fill = price * (1 - adjustment)
            if order_type == OrderType.LIMIT and limit_price is not None:
                fill = max(fill, limit_price)
        return self._round_toward_limit(fill, action, order_type, limit_price)

    def _round_toward_limit(self, value: float, action: TradeAction, order_type: OrderType,
                            limit_price: Optional[float]) -> float:
        rounded = round(value, self.config.price_precision)
        if order_type != OrderType.LIMIT or limit_price is None:
            return rounded
        # Rounding must not push the price across the limit
        if action == TradeAction.BUY and rounded > limit_price:
            return limit_price
        if action == TradeAction.SELL and rounded < limit_price:
            return limit_price
        return rounded

    def fill_quantity(self, asset: Asset, quantity: float, notional: float) -> float:
        """Full fill unless the order exceeds the partial-fill share of daily volume."""
        volume = self.estimate_daily_volume(asset)
        if notional <= volume * self.config.partial_fill_volume_share:
            return quantity
        fraction = self._rng.uniform(self.config.partial_fill_min_pct, 1.0)
        return float(math.floor(quantity * fraction))
