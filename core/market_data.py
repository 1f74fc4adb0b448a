"""
Portfolio Agent Core: Market Data

Feed interface, a simulated feed for demo/paper runs, and the freshness cache
that the decision pipeline polls once per cycle. The cache serves the
last-known-good snapshot when the feed fails so a cycle never aborts on a
data outage.
"""

import logging
import random
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

from core.exceptions import MarketDataUnavailable
from core.models import MarketData, MarketSentiment, Portfolio, Volatility

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Indicative credit spreads by rating
DEFAULT_CREDIT_SPREADS: Dict[str, float] = {
    "AAA": 0.0020,
    "AA": 0.0035,
    "A": 0.0055,
    "BBB": 0.0115,
    "BB": 0.0280,
    "B": 0.0720,
    "CCC": 0.1800,
}

# Annualized volatility and liquidity score by liquidity class
_CLASS_PROFILE: Dict[str, Dict[str, float]] = {
    "TREASURY": {"volatility": 0.05, "liquidity": 0.95},
    "STOCK": {"volatility": 0.20, "liquidity": 0.90},
    "ETF": {"volatility": 0.15, "liquidity": 0.90},
    "BOND": {"volatility": 0.08, "liquidity": 0.75},
    "MBS": {"volatility": 0.10, "liquidity": 0.60},
    "ABS": {"volatility": 0.10, "liquidity": 0.60},
    "SECURITY": {"volatility": 0.10, "liquidity": 0.75},
    "LOAN": {"volatility": 0.06, "liquidity": 0.30},
}


def class_profile(liquidity_class: str) -> Dict[str, float]:
    return _CLASS_PROFILE.get(liquidity_class, _CLASS_PROFILE["SECURITY"])


class MarketDataFeed(Protocol):
    """Source of market snapshots. Raises MarketDataUnavailable on failure."""

    def get_current(self) -> MarketData:
        ...


class SimulatedMarketDataFeed:
    """
    Random-walk prices around a set of tracked assets.

    Tracks the assets of every registered portfolio and moves each price by a
    normal shock scaled to its class volatility. Sentiment is drawn uniformly,
    so roughly a third of snapshots report HIGH volatility.
    """

    def __init__(self, rng: Optional[random.Random] = None, clock: Optional[Clock] = None,
                 shock_scale: float = 1.0):
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._shock_scale = shock_scale
        self._prices: Dict[str, float] = {}
        self._classes: Dict[str, str] = {}
        self._yields: Dict[str, float] = {}
        self._lock = threading.Lock()

    def track(self, portfolio: Portfolio) -> None:
        with self._lock:
            for asset in portfolio.assets:
                self._prices.setdefault(asset.id, asset.current_price)
                self._classes[asset.id] = asset.liquidity_class
                if asset.yield_rate is not None:
                    self._yields.setdefault(asset.id, asset.yield_rate)

    def get_current(self) -> MarketData:
        with self._lock:
            volatilities = {}
            for asset_id, price in list(self._prices.items()):
                vol = class_profile(self._classes[asset_id])["volatility"]
                daily = vol / (252 ** 0.5)
                shock = self._rng.gauss(0.0, daily) * self._shock_scale
                self._prices[asset_id] = round(max(price * (1 + shock), 0.01), 4)
                volatilities[asset_id] = vol

            yields = {
                asset_id: max(value + self._rng.uniform(-0.0005, 0.0005), 0.0)
                for asset_id, value in self._yields.items()
            }
            self._yields.update(yields)

            return MarketData(
                timestamp=self._clock(),
                prices=dict(self._prices),
                yields=yields,
                credit_spreads=dict(DEFAULT_CREDIT_SPREADS),
                volatilities=volatilities,
                liquidity_scores={
                    asset_id: class_profile(cls)["liquidity"] for asset_id, cls in self._classes.items()
                },
                sentiment=MarketSentiment(
                    overall=self._rng.choice(["BULLISH", "BEARISH", "NEUTRAL"]),
                    credit_markets=self._rng.choice(["TIGHTENING", "WIDENING", "STABLE"]),
                    interest_rates=self._rng.choice(["RISING", "FALLING", "STABLE"]),
                    volatility=self._rng.choice(list(Volatility)),
                ),
            )


@dataclass(frozen=True)
class MarketDataResult:
    data: Optional[MarketData]
    stale: bool = False
    error: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.data is not None


class MarketDataCache:
    """
    Freshness window in front of a feed with last-known-good fallback.

    A snapshot younger than `freshness_seconds` is reused without calling the
    feed. On feed failure the previous snapshot is returned flagged stale; with
    no previous snapshot `data` is None and callers must fail closed.
    """

    def __init__(self, feed: MarketDataFeed, freshness_seconds: float = 60.0,
                 clock: Optional[Clock] = None):
        self._feed = feed
        self._freshness = timedelta(seconds=freshness_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_good: Optional[MarketData] = None
        self._fetched_at: Optional[datetime] = None
        self._lock = threading.Lock()

    @property
    def last_good(self) -> Optional[MarketData]:
        return self._last_good

    def get(self) -> MarketDataResult:
        with self._lock:
            now = self._clock()
            if self._last_good is not None and self._fetched_at is not None:
                if now - self._fetched_at < self._freshness:
                    return MarketDataResult(data=self._last_good)

            try:
                data = self._feed.get_current()
            except MarketDataUnavailable as e:
                message = f"market data unavailable from {e.source}"
                if e.original is not None:
                    message += f": {e.original}"
                if self._last_good is None:
                    logger.warning("%s; no cached snapshot to fall back on", message)
                else:
                    age = (now - self._fetched_at).total_seconds()
                    logger.warning("%s; serving cached snapshot (%.0fs old)", message, age)
                return MarketDataResult(data=self._last_good, stale=True, error=message)

            self._last_good = data
            self._fetched_at = now
            return MarketDataResult(data=data)
