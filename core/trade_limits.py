"""
Portfolio Agent Core: Trade Eligibility and Limits

Pre-execution gate applied to every recommendation an agent is about to
auto-execute, independent of the autonomy policy.

Enforces:
- Trading-hours window in the configured timezone (weekends/holidays excluded)
- Hourly and daily executed-trade counts (two explicit limits)
- Hourly and daily notional volume
- Single-trade notional cap
- Restricted assets and allowed asset types
- Market conditions (no snapshot or HIGH volatility blocks execution)
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Deque, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from core.config import TradingLimits
from core.models import MarketData, Recommendation, TradeExecution, Volatility

logger = logging.getLogger(__name__)


@dataclass
class TradeTimingResult:
    """Result of the eligibility gate"""
    approved: bool
    reason: str = ""
    violated_checks: List[str] = None

    def __post_init__(self):
        if self.violated_checks is None:
            self.violated_checks = []


class TradeLedger:
    """
    Executed trades (timestamp, notional) for frequency and volume limits.

    Entries older than two days are pruned on write; nothing is persisted.
    """

    _RETENTION = timedelta(days=2)

    def __init__(self):
        self._entries: Deque[Tuple[datetime, float]] = deque()
        self._lock = threading.Lock()

    def record(self, executions: Iterable[TradeExecution], now: datetime) -> int:
        recorded = 0
        with self._lock:
            for execution in executions:
                if not execution.executed:
                    continue
                self._entries.append((now, execution.notional))
                recorded += 1
            cutoff = now - self._RETENTION
            while self._entries and self._entries[0][0] < cutoff:
                self._entries.popleft()
        return recorded

    def since(self, start: datetime) -> Tuple[int, float]:
        """(count, notional) of trades at or after `start`."""
        with self._lock:
            window = [notional for ts, notional in self._entries if ts >= start]
        return len(window), sum(window)


class TradeLimits:
    """
    Eligibility gate for one agent.

    Configuration from AgentConfig.trading_limits:
    - trading_hours: start/end/timezone window
    - exclude_weekends / exclude_holidays + holidays
    - max_trades_per_hour / max_trades_per_day: executed-trade caps
    - max_hourly_trade_volume / max_daily_trade_volume: notional caps
    - max_single_trade_size: per-order notional cap
    - allowed_asset_types / restricted_assets
    """

    def __init__(self, limits: TradingLimits, ledger: Optional[TradeLedger] = None):
        self.limits = limits
        self.ledger = ledger or TradeLedger()
        self.tz = ZoneInfo(limits.trading_hours.timezone)

        logger.debug(
            f"TradeLimits initialized: hours={limits.trading_hours.start}-{limits.trading_hours.end} "
            f"{limits.trading_hours.timezone}, max_per_hour={limits.max_trades_per_hour}, "
            f"max_per_day={limits.max_trades_per_day}"
        )

    def with_limits(self, limits: TradingLimits) -> "TradeLimits":
        """Same ledger, new limits (used when an agent's config is replaced)."""
        return TradeLimits(limits, ledger=self.ledger)

    def check_all(
        self,
        recommendation: Recommendation,
        market_data: Optional[MarketData],
        current_time: Optional[datetime] = None,
    ) -> TradeTimingResult:
        """
        Check every eligibility constraint, failing fast on the first violation.

        Emergency hedges never reach this gate.

        Args:
            recommendation: Candidate about to be auto-executed
            market_data: Current snapshot (None fails closed)
            current_time: Current time (for tests)
        """
        now = current_time or datetime.now(timezone.utc)

        checks = [
            lambda: self._check_trading_hours(now),
            lambda: self._check_frequency_limits(now),
            lambda: self._check_volume_limits(recommendation, now),
            lambda: self._check_trade_size(recommendation),
            lambda: self._check_assets(recommendation),
            lambda: self._check_market_conditions(market_data),
        ]

        for check in checks:
            result = check()
            if not result.approved:
                logger.info(f"Eligibility gate blocked {recommendation.id}: {result.reason}")
                return result

        return TradeTimingResult(approved=True)

    def record_trades(self, executions: Iterable[TradeExecution], current_time: Optional[datetime] = None) -> int:
        return self.ledger.record(executions, current_time or datetime.now(timezone.utc))

    def trades_this_hour(self, now: datetime) -> Tuple[int, float]:
        return self.ledger.since(now - timedelta(hours=1))

    def trades_today(self, now: datetime) -> Tuple[int, float]:
        local = now.astimezone(self.tz)
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return self.ledger.since(midnight)

    def is_within_trading_hours(self, now: datetime) -> bool:
        return self._check_trading_hours(now).approved

    def _check_trading_hours(self, now: datetime) -> TradeTimingResult:
        local = now.astimezone(self.tz)
        hours = self.limits.trading_hours

        if self.limits.exclude_weekends and local.weekday() >= 5:
            return TradeTimingResult(
                approved=False,
                reason=f"Weekend ({local.strftime('%A')}) excluded from trading",
                violated_checks=["weekend"],
            )

        if self.limits.exclude_holidays and local.date() in self.limits.holidays:
            return TradeTimingResult(
                approved=False,
                reason=f"Holiday {local.date().isoformat()} excluded from trading",
                violated_checks=["holiday"],
            )

        if not hours.start <= local.time() < hours.end:
            return TradeTimingResult(
                approved=False,
                reason=(
                    f"Outside trading hours ({local.strftime('%H:%M')} not in "
                    f"{hours.start.strftime('%H:%M')}-{hours.end.strftime('%H:%M')} {hours.timezone})"
                ),
                violated_checks=["trading_hours"],
            )

        return TradeTimingResult(approved=True)

    def _check_frequency_limits(self, now: datetime) -> TradeTimingResult:
        """Check hourly and daily trade frequency limits"""
        trades_today, _ = self.trades_today(now)
        trades_this_hour, _ = self.trades_this_hour(now)

        if trades_today >= self.limits.max_trades_per_day:
            return TradeTimingResult(
                approved=False,
                reason=f"Daily trade limit reached ({trades_today}/{self.limits.max_trades_per_day})",
                violated_checks=["trade_frequency_daily"],
            )

        if trades_this_hour >= self.limits.max_trades_per_hour:
            return TradeTimingResult(
                approved=False,
                reason=f"Hourly trade limit reached ({trades_this_hour}/{self.limits.max_trades_per_hour})",
                violated_checks=["trade_frequency_hourly"],
            )

        return TradeTimingResult(approved=True)

    def _check_volume_limits(self, recommendation: Recommendation, now: datetime) -> TradeTimingResult:
        proposed = estimated_notional(recommendation)
        _, volume_today = self.trades_today(now)
        _, volume_hour = self.trades_this_hour(now)

        if volume_today + proposed > self.limits.max_daily_trade_volume:
            return TradeTimingResult(
                approved=False,
                reason=(
                    f"Daily volume limit: {volume_today:,.0f} traded + {proposed:,.0f} proposed "
                    f"> {self.limits.max_daily_trade_volume:,.0f}"
                ),
                violated_checks=["trade_volume_daily"],
            )

        if volume_hour + proposed > self.limits.max_hourly_trade_volume:
            return TradeTimingResult(
                approved=False,
                reason=(
                    f"Hourly volume limit: {volume_hour:,.0f} traded + {proposed:,.0f} proposed "
                    f"> {self.limits.max_hourly_trade_volume:,.0f}"
                ),
                violated_checks=["trade_volume_hourly"],
            )

        return TradeTimingResult(approved=True)

    def _check_trade_size(self, recommendation: Recommendation) -> TradeTimingResult:
        for item in recommendation.action_items:
            if item.asset is None:
                continue
            notional = item.trade_quantity() * item.asset.current_price
            if notional > self.limits.max_single_trade_size:
                return TradeTimingResult(
                    approved=False,
                    reason=(
                        f"Trade in {item.asset.id} of {notional:,.0f} exceeds single-trade limit "
                        f"{self.limits.max_single_trade_size:,.0f}"
                    ),
                    violated_checks=["single_trade_size"],
                )
        return TradeTimingResult(approved=True)

    def _check_assets(self, recommendation: Recommendation) -> TradeTimingResult:
        violations = []
        for item in recommendation.action_items:
            if item.asset is not None:
                if item.asset.id in self.limits.restricted_assets:
                    violations.append(f"{item.asset.id} is restricted")
                if item.asset.asset_type not in self.limits.allowed_asset_types:
                    violations.append(f"{item.asset.id} type {item.asset.asset_type.value} not allowed")
            elif item.asset_type is not None and item.asset_type not in self.limits.allowed_asset_types:
                violations.append(f"asset type {item.asset_type.value} not allowed")

        if violations:
            return TradeTimingResult(
                approved=False,
                reason="Asset restrictions: " + "; ".join(violations),
                violated_checks=["asset_restrictions"],
            )
        return TradeTimingResult(approved=True)

    @staticmethod
    def _check_market_conditions(market_data: Optional[MarketData]) -> TradeTimingResult:
        if market_data is None:
            return TradeTimingResult(
                approved=False,
                reason="No market data available",
                violated_checks=["market_data"],
            )
        if market_data.sentiment.volatility == Volatility.HIGH:
            return TradeTimingResult(
                approved=False,
                reason="Market volatility is HIGH",
                violated_checks=["market_volatility"],
            )
        return TradeTimingResult(approved=True)


def estimated_notional(recommendation: Recommendation) -> float:
    """Pre-trade notional of the action items that name a concrete asset."""
    return sum(
        item.trade_quantity() * item.asset.current_price
        for item in recommendation.action_items
        if item.asset is not None
    )
