"""
Portfolio Agent Core: Trade Execution Simulator

Simulated order submission with pre-trade validation, market impact,
slippage, partial fills and random execution failures. Every execution is
terminal on return; nothing rests on a book between cycles.
"""

import logging
import random
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timezone
from typing import Callable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from core.exceptions import OrderValidationError
from core.models import (
    AssetType,
    OrderType,
    SecurityType,
    TradeExecution,
    TradeOrder,
    TradeStatus,
    new_id,
)
from core.slippage_model import SlippageModel
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

LOAN_MIN_NOTIONAL = 100_000.0
MAX_SLIPPAGE_TOLERANCE = 0.10
STOCK_MARKET_OPEN = dt_time(9, 0)
STOCK_MARKET_CLOSE = dt_time(16, 59, 59)
DEFAULT_ORDER_HISTORY = 1000


@dataclass
class OrderValidationResult:
    """Result of pre-submission order checks"""
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class ExecutionStatistics:
    total_trades: int
    success_rate: float
    average_slippage: float
    average_latency_ms: float
    total_volume: float


class TradeExecutionSimulator:
    """
    Simulated broker.

    Responsibilities:
    - Validate orders before submission (structured errors, never a silent no-op)
    - Price fills with SlippageModel (impact + slippage against the trader)
    - Partial fills for orders large relative to estimated daily volume
    - Random execution failure at `failure_probability`
    - Concurrent batch submission

    Latency is simulated by sleeping `execution_delay_seconds` per order.
    Only the last `max_order_history` executions stay queryable by id;
    statistics are running totals over every execution.
    """

    def __init__(self, slippage_model: Optional[SlippageModel] = None,
                 rng: Optional[random.Random] = None,
                 failure_probability: float = 0.05,
                 execution_delay_seconds: float = 1.0,
                 market_timezone: str = "America/New_York",
                 clock: Optional[Callable[[], datetime]] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 metrics: Optional[MetricsRecorder] = None,
                 max_order_history: int = DEFAULT_ORDER_HISTORY):
        if max_order_history < 1:
            raise ValueError(f"max_order_history must be >= 1, got {max_order_history}")
        self._rng = rng or random.Random()
        self.slippage_model = slippage_model or SlippageModel(rng=self._rng)
        self.failure_probability = failure_probability
        self.execution_delay_seconds = execution_delay_seconds
        self.market_tz = ZoneInfo(market_timezone)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._metrics = metrics

        self.max_order_history = max_order_history

        self._lock = threading.Lock()
        self._executions: "OrderedDict[str, TradeExecution]" = OrderedDict()
        self._total_trades = 0
        self._executed_trades = 0
        self._slippage_sum = 0.0
        self._volume_sum = 0.0
        self._latency_count = 0
        self._latency_sum_ms = 0.0

    # ===== Validation =====

    def validate_order(self, order: TradeOrder) -> OrderValidationResult:
        errors: List[str] = []

        if order.quantity <= 0:
            errors.append("Quantity must be positive")

        if order.order_type == OrderType.LIMIT and not order.limit_price:
            errors.append("Limit price required for limit orders")

        if not 0 <= order.slippage_tolerance <= MAX_SLIPPAGE_TOLERANCE:
            errors.append(
                f"Slippage tolerance must be between 0% and {MAX_SLIPPAGE_TOLERANCE:.0%}, "
                f"got {order.slippage_tolerance:.2%}"
            )

        if order.asset.asset_type == AssetType.LOAN and order.notional < LOAN_MIN_NOTIONAL:
            errors.append(f"Minimum trade size for loans is ${LOAN_MIN_NOTIONAL:,.0f}")

        if order.asset.security_type == SecurityType.STOCK:
            local = self._clock().astimezone(self.market_tz).time()
            if not STOCK_MARKET_OPEN <= local <= STOCK_MARKET_CLOSE:
                errors.append(f"Stock trading outside market hours ({local.strftime('%H:%M')} local)")

        return OrderValidationResult(valid=not errors, errors=errors)

    def _require_valid(self, order: TradeOrder) -> None:
        result = self.validate_order(order)
        if not result.valid:
            raise OrderValidationError(result.errors)

    # ===== Submission =====

    def execute_trade(self, order: TradeOrder) -> TradeExecution:
        trade_id = new_id("trade")
        started = time.monotonic()

        try:
            self._require_valid(order)
        except OrderValidationError as e:
            logger.warning("Rejected order %s %s %s: %s", trade_id, order.action.value, order.asset.id, e)
            return self._record(self._failed(trade_id, order, errors=e.errors), started)

        if self.execution_delay_seconds > 0:
            self._sleep(self.execution_delay_seconds)

        if self._rng.random() < self.failure_probability:
            logger.warning("Simulated execution failure for %s (%s)", trade_id, order.asset.id)
            return self._record(
                self._failed(trade_id, order, errors=["Simulated execution failure"]), started
            )

        model = self.slippage_model
        notional = order.notional
        impact = model.market_impact(order.asset, notional)
        slippage = model.slippage(order.order_type, order.slippage_tolerance)
        price = model.execution_price(
            order.asset.current_price,
            order.action,
            impact,
            slippage,
            order.order_type,
            order.limit_price,
        )
        filled = min(model.fill_quantity(order.asset, order.quantity, notional), order.quantity)

        if filled <= 0:
            return self._record(
                self._failed(trade_id, order, errors=["Order could not be filled"]), started
            )

        status = TradeStatus.FILLED if filled >= order.quantity else TradeStatus.PARTIAL
        execution = TradeExecution(
            id=trade_id,
            asset=order.asset,
            action=order.action,
            requested_quantity=order.quantity,
            quantity=filled,
            price=price,
            status=status,
            timestamp=self._clock(),
            market_impact=impact,
            slippage=slippage,
        )
        logger.info(
            "Executed %s %s %.0f/%.0f %s @ %.4f (impact=%.5f slippage=%.5f)",
            trade_id, order.action.value, filled, order.quantity, order.asset.id, price, impact, slippage,
        )
        return self._record(execution, started)

    def execute_batch(self, orders: Sequence[TradeOrder]) -> List[TradeExecution]:
        """
        Submit orders concurrently and wait for all of them.

        Results are returned in order. An unexpected exception in one order
        becomes a FAILED execution for that order only.
        """
        if not orders:
            return []

        with ThreadPoolExecutor(max_workers=len(orders), thread_name_prefix="trade") as pool:
            futures = [pool.submit(self.execute_trade, order) for order in orders]

        results: List[TradeExecution] = []
        for order, future in zip(orders, futures):
            try:
                results.append(future.result())
            except Exception as e:
                logger.error("Order for %s raised during execution: %s", order.asset.id, e, exc_info=True)
                results.append(
                    self._record(self._failed(new_id("trade"), order, errors=[f"Execution error: {e}"]), None)
                )
        return results

    # ===== Queries =====

    def get_order_status(self, trade_id: str) -> Optional[TradeExecution]:
        with self._lock:
            return self._executions.get(trade_id)

    def get_statistics(self) -> ExecutionStatistics:
        with self._lock:
            total = self._total_trades
            executed = self._executed_trades
            return ExecutionStatistics(
                total_trades=total,
                success_rate=executed / total if total else 0.0,
                average_slippage=self._slippage_sum / executed if executed else 0.0,
                average_latency_ms=self._latency_sum_ms / self._latency_count if self._latency_count else 0.0,
                total_volume=self._volume_sum,
            )

    # ===== Internals =====

    def _failed(self, trade_id: str, order: TradeOrder, errors: List[str]) -> TradeExecution:
        return TradeExecution(
            id=trade_id,
            asset=order.asset,
            action=order.action,
            requested_quantity=order.quantity,
            quantity=0.0,
            price=0.0,
            status=TradeStatus.FAILED,
            timestamp=self._clock(),
            errors=tuple(errors),
        )

    def _record(self, execution: TradeExecution, started: Optional[float]) -> TradeExecution:
        with self._lock:
            self._executions[execution.id] = execution
            while len(self._executions) > self.max_order_history:
                self._executions.popitem(last=False)

            self._total_trades += 1
            if execution.executed:
                self._executed_trades += 1
                self._slippage_sum += execution.slippage
                self._volume_sum += execution.notional
            if started is not None:
                self._latency_count += 1
                self._latency_sum_ms += (time.monotonic() - started) * 1000

        if self._metrics is not None:
            self._metrics.record_trade(execution.status.value, execution.slippage + execution.market_impact)
        return execution
