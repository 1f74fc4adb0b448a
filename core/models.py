"""
Portfolio Agent Core: Domain Model

Typed records shared by the decision pipeline, execution simulator,
agent state machine and supervisor.

Everything that crosses a thread boundary (portfolio, decisions, alerts,
state snapshots) is a frozen dataclass. State changes produce new values via
dataclasses.replace instead of mutating records other threads may hold.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Literal, Optional, Tuple
from uuid import uuid4

from infra.alerting import AlertSeverity


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


# ===== Enumerations =====

class AutonomyLevel(str, Enum):
    FULL_AUTO = "FULL_AUTO"
    SEMI_AUTO = "SEMI_AUTO"
    ADVISORY_ONLY = "ADVISORY_ONLY"


class AgentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"
    ERROR = "ERROR"


class OverrideAction(str, Enum):
    """Operator/supervisor control actions."""
    START = "START"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    STOP = "STOP"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RecommendationType(str, Enum):
    REBALANCE = "REBALANCE"
    SELL = "SELL"
    BUY = "BUY"
    HEDGE = "HEDGE"
    REDUCE_CONCENTRATION = "REDUCE_CONCENTRATION"
    IMPROVE_DIVERSIFICATION = "IMPROVE_DIVERSIFICATION"
    CREDIT_RISK_MITIGATION = "CREDIT_RISK_MITIGATION"
    DURATION_ADJUSTMENT = "DURATION_ADJUSTMENT"
    YIELD_ENHANCEMENT = "YIELD_ENHANCEMENT"


class DecisionType(str, Enum):
    AUTO_REBALANCE = "AUTO_REBALANCE"
    RISK_MITIGATION = "RISK_MITIGATION"
    YIELD_OPTIMIZATION = "YIELD_OPTIMIZATION"
    EMERGENCY_HEDGE = "EMERGENCY_HEDGE"
    LIQUIDITY_MANAGEMENT = "LIQUIDITY_MANAGEMENT"
    OPPORTUNISTIC_TRADE = "OPPORTUNISTIC_TRADE"


class DecisionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class AlertType(str, Enum):
    RISK_LIMIT_BREACH = "RISK_LIMIT_BREACH"
    TRADING_LIMIT_EXCEEDED = "TRADING_LIMIT_EXCEEDED"
    MARKET_ANOMALY = "MARKET_ANOMALY"
    EXECUTION_FAILURE = "EXECUTION_FAILURE"
    DATA_QUALITY_ISSUE = "DATA_QUALITY_ISSUE"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class ActionKind(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    REDUCE = "REDUCE"
    INCREASE = "INCREASE"
    HEDGE = "HEDGE"


class TradeAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    SMART = "SMART"


class TradeStatus(str, Enum):
    PENDING = "PENDING"
    FILLED = "FILLED"
    PARTIAL = "PARTIAL"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class AssetType(str, Enum):
    LOAN = "LOAN"
    SECURITY = "SECURITY"


class SecurityType(str, Enum):
    BOND = "BOND"
    STOCK = "STOCK"
    ETF = "ETF"
    MBS = "MBS"
    ABS = "ABS"
    TREASURY = "TREASURY"


class LoanType(str, Enum):
    RESIDENTIAL_MORTGAGE = "RESIDENTIAL_MORTGAGE"
    COMMERCIAL_MORTGAGE = "COMMERCIAL_MORTGAGE"
    PERSONAL_LOAN = "PERSONAL_LOAN"
    AUTO_LOAN = "AUTO_LOAN"
    STUDENT_LOAN = "STUDENT_LOAN"


class Volatility(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


# ===== Portfolio =====

@dataclass(frozen=True)
class Asset:
    """A single holding: a loan or a security."""
    id: str
    symbol: str
    name: str
    asset_type: AssetType
    current_price: float
    quantity: float
    market_value: float = 0.0
    weight: float = 0.0
    security_type: Optional[SecurityType] = None
    loan_type: Optional[LoanType] = None
    sector: Optional[str] = None
    credit_rating: Optional[str] = None
    yield_rate: Optional[float] = None
    last_updated: datetime = field(default_factory=utc_now)

    @property
    def liquidity_class(self) -> str:
        """Bucket used by liquidity/impact heuristics (LOAN, TREASURY, STOCK, ...)."""
        if self.asset_type == AssetType.LOAN:
            return AssetType.LOAN.value
        if self.security_type is not None:
            return self.security_type.value
        return AssetType.SECURITY.value


@dataclass(frozen=True)
class Portfolio:
    id: str
    name: str
    assets: Tuple[Asset, ...]
    total_value: float
    last_updated: datetime = field(default_factory=utc_now)

    @classmethod
    def from_assets(cls, portfolio_id: str, name: str, assets: Iterable[Asset],
                    as_of: Optional[datetime] = None) -> "Portfolio":
        """Build a portfolio, deriving market values, total and weights."""
        as_of = as_of or utc_now()
        valued = [
            replace(asset, market_value=asset.quantity * asset.current_price)
            for asset in assets
        ]
        return cls._with_weights(portfolio_id, name, valued, as_of)

    @classmethod
    def _with_weights(cls, portfolio_id: str, name: str, assets: List[Asset],
                      as_of: datetime) -> "Portfolio":
        total = sum(asset.market_value for asset in assets)
        weighted = tuple(
            replace(asset, weight=(asset.market_value / total) if total > 0 else 0.0)
            for asset in assets
        )
        return cls(id=portfolio_id, name=name, assets=weighted, total_value=total, last_updated=as_of)

    def get_asset(self, asset_id: str) -> Optional[Asset]:
        for asset in self.assets:
            if asset.id == asset_id:
                return asset
        return None

    def largest_position(self) -> Optional[Asset]:
        if not self.assets:
            return None
        return max(self.assets, key=lambda a: a.weight)

    def reprice(self, prices: Dict[str, float], as_of: Optional[datetime] = None) -> "Portfolio":
        """
        Return a new portfolio valued at the given prices.

        Assets without a known price keep their previous value. Weights are
        recomputed against the new total.
        """
        as_of = as_of or utc_now()
        repriced = []
        for asset in self.assets:
            price = prices.get(asset.id)
            if price:
                asset = replace(
                    asset,
                    current_price=price,
                    market_value=asset.quantity * price,
                    last_updated=as_of,
                )
            repriced.append(asset)
        return self._with_weights(self.id, self.name, repriced, as_of)

    def apply_fills(self, fills: Iterable["TradeExecution"],
                    as_of: Optional[datetime] = None) -> "Portfolio":
        """Return a new portfolio with executed quantities applied."""
        as_of = as_of or utc_now()
        deltas: Dict[str, float] = {}
        for trade in fills:
            if trade.quantity <= 0:
                continue
            signed = trade.quantity if trade.action == TradeAction.BUY else -trade.quantity
            deltas[trade.asset.id] = deltas.get(trade.asset.id, 0.0) + signed

        if not deltas:
            return self

        updated = []
        for asset in self.assets:
            delta = deltas.get(asset.id)
            if delta:
                quantity = max(asset.quantity + delta, 0.0)
                asset = replace(
                    asset,
                    quantity=quantity,
                    market_value=quantity * asset.current_price,
                    last_updated=as_of,
                )
            updated.append(asset)
        return self._with_weights(self.id, self.name, updated, as_of)


# ===== Recommendations =====

@dataclass(frozen=True)
class ActionItem:
    """One concrete step of a recommendation, tagged by kind."""
    action: ActionKind
    rationale: str = ""
    asset: Optional[Asset] = None
    asset_type: Optional[AssetType] = None
    quantity: Optional[float] = None
    percentage: Optional[float] = None
    target_weight: Optional[float] = None

    def __post_init__(self):
        if self.quantity is not None and self.quantity < 0:
            raise ValueError(f"Action item quantity must be >= 0, got {self.quantity}")
        if self.percentage is not None and not 0 <= self.percentage <= 1:
            raise ValueError(f"Action item percentage must be within [0, 1], got {self.percentage}")
        if self.target_weight is not None and not 0 <= self.target_weight <= 1:
            raise ValueError(f"Action item target weight must be within [0, 1], got {self.target_weight}")

    @property
    def trade_action(self) -> "TradeAction":
        if self.action in (ActionKind.BUY, ActionKind.INCREASE):
            return TradeAction.BUY
        return TradeAction.SELL

    def trade_quantity(self) -> float:
        """Explicit quantity, else a percentage of the held quantity, else 0."""
        if self.quantity is not None:
            return self.quantity
        if self.asset is not None and self.percentage is not None:
            return self.asset.quantity * self.percentage
        return 0.0


@dataclass(frozen=True)
class Impact:
    timeframe: str = "1-2 days"
    risk_reduction: Optional[float] = None
    yield_improvement: Optional[float] = None
    diversification_improvement: Optional[float] = None
    estimated_cost: Optional[float] = None


@dataclass(frozen=True)
class Recommendation:
    id: str
    type: RecommendationType
    priority: Priority
    title: str
    description: str = ""
    reasoning: str = ""
    action_items: Tuple[ActionItem, ...] = ()
    impact: Impact = field(default_factory=Impact)


# ===== Market data =====

@dataclass(frozen=True)
class MarketSentiment:
    overall: Literal["BULLISH", "BEARISH", "NEUTRAL"] = "NEUTRAL"
    credit_markets: Literal["TIGHTENING", "WIDENING", "STABLE"] = "STABLE"
    interest_rates: Literal["RISING", "FALLING", "STABLE"] = "STABLE"
    volatility: Volatility = Volatility.MEDIUM


@dataclass(frozen=True)
class MarketData:
    timestamp: datetime
    prices: Dict[str, float] = field(default_factory=dict)
    yields: Dict[str, float] = field(default_factory=dict)
    credit_spreads: Dict[str, float] = field(default_factory=dict)
    volatilities: Dict[str, float] = field(default_factory=dict)
    liquidity_scores: Dict[str, float] = field(default_factory=dict)
    sentiment: MarketSentiment = field(default_factory=MarketSentiment)


# ===== Orders and executions =====

@dataclass(frozen=True)
class TradeOrder:
    asset: Asset
    action: TradeAction
    quantity: float
    order_type: OrderType
    slippage_tolerance: float
    limit_price: Optional[float] = None

    @property
    def notional(self) -> float:
        return self.quantity * self.asset.current_price


@dataclass(frozen=True)
class TradeExecution:
    id: str
    asset: Asset
    action: TradeAction
    requested_quantity: float
    quantity: float
    price: float
    status: TradeStatus
    timestamp: datetime = field(default_factory=utc_now)
    market_impact: float = 0.0
    slippage: float = 0.0
    errors: Tuple[str, ...] = ()

    @property
    def notional(self) -> float:
        return self.price * self.quantity

    @property
    def transaction_cost(self) -> float:
        """Cost of impact and slippage relative to the pre-trade price."""
        return self.quantity * self.asset.current_price * (self.market_impact + self.slippage)

    @property
    def executed(self) -> bool:
        return self.status in (TradeStatus.FILLED, TradeStatus.PARTIAL) and self.quantity > 0


@dataclass(frozen=True)
class ExecutionDetails:
    trades: Tuple[TradeExecution, ...]
    total_cost: float
    transaction_cost: float
    execution_time_ms: float
    slippage: float
    success: bool
    errors: Tuple[str, ...] = ()


# ===== Decisions and alerts =====

@dataclass(frozen=True)
class ExpectedOutcome:
    cost_estimate: float
    timeframe: str
    risk_reduction: Optional[float] = None
    yield_improvement: Optional[float] = None
    liquidity_improvement: Optional[float] = None


@dataclass(frozen=True)
class Decision:
    """One audited evaluation of a recommendation, executed or not."""
    id: str
    timestamp: datetime
    decision_type: DecisionType
    recommendation: Recommendation
    reasoning: str
    confidence: float
    risk_assessment: str
    expected_outcome: ExpectedOutcome
    status: DecisionStatus = DecisionStatus.PENDING
    execution_details: Optional[ExecutionDetails] = None
    rejection_reason: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Decision confidence must be within [0, 1], got {self.confidence}")

    def with_status(self, status: DecisionStatus, **changes) -> "Decision":
        return replace(self, status=status, **changes)

    def to_dict(self) -> Dict:
        details = self.execution_details
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "decision_type": self.decision_type.value,
            "status": self.status.value,
            "confidence": self.confidence,
            "recommendation_id": self.recommendation.id,
            "recommendation_type": self.recommendation.type.value,
            "priority": self.recommendation.priority.value,
            "reasoning": self.reasoning,
            "risk_assessment": self.risk_assessment,
            "cost_estimate": self.expected_outcome.cost_estimate,
            "rejection_reason": self.rejection_reason,
            "execution": None if details is None else {
                "trades": [
                    {
                        "id": t.id,
                        "asset_id": t.asset.id,
                        "action": t.action.value,
                        "requested_quantity": t.requested_quantity,
                        "quantity": t.quantity,
                        "price": t.price,
                        "status": t.status.value,
                        "errors": list(t.errors),
                    }
                    for t in details.trades
                ],
                "total_cost": details.total_cost,
                "transaction_cost": details.transaction_cost,
                "execution_time_ms": details.execution_time_ms,
                "slippage": details.slippage,
                "success": details.success,
                "errors": list(details.errors),
            },
        }


@dataclass(frozen=True)
class Alert:
    id: str
    severity: AlertSeverity
    type: AlertType
    message: str
    timestamp: datetime
    acknowledged: bool = False

    @classmethod
    def create(cls, severity: AlertSeverity, alert_type: AlertType, message: str,
               timestamp: Optional[datetime] = None) -> "Alert":
        return cls(
            id=new_id("alert"),
            severity=severity,
            type=alert_type,
            message=message,
            timestamp=timestamp or utc_now(),
        )

    def acknowledge(self) -> "Alert":
        return replace(self, acknowledged=True)


# ===== Agent state =====

@dataclass(frozen=True)
class AgentPerformance:
    total_return: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    avg_decision_time_ms: float = 0.0


@dataclass(frozen=True)
class AgentStateSnapshot:
    """Immutable copy of an agent's state handed to readers."""
    id: str
    status: AgentStatus
    last_decision: Optional[datetime]
    total_decisions: int
    success_rate: float
    portfolio: Portfolio
    alerts: Tuple[Alert, ...]
    performance: AgentPerformance
    advisory_recommendations: Tuple[Recommendation, ...] = ()
    started_at: Optional[datetime] = None
    cycle_count: int = 0
    last_market_data_at: Optional[datetime] = None
    market_data_stale: bool = False

    def unacknowledged_alerts(self, severity: Optional[AlertSeverity] = None) -> List[Alert]:
        return [
            alert for alert in self.alerts
            if not alert.acknowledged and (severity is None or alert.severity == severity)
        ]
