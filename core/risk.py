"""
Portfolio Agent Core: Risk Engine

Post-cycle limit checks against an agent's RiskLimits. Each breach carries
the alert severity the agent should raise; the VaR breach additionally
drives the emergency hedge under FULL_AUTO.
"""

from dataclasses import dataclass
from typing import List, Optional
import logging

from core.analysis import PortfolioAnalysis
from core.config import RiskLimits
from core.models import AlertType
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskBreach:
    check: str
    severity: AlertSeverity
    alert_type: AlertType
    message: str


@dataclass
class RiskCheckResult:
    """Result of risk check"""
    approved: bool
    reason: Optional[str] = None
    violated_checks: List[str] = None
    breaches: List[RiskBreach] = None

    def __post_init__(self):
        if self.violated_checks is None:
            self.violated_checks = []
        if self.breaches is None:
            self.breaches = []

    @property
    def var_breached(self) -> bool:
        return "daily_var" in self.violated_checks


class RiskEngine:
    """
    Evaluates a portfolio analysis against configured limits.

    Checks:
    - Daily VaR above max_daily_var (CRITICAL)
    - Single-asset weight above max_single_asset_weight (CRITICAL)
    - Sector weight above max_sector_concentration (HIGH)
    - Liquidity ratio below min_liquidity_ratio (MEDIUM)
    - Drawdown from peak above max_drawdown (HIGH)
    """

    def __init__(self, limits: RiskLimits):
        self.limits = limits

    def check_portfolio(self, analysis: PortfolioAnalysis, drawdown: float = 0.0) -> RiskCheckResult:
        breaches: List[RiskBreach] = []
        limits = self.limits

        if analysis.value_at_risk > limits.max_daily_var:
            breaches.append(RiskBreach(
                check="daily_var",
                severity=AlertSeverity.CRITICAL,
                alert_type=AlertType.RISK_LIMIT_BREACH,
                message=f"Daily VaR exceeded: {analysis.value_at_risk:,.0f} > {limits.max_daily_var:,.0f}",
            ))

        if analysis.single_asset_max > limits.max_single_asset_weight:
            largest = analysis.portfolio.largest_position()
            name = largest.name if largest else "unknown"
            breaches.append(RiskBreach(
                check="single_asset_weight",
                severity=AlertSeverity.CRITICAL,
                alert_type=AlertType.RISK_LIMIT_BREACH,
                message=(
                    f"Single asset concentration exceeded: {name} at {analysis.single_asset_max:.1%} "
                    f"> {limits.max_single_asset_weight:.1%}"
                ),
            ))

        for sector, weight in sorted(analysis.sector_concentration.items()):
            if weight > limits.max_sector_concentration:
                breaches.append(RiskBreach(
                    check="sector_concentration",
                    severity=AlertSeverity.HIGH,
                    alert_type=AlertType.RISK_LIMIT_BREACH,
                    message=(
                        f"Sector concentration exceeded: {sector} at {weight:.1%} "
                        f"> {limits.max_sector_concentration:.1%}"
                    ),
                ))

        if analysis.liquidity_ratio < limits.min_liquidity_ratio:
            breaches.append(RiskBreach(
                check="liquidity_ratio",
                severity=AlertSeverity.MEDIUM,
                alert_type=AlertType.RISK_LIMIT_BREACH,
                message=(
                    f"Liquidity ratio below minimum: {analysis.liquidity_ratio:.1%} "
                    f"< {limits.min_liquidity_ratio:.1%}"
                ),
            ))

        if drawdown > limits.max_drawdown:
            breaches.append(RiskBreach(
                check="max_drawdown",
                severity=AlertSeverity.HIGH,
                alert_type=AlertType.RISK_LIMIT_BREACH,
                message=f"Drawdown {drawdown:.1%} exceeds limit {limits.max_drawdown:.1%}",
            ))

        if not breaches:
            return RiskCheckResult(approved=True)

        for breach in breaches:
            logger.warning("Risk limit breach [%s]: %s", breach.check, breach.message)

        return RiskCheckResult(
            approved=False,
            reason=breaches[0].message,
            violated_checks=[breach.check for breach in breaches],
            breaches=breaches,
        )
