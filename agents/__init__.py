"""Portfolio agents, their supervisor and the service facade."""

from .portfolio_agent import PortfolioAgent  # noqa: F401
from .supervisor import AgentMonitor, SystemStatus  # noqa: F401
from .service import AgentService  # noqa: F401

__all__ = [
	"PortfolioAgent",
	"AgentMonitor",
	"SystemStatus",
	"AgentService",
]
