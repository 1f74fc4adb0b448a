"""Infrastructure modules for portfolio-agent"""

from .alerting import AlertSeverity, NotificationService, NotificationSink  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401

__all__ = [
	"AlertSeverity",
	"NotificationService",
	"NotificationSink",
	"MetricsRecorder",
	"CycleStats",
]
