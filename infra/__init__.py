"""Infrastructure modules for perpbot"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .rate_limiter import RateLimiter  # noqa: F401
from .status_channel import StatusChannel  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"CycleStats",
	"RateLimiter",
	"StatusChannel",
]
