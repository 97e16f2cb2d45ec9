from .logging import JsonFormatter, configure_logging, get_logger
from .prometheus_metrics import ClusterMetrics
from .retry import RetryError, retry

__all__ = [
    "JsonFormatter",
    "configure_logging",
    "get_logger",
    "ClusterMetrics",
    "RetryError",
    "retry",
]
