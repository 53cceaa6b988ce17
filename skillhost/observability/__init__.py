from .logging import JsonFormatter, configure_logging, skill_logger
from .metrics import MetricsRegistry

__all__ = ["JsonFormatter", "configure_logging", "skill_logger", "MetricsRegistry"]
