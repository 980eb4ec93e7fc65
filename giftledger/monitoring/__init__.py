"""Monitoring and observability: logging, metrics, health checks."""
from .logging import get_logger, setup_logging
from .metrics import metrics

__all__ = ["get_logger", "setup_logging", "metrics"]
