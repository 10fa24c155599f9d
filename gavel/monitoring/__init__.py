"""Monitoring and observability package."""
from .health import HealthCheck
from .logging import bind_request_context, setup_logging
from .metrics import metrics

__all__ = ["metrics", "setup_logging", "bind_request_context", "HealthCheck"]
