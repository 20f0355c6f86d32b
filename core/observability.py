"""
Observability sink for breadcrumbs, exception capture and performance metrics.

The orchestrator only talks to the ObservabilitySink interface. Emission is
fire-and-forget: every sink handed to the orchestrator is wrapped in a
SafeSink, so an unavailable backend never blocks or fails a pipeline run.

Usage:
    from core.observability import LoggingSink, SafeSink

    sink = SafeSink(LoggingSink())
    sink.add_breadcrumb("Scheduler tick", "scheduler", {"due_jobs": 3})
    sink.record_metric("pipeline.throughput", 120.5, {"job_id": "job_1"})
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)


class ObservabilitySink(ABC):
    """Structured log/metric emission backend."""

    @abstractmethod
    def add_breadcrumb(
        self,
        message: str,
        category: str,
        data: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record a navigation breadcrumb"""
        pass

    @abstractmethod
    def capture_exception(
        self,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Report an exception with context"""
        pass

    @abstractmethod
    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record a performance metric"""
        pass


class LoggingSink(ObservabilitySink):
    """Default sink that writes everything to the application log."""

    def __init__(self, logger_name: str = "pipeline.observability"):
        self._log = logging.getLogger(logger_name)

    def add_breadcrumb(self, message, category, data=None):
        self._log.debug(f"[{category}] {message}", extra={"breadcrumb": data or {}})

    def capture_exception(self, error, context=None):
        self._log.error(
            f"Captured {type(error).__name__}: {error}",
            extra={"error_context": context or {}}
        )

    def record_metric(self, name, value, tags=None):
        self._log.info(f"metric {name}={value}", extra={"metric_tags": tags or {}})


class SafeSink(ObservabilitySink):
    """
    Fire-and-forget wrapper around another sink.

    Failures inside the wrapped sink are logged and never propagate to the
    caller.
    """

    def __init__(self, inner: ObservabilitySink):
        self.inner = inner

    def add_breadcrumb(self, message, category, data=None):
        try:
            self.inner.add_breadcrumb(message, category, data)
        except Exception as e:
            logger.warning(f"Observability sink failed on breadcrumb: {e}")

    def capture_exception(self, error, context=None):
        try:
            self.inner.capture_exception(error, context)
        except Exception as e:
            logger.warning(f"Observability sink failed on exception capture: {e}")

    def record_metric(self, name, value, tags=None):
        try:
            self.inner.record_metric(name, value, tags)
        except Exception as e:
            logger.warning(f"Observability sink failed on metric {name}: {e}")


def ensure_safe(sink: Optional[ObservabilitySink]) -> SafeSink:
    """Wrap a sink (or the default LoggingSink) in a SafeSink."""
    if isinstance(sink, SafeSink):
        return sink
    return SafeSink(sink or LoggingSink())
