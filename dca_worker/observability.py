"""Breadcrumbs, exception capture and metrics for scheduled swap runs."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import prometheus_client

logger = logging.getLogger(__name__)

_METRICS_REGISTRY = prometheus_client.CollectorRegistry()

_EXECUTIONS_TOTAL = prometheus_client.Counter(
    "dca_executions_total",
    "Scheduled swap runs by outcome",
    labelnames=("outcome",),
    registry=_METRICS_REGISTRY,
)
_ERRORS_TOTAL = prometheus_client.Counter(
    "dca_errors_total",
    "Exceptions captured by the observability sink",
    labelnames=("code",),
    registry=_METRICS_REGISTRY,
)
_CONFIRMATION_SECONDS = prometheus_client.Histogram(
    "dca_confirmation_seconds",
    "Time spent waiting for operations to settle",
    labelnames=("kind",),
    registry=_METRICS_REGISTRY,
)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def metrics_registry() -> prometheus_client.CollectorRegistry:
    return _METRICS_REGISTRY


def render_metrics() -> bytes:
    return prometheus_client.generate_latest(_METRICS_REGISTRY)


def serve_metrics(port: int, addr: str = "0.0.0.0") -> None:
    """Expose the worker registry for scraping on ``addr:port``."""

    prometheus_client.start_http_server(port, addr=addr, registry=_METRICS_REGISTRY)
    logger.info("Serving metrics on %s:%d", addr, port, extra={"event": "metrics.started"})


def record_execution(outcome: str) -> None:
    _EXECUTIONS_TOTAL.labels(outcome).inc()


def observe_confirmation(kind: str, seconds: float) -> None:
    _CONFIRMATION_SECONDS.labels(kind).observe(max(0.0, seconds))


def configure_logging(level: str | int = "INFO") -> None:
    """Install a single stream handler on the root logger."""

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=_LOG_FORMAT, force=True)


class ObservabilityScope(Protocol):
    """Per-run sink for breadcrumbs and captured exceptions."""

    def add_breadcrumb(
        self,
        message: Optional[str] = None,
        *,
        data: Optional[Dict[str, Any]] = None,
        category: Optional[str] = None,
    ) -> None:
        ...

    def capture_exception(self, exc: BaseException) -> None:
        ...


@dataclass
class Breadcrumb:
    message: Optional[str]
    data: Dict[str, Any]
    category: Optional[str]
    timestamp: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"timestamp": self.timestamp, "data": dict(self.data)}
        if self.message:
            payload["message"] = self.message
        if self.category:
            payload["category"] = self.category
        return payload


class LoggingScope:
    """Observability scope that reports through logging and Prometheus.

    Breadcrumbs accumulate for the lifetime of the scope and are attached to
    the structured error event emitted by :meth:`capture_exception`. Failures
    inside the sink are logged and swallowed so they never affect the run.
    """

    def __init__(self, *, job_id: Optional[str] = None, max_breadcrumbs: int = 100) -> None:
        self.job_id = job_id
        self._max = max_breadcrumbs
        self._breadcrumbs: List[Breadcrumb] = []
        self.captured: List[BaseException] = []

    @property
    def breadcrumbs(self) -> List[Breadcrumb]:
        return list(self._breadcrumbs)

    def add_breadcrumb(
        self,
        message: Optional[str] = None,
        *,
        data: Optional[Dict[str, Any]] = None,
        category: Optional[str] = None,
    ) -> None:
        try:
            crumb = Breadcrumb(message=message, data=dict(data or {}), category=category)
            self._breadcrumbs.append(crumb)
            if len(self._breadcrumbs) > self._max:
                del self._breadcrumbs[0]
            logger.debug(
                "breadcrumb %s %s",
                message or category or "",
                crumb.data,
                extra={"event": "dca.breadcrumb", "job_id": self.job_id},
            )
        except Exception as exc:  # pragma: no cover
            logger.warning("Failed to record breadcrumb: %s", exc)

    def capture_exception(self, exc: BaseException) -> None:
        try:
            self.captured.append(exc)
            code = getattr(exc, "code", None) or type(exc).__name__
            _ERRORS_TOTAL.labels(str(code)).inc()
            logger.error(
                "dca.job.failed | job=%s | code=%s | %s",
                self.job_id,
                code,
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={
                    "event": "dca.job.failed",
                    "job_id": self.job_id,
                    "code": code,
                    "breadcrumbs": [crumb.as_dict() for crumb in self._breadcrumbs],
                },
            )
        except Exception as sink_error:  # pragma: no cover
            logger.warning("Failed to capture exception: %s", sink_error)
