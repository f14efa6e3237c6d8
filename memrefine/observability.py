"""memrefine Observability Module.

Provides structured logging and metrics for refinement sessions.

Usage:
    from memrefine.observability import metrics, logger

    # Log operations
    logger.info("Session opened", session_id="abc123", owner_id="agent-1")

    # Record metrics
    metrics.record_session_opened()
    metrics.record_rollback(trigger="per_operation", reversed_operations=2)

    # Get stats
    print(metrics.get_summary())
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================================
# Structured Logger
# ============================================================================

class StructuredLogger:
    """JSON-structured logger for memrefine operations."""

    def __init__(self, name: str = "memrefine", level: int = logging.INFO):
        self._logger = logging.getLogger(name)
        self._logger.setLevel(level)
        self._context: Dict[str, Any] = {}

        # Add JSON handler if not already configured
        if not self._logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(StructuredFormatter())
            self._logger.addHandler(handler)

    def set_level(self, level: str) -> None:
        self._logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    def _log(self, level: int, message: str, **kwargs):
        """Log with structured data."""
        extra = {
            "structured_data": {
                **self._context,
                **kwargs,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        }
        self._logger.log(level, message, extra=extra)

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)


class StructuredFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add structured data if present
        if hasattr(record, "structured_data"):
            log_data.update(record.structured_data)

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


# ============================================================================
# Metrics Collector
# ============================================================================

@dataclass
class OperationMetrics:
    """Metrics for a single tool action."""
    count: int = 0
    total_latency_ms: float = 0.0
    min_latency_ms: float = float("inf")
    max_latency_ms: float = 0.0
    errors: int = 0
    last_operation: Optional[str] = None

    def record(self, latency_ms: float, error: bool = False):
        self.count += 1
        self.total_latency_ms += latency_ms
        self.min_latency_ms = min(self.min_latency_ms, latency_ms)
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)
        if error:
            self.errors += 1
        self.last_operation = datetime.now(timezone.utc).isoformat()

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "min_latency_ms": round(self.min_latency_ms, 2) if self.count > 0 else 0,
            "max_latency_ms": round(self.max_latency_ms, 2),
            "errors": self.errors,
            "error_rate": round(self.errors / self.count, 4) if self.count > 0 else 0,
            "last_operation": self.last_operation,
        }


@dataclass
class RefinementMetrics:
    """Session-level counters."""
    sessions_opened: int = 0
    sessions_completed: int = 0
    sessions_rolled_back: int = 0
    sessions_abandoned: int = 0
    per_operation_trips: int = 0
    post_session_trips: int = 0
    manual_rollbacks: int = 0
    operations_applied: int = 0
    operations_refused: int = 0
    operations_reversed: int = 0
    records_protected: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessions_opened": self.sessions_opened,
            "sessions_completed": self.sessions_completed,
            "sessions_rolled_back": self.sessions_rolled_back,
            "sessions_abandoned": self.sessions_abandoned,
            "per_operation_trips": self.per_operation_trips,
            "post_session_trips": self.post_session_trips,
            "manual_rollbacks": self.manual_rollbacks,
            "operations_applied": self.operations_applied,
            "operations_refused": self.operations_refused,
            "operations_reversed": self.operations_reversed,
            "records_protected": self.records_protected,
        }


class MetricsCollector:
    """Collects and exposes memrefine metrics."""

    def __init__(self):
        self._lock = threading.Lock()
        self._operations: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._refinement = RefinementMetrics()
        self._start_time = datetime.now(timezone.utc)

    def record_operation(self, operation: str, latency_ms: float, error: bool = False, **tags):
        """Record a tool action's latency."""
        with self._lock:
            self._operations[operation].record(latency_ms, error)

    def record_session_opened(self):
        with self._lock:
            self._refinement.sessions_opened += 1

    def record_session_completed(self):
        with self._lock:
            self._refinement.sessions_completed += 1

    def record_session_abandoned(self, count: int = 1):
        with self._lock:
            self._refinement.sessions_abandoned += max(0, int(count))

    def record_applied(self, operation: str = ""):
        with self._lock:
            self._refinement.operations_applied += 1
            if operation == "protect":
                self._refinement.records_protected += 1

    def record_refused(self, code: str = ""):
        with self._lock:
            self._refinement.operations_refused += 1

    def record_rollback(self, trigger: str, reversed_operations: int = 0):
        with self._lock:
            self._refinement.sessions_rolled_back += 1
            self._refinement.operations_reversed += max(0, int(reversed_operations))
            if trigger == "per_operation":
                self._refinement.per_operation_trips += 1
            elif trigger == "post_session":
                self._refinement.post_session_trips += 1
            else:
                self._refinement.manual_rollbacks += 1

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
            return {
                "uptime_seconds": round(uptime, 2),
                "operations": {
                    op: m.to_dict()
                    for op, m in self._operations.items()
                },
                "refinement": self._refinement.to_dict(),
            }

    def get_prometheus_metrics(self) -> str:
        """Export metrics in Prometheus format."""
        lines = []
        summary = self.get_summary()

        for op, data in summary["operations"].items():
            lines.append(f'memrefine_tool_call_count{{action="{op}"}} {data["count"]}')
            lines.append(f'memrefine_tool_call_latency_avg_ms{{action="{op}"}} {data["avg_latency_ms"]}')
            lines.append(f'memrefine_tool_call_errors{{action="{op}"}} {data["errors"]}')

        for name, value in summary["refinement"].items():
            lines.append(f"memrefine_{name}_total {value}")

        lines.append(f'memrefine_uptime_seconds {summary["uptime_seconds"]}')
        return "\n".join(lines)

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()
            self._refinement = RefinementMetrics()

    @contextmanager
    def measure(self, operation: str, **tags):
        """Context manager to measure a tool action's latency.

        Usage:
            with metrics.measure("consolidate", owner_id="agent-1"):
                gateway.consolidate(...)
        """
        start = time.perf_counter()
        error = False
        try:
            yield
        except Exception:
            error = True
            raise
        finally:
            latency_ms = (time.perf_counter() - start) * 1000
            self.record_operation(operation, latency_ms, error=error, **tags)


# ============================================================================
# Global Instances
# ============================================================================

logger = StructuredLogger("memrefine")

metrics = MetricsCollector()


# ============================================================================
# API Endpoints (for FastAPI integration)
# ============================================================================

def add_metrics_routes(app):
    """Add metrics endpoints to a FastAPI app.

    Usage:
        from memrefine.observability import add_metrics_routes
        add_metrics_routes(app)
    """
    from fastapi import Response

    @app.get("/metrics")
    async def prometheus_metrics():
        """Prometheus-compatible metrics endpoint."""
        return Response(
            content=metrics.get_prometheus_metrics(),
            media_type="text/plain"
        )

    @app.get("/metrics/json")
    async def json_metrics():
        """JSON metrics endpoint."""
        return metrics.get_summary()
