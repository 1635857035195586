"""CloudWatch custom metrics emitter with background batching.

Three families of data points are published under the ``SalonAgent``
namespace:

* ``ExternalAPI/*``  calls to the salon backend and the language model
* ``Tool/*``         tool invocations made on behalf of the model
* ``Turn/*``         whole conversation turns, tagged with the intent

Design
------
* Data points are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS``.
* When ``METRICS_ENABLED != "true"`` nothing is pushed; data points are
  only logged at DEBUG level.
* Each ``put_metric_data`` call sends at most ``MAX_BATCH_SIZE`` points.

Usage
-----
>>> from salon_agent.services.metrics import metrics
>>> metrics.record_success("salon_api", "availableSlots", latency_ms=123.4)
>>> metrics.record_tool_call("check_availability", success=False, latency_ms=20_000)
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "SalonAgent"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


def _dims(**pairs: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": value} for name, value in pairs.items()]


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self, enabled: bool | None = None) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    # ── Lazy CloudWatch client ────────────────────────────────────────

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── External calls ────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful call to an external service."""
        now = datetime.now(UTC)
        self._count("ExternalAPI/RequestCount", now, Service=service, Status="success")
        self._latency("ExternalAPI/Latency", now, latency_ms, Service=service, Operation=operation)
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed call to an external service."""
        now = datetime.now(UTC)
        self._count("ExternalAPI/RequestCount", now, Service=service, Status="failure")
        self._count("ExternalAPI/ErrorCount", now, Service=service, ErrorType=error_type)
        if latency_ms > 0:
            self._latency(
                "ExternalAPI/Latency", now, latency_ms, Service=service, Operation=operation,
            )
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    # ── Tools and turns ───────────────────────────────────────────────

    def record_tool_call(self, tool_name: str, *, success: bool, latency_ms: float) -> None:
        now = datetime.now(UTC)
        status = "success" if success else "failure"
        self._count("Tool/InvocationCount", now, Tool=tool_name, Status=status)
        self._latency("Tool/Latency", now, latency_ms, Tool=tool_name)
        logger.debug("Metric: tool %s %s latency=%.1fms", tool_name, status, latency_ms)

    def record_turn(self, intent: str, role: str, latency_ms: float, *, fallback: bool = False) -> None:
        now = datetime.now(UTC)
        self._count("Turn/Count", now, Intent=intent, Role=role)
        self._latency("Turn/Latency", now, latency_ms, Intent=intent)
        if fallback:
            self._count("Turn/FallbackCount", now, Role=role)
        logger.debug(
            "Metric: turn intent=%s role=%s fallback=%s latency=%.1fms",
            intent, role, fallback, latency_ms,
        )

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    def _count(self, name: str, now: datetime, **dims: str) -> None:
        self._append({
            "MetricName": name,
            "Dimensions": _dims(**dims),
            "Timestamp": now,
            "Value": 1,
            "Unit": "Count",
        })

    def _latency(self, name: str, now: datetime, latency_ms: float, **dims: str) -> None:
        self._append({
            "MetricName": name,
            "Dimensions": _dims(**dims),
            "Timestamp": now,
            "Value": latency_ms,
            "Unit": "Milliseconds",
        })

    def _append(self, metric_data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(metric_data)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
