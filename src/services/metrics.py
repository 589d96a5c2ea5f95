"""CloudWatch custom metrics for outbound calls and notification batches.

* Every call to Twilio and to the agent service is wrapped in
  ``metrics.timed(service, operation)`` and produces a request count, a
  latency sample and, on failure, an error count keyed by exception type.
* Each notification batch produces sent/failed counts.
* Data points are buffered in memory and flushed by a daemon thread every
  ``FLUSH_INTERVAL_SECONDS`` when ``METRICS_ENABLED=true``; otherwise they
  are logged at DEBUG and dropped on flush.

>>> with metrics.timed("twilio", "messages.create"):
...     client.messages.create(...)
>>> metrics.record_dispatch("medication_reminder", sent=3, failed=1)
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "Poppa"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


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

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Recording ─────────────────────────────────────────────────────

    def record_call(
        self,
        service: str,
        operation: str,
        latency_ms: float,
        error_type: str | None = None,
    ) -> None:
        """Record one external call; a non-``None`` *error_type* marks failure."""
        now = datetime.now(UTC)
        status = "success" if error_type is None else "failure"
        service_dim = {"Name": "Service", "Value": service}

        self._append(
            _datum(
                "ExternalAPI/RequestCount", now, 1, "Count",
                [service_dim, {"Name": "Status", "Value": status}],
            )
        )
        self._append(
            _datum(
                "ExternalAPI/Latency", now, latency_ms, "Milliseconds",
                [service_dim, {"Name": "Operation", "Value": operation}],
            )
        )
        if error_type is not None:
            self._append(
                _datum(
                    "ExternalAPI/ErrorCount", now, 1, "Count",
                    [service_dim, {"Name": "ErrorType", "Value": error_type}],
                )
            )
        logger.debug(
            "Metric: %s %s %s latency=%.1fms", service, operation, status, latency_ms,
        )

    @contextmanager
    def timed(self, service: str, operation: str) -> Iterator[None]:
        """Time the wrapped block and record it; exceptions propagate."""
        started = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.record_call(
                service, operation, (time.perf_counter() - started) * 1000,
                error_type=type(exc).__name__,
            )
            raise
        self.record_call(service, operation, (time.perf_counter() - started) * 1000)

    def record_dispatch(self, kind: str, sent: int, failed: int) -> None:
        """Record the outcome of one notification batch."""
        now = datetime.now(UTC)
        dims = [{"Name": "Kind", "Value": kind}]
        self._append(_datum("Notifications/Sent", now, sent, "Count", dims))
        self._append(_datum("Notifications/Failed", now, failed, "Count", dims))
        logger.debug("Metric: dispatch %s sent=%d failed=%d", kind, sent, failed)

    # ── Flushing ──────────────────────────────────────────────────────

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
        logger.info(
            "Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS,
        )


def _datum(
    name: str,
    timestamp: datetime,
    value: float,
    unit: str,
    dimensions: list[dict[str, str]],
) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": dimensions,
        "Timestamp": timestamp,
        "Value": value,
        "Unit": unit,
    }


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
