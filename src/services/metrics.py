"""CloudWatch custom metrics emitter with background batching.

Publishes engine-level metrics: every tool invocation, every engine
pass, every LLM call, gate denials and cron batch results.

Design
------
* Metrics are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS`` (default 60 s).
* When running locally (``METRICS_ENABLED != "true"``), metrics are
  logged at DEBUG level but **not** pushed to CloudWatch.
* Each ``put_metric_data`` call sends up to 1 000 metric data points
  (the CloudWatch API limit per request).

Usage
-----
>>> from src.services.metrics import metrics
>>> metrics.record_tool_call("scheduling", "check_availability", ok=True, latency_ms=42.0)
>>> metrics.record_engine_pass("scheduling", "responded", tool_calls=1)
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

NAMESPACE = "ClinicAgents"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


def _dims(**values: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": value} for name, value in values.items()]


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    # ── Lazy CloudWatch client ────────────────────────────────────────

    def _get_cw_client(self):
        """Create the boto3 CloudWatch client on first use."""
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_llm_call(
        self,
        operation: str,
        *,
        ok: bool,
        latency_ms: float,
        error_type: str | None = None,
    ) -> None:
        """Record one call to the LLM provider."""
        status = "success" if ok else "failure"
        self._count("LLM/RequestCount", _dims(Operation=operation, Status=status))
        self._append_value(
            "LLM/Latency", _dims(Operation=operation), latency_ms, "Milliseconds",
        )
        if not ok:
            self._count("LLM/ErrorCount", _dims(ErrorType=error_type or "unknown"))
        logger.debug(
            "Metric: llm %s %s latency=%.1fms", operation, status, latency_ms,
        )

    def record_tool_call(
        self,
        module: str,
        tool_name: str,
        *,
        ok: bool,
        latency_ms: float,
        failure_kind: str | None = None,
    ) -> None:
        """Record one tool invocation made by the engine."""
        status = "success" if ok else (failure_kind or "failure")
        self._count("Tools/CallCount", _dims(Module=module, Tool=tool_name, Status=status))
        self._append_value(
            "Tools/Latency", _dims(Module=module, Tool=tool_name), latency_ms, "Milliseconds",
        )
        logger.debug(
            "Metric: tool %s/%s %s latency=%.1fms", module, tool_name, status, latency_ms,
        )

    def record_engine_pass(self, module: str, outcome: str, *, tool_calls: int) -> None:
        """Record the termination of one engine pass."""
        self._count("Engine/PassCount", _dims(Module=module, Outcome=outcome))
        self._append_value("Engine/ToolCallsPerPass", _dims(Module=module), tool_calls, "Count")
        logger.debug("Metric: engine %s %s tool_calls=%d", module, outcome, tool_calls)

    def record_gate_denied(self, reason: str) -> None:
        """Record a message or batch item refused by the subscription gate."""
        self._count("Gate/DeniedCount", _dims(Reason=reason))

    def record_batch(
        self, processed: int, skipped: int, failed: int, *, job: str = "follow_ups",
    ) -> None:
        """Record the totals of one cron batch."""
        for name, value in (("Processed", processed), ("Skipped", skipped), ("Failed", failed)):
            self._append_value(f"Cron/{name}", _dims(Job=job), value, "Count")
        logger.debug(
            "Metric: batch %s processed=%d skipped=%d failed=%d", job, processed, skipped, failed,
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
            # CloudWatch accepts max 1000 metric data points per call
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    def _count(self, name: str, dimensions: list[dict[str, str]]) -> None:
        self._append_value(name, dimensions, 1, "Count")

    def _append_value(
        self,
        name: str,
        dimensions: list[dict[str, str]],
        value: float,
        unit: str,
    ) -> None:
        datum = {
            "MetricName": name,
            "Dimensions": dimensions,
            "Timestamp": datetime.now(UTC),
            "Value": value,
            "Unit": unit,
        }
        with self._lock:
            self._buffer.append(datum)

    def _start_flush_thread(self) -> None:
        """Start a daemon thread that flushes metrics periodically."""

        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)  # flush on process exit
        logger.info(
            "Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS,
        )


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
