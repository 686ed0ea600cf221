# osiris/infra/metrics.py
"""
In-process metrics.

Counters and duration samples live in memory and are served as JSON on
``/metrics``. Labelled series are keyed ``name{k=v,...}`` with labels sorted.
"""
from __future__ import annotations

import time
from collections import deque
from contextlib import contextmanager
from threading import Lock
from typing import Deque, Dict, Iterator

from osiris.infra.logging_config import get_logger

logger = get_logger(__name__)

# Samples kept per histogram series; older samples fall off
HISTOGRAM_WINDOW = 5000


def series_key(name: str, labels: dict | None = None) -> str:
    if not labels:
        return name
    rendered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}{{{rendered}}}"


def summarize(samples) -> dict:
    """count/min/max/avg/p95 over a window of samples."""
    ordered = sorted(samples)
    if not ordered:
        return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}
    n = len(ordered)
    return {
        "count": n,
        "min": round(ordered[0], 4),
        "max": round(ordered[-1], 4),
        "avg": round(sum(ordered) / n, 4),
        "p95": round(ordered[min(int(n * 0.95), n - 1)], 4),
    }


class MetricsCollector:
    def __init__(self, window: int = HISTOGRAM_WINDOW):
        self._window = window
        self._counters: Dict[str, int] = {}
        self._samples: Dict[str, Deque[float]] = {}
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = series_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = series_key(name, labels)
        with self._lock:
            if key not in self._samples:
                self._samples[key] = deque(maxlen=self._window)
            self._samples[key].append(value)

    def get_metrics(self) -> dict:
        with self._lock:
            counters = dict(self._counters)
            samples = {key: list(values) for key, values in self._samples.items()}
        return {
            "counters": counters,
            "histograms": {key: summarize(values) for key, values in samples.items()},
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._samples.clear()
        logger.info("Metrics reset")


_collector = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _collector


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _collector.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _collector.observe_histogram(name, value, labels or None)


@contextmanager
def Timer(metric_name: str, **labels) -> Iterator[None]:
    """Record the wall time of the ``with`` block, even when it raises."""
    started = time.monotonic()
    try:
        yield
    finally:
        observe_histogram(metric_name, time.monotonic() - started, **labels)


class AppMetrics:
    """Named counters for dispatch, outreach and inbound webhooks"""

    # Dispatch

    @staticmethod
    def offer_sent(phase: str, count: int = 1) -> None:
        inc_counter("job_offers_sent_total", amount=count, phase=phase)

    @staticmethod
    def offer_delivery_failed(phase: str) -> None:
        inc_counter("job_offer_delivery_failures_total", phase=phase)

    @staticmethod
    def job_claimed() -> None:
        inc_counter("jobs_claimed_total")

    @staticmethod
    def claim_conflict() -> None:
        inc_counter("job_claim_conflicts_total")

    @staticmethod
    def escalation(reason: str) -> None:
        inc_counter("job_escalations_total", reason=reason)

    # Outreach

    @staticmethod
    def sms_sent(kind: str) -> None:
        inc_counter("sms_sent_total", kind=kind)

    @staticmethod
    def call_placed(action: str) -> None:
        inc_counter("calls_placed_total", action=action)

    @staticmethod
    def automation_run(automation: str, status: str) -> None:
        inc_counter("automation_runs_total", automation=automation, status=status)

    @staticmethod
    def track_processing_time(automation: str):
        return Timer("automation_processing_seconds", automation=automation)

    # Inbound

    @staticmethod
    def webhook_received(provider: str, event: str) -> None:
        inc_counter("webhooks_received_total", provider=provider, event=event)

    @staticmethod
    def webhook_validation_failed(provider: str) -> None:
        inc_counter("webhook_validation_failures_total", provider=provider)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)
