"""
Telemetry for the inference queue service

Lightweight performance monitoring with <3% overhead.
Tracks completion, embedding and queue-wait latencies plus error kinds.
"""

import random
from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class TelemetryStats:
    """Statistics for telemetry tracking"""
    completion_calls: Dict[str, int] = field(default_factory=lambda: {"structured": 0, "text": 0})
    embedding_calls: int = 0
    total_completion_time_ms: float = 0.0
    total_embedding_time_ms: float = 0.0
    completion_latencies_ms: List[float] = field(default_factory=list)
    embedding_latencies_ms: List[float] = field(default_factory=list)
    queue_wait_ms: List[float] = field(default_factory=list)
    errors: Dict[str, int] = field(default_factory=dict)


class RuntimeTelemetry:
    """
    Lightweight telemetry system for the inference service

    Features:
    - Percentile latency tracking (p50, p95, p99)
    - Rolling window (1000 samples max)
    - Configurable sampling rate
    """

    def __init__(self, enabled: bool = True, sampling_rate: float = 1.0):
        """
        Initialize telemetry system

        Args:
            enabled: Enable/disable telemetry
            sampling_rate: Probability of recording an event (0.01-1.0)
        """
        self.enabled = enabled
        self.sampling_rate = max(0.01, min(1.0, sampling_rate))
        self.stats = TelemetryStats()
        self._max_samples = 1000  # Rolling window size

    def _sampled_out(self) -> bool:
        return self.sampling_rate < 1.0 and random.random() > self.sampling_rate

    def _append(self, samples: List[float], value: float) -> None:
        samples.append(value)
        if len(samples) > self._max_samples:
            del samples[: len(samples) - self._max_samples]

    def record_completion(self, duration_ms: float, mode: str, queue_wait_ms: float = 0.0) -> None:
        """
        Record one drained completion request

        Args:
            duration_ms: Engine call + decode time in milliseconds
            mode: "structured" or "text"
            queue_wait_ms: Time the request spent queued before processing
        """
        if not self.enabled or self._sampled_out():
            return

        self.stats.completion_calls[mode] = self.stats.completion_calls.get(mode, 0) + 1
        self.stats.total_completion_time_ms += duration_ms
        self._append(self.stats.completion_latencies_ms, duration_ms)
        self._append(self.stats.queue_wait_ms, queue_wait_ms)

    def record_embedding(self, duration_ms: float) -> None:
        """Record an embedding call"""
        if not self.enabled or self._sampled_out():
            return

        self.stats.embedding_calls += 1
        self.stats.total_embedding_time_ms += duration_ms
        self._append(self.stats.embedding_latencies_ms, duration_ms)

    def record_error(self, kind: str) -> None:
        """Record an error event by kind (exception class name)"""
        if not self.enabled:
            return

        self.stats.errors[kind] = self.stats.errors.get(kind, 0) + 1

    def get_report(self) -> Dict[str, Any]:
        """
        Get telemetry report

        Returns:
            Dictionary with performance metrics including percentiles
        """
        if not self.enabled:
            return {"enabled": False}

        total_calls = sum(self.stats.completion_calls.values()) + self.stats.embedding_calls
        total_errors = sum(self.stats.errors.values())

        return {
            "enabled": True,
            "sampling_rate": self.sampling_rate,
            "completion": {
                "calls": dict(self.stats.completion_calls),
                "latency_ms": self._latency_summary(
                    self.stats.completion_latencies_ms,
                    self.stats.total_completion_time_ms,
                    sum(self.stats.completion_calls.values()),
                ),
                "queue_wait_ms": self._latency_summary(
                    self.stats.queue_wait_ms,
                    sum(self.stats.queue_wait_ms),
                    len(self.stats.queue_wait_ms),
                ),
            },
            "embedding": {
                "calls": self.stats.embedding_calls,
                "latency_ms": self._latency_summary(
                    self.stats.embedding_latencies_ms,
                    self.stats.total_embedding_time_ms,
                    self.stats.embedding_calls,
                ),
            },
            "errors": {
                "total": total_errors,
                "by_kind": dict(self.stats.errors),
                "error_rate": total_errors / max(1, total_calls + total_errors),
            },
        }

    def _latency_summary(self, samples: List[float], total_ms: float, calls: int) -> Dict[str, float]:
        if calls == 0 or not samples:
            return {}

        latencies = sorted(samples)
        summary = {
            "mean": total_ms / calls,
            "min": latencies[0],
            "max": latencies[-1],
        }

        # Calculate percentiles if we have samples
        if len(latencies) >= 10:
            summary["p50"] = self._percentile(latencies, 0.50)
            summary["p95"] = self._percentile(latencies, 0.95)
            summary["p99"] = self._percentile(latencies, 0.99)

        return summary

    @staticmethod
    def _percentile(sorted_values: List[float], percentile: float) -> float:
        """
        Calculate percentile from sorted values

        Args:
            sorted_values: Sorted list of values
            percentile: Percentile to calculate (0.0-1.0)

        Returns:
            Percentile value
        """
        if not sorted_values:
            return 0.0

        n = len(sorted_values)
        index = min(int(percentile * n), n - 1)
        return sorted_values[index]

    def reset(self) -> None:
        """Reset all statistics"""
        self.stats = TelemetryStats()
