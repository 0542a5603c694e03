"""
In-process metrics for ORE Learner
Counts decoded events, decode failures and RPC latency
"""

import time
import statistics
from typing import Dict, List, Optional
from dataclasses import dataclass
from collections import defaultdict, deque


@dataclass
class HistogramStats:
    """Statistical summary of recorded latencies"""
    operation: str
    count: int
    p50: float
    p95: float
    p99: float
    mean: float
    min: float
    max: float

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "p50": self.p50,
            "p95": self.p95,
            "p99": self.p99,
            "mean": self.mean,
            "min": self.min,
            "max": self.max,
        }


def _metric_key(name: str, labels: Optional[Dict[str, str]]) -> str:
    """Fold labels into the metric name: events{kind=deploy}"""
    if not labels:
        return name
    rendered = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
    return f"{name}{{{rendered}}}"


class MetricsCollector:
    """
    Collects counters, gauges and latency samples

    Labeled metrics are stored under a flattened key so the export stays a
    plain JSON object. Latency samples are kept in a bounded window per
    operation.
    """

    def __init__(self, enable_histogram: bool = True, window_size: int = 10000):
        self.enable_histogram = enable_histogram
        self.window_size = window_size
        self._latencies: Dict[str, deque] = defaultdict(lambda: deque(maxlen=self.window_size))
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = {}

    def record_latency(
        self,
        operation: str,
        latency_ms: float,
        labels: Optional[Dict[str, str]] = None
    ) -> None:
        """Record one latency sample (milliseconds) and bump its call counter"""
        if self.enable_histogram:
            self._latencies[operation].append(latency_ms)
        self._counters[_metric_key(f"{operation}_count", labels)] += 1

    def increment_counter(
        self,
        metric_name: str,
        value: int = 1,
        labels: Optional[Dict[str, str]] = None
    ) -> None:
        self._counters[_metric_key(metric_name, labels)] += value

    def set_gauge(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ) -> None:
        self._gauges[_metric_key(metric_name, labels)] = value

    def get_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> int:
        return self._counters.get(_metric_key(metric_name, labels), 0)

    def get_gauge(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self._gauges.get(_metric_key(metric_name, labels), 0.0)

    def get_histogram_stats(self, operation: str) -> Optional[HistogramStats]:
        """
        Summarize latency samples for an operation

        Returns:
            HistogramStats, or None when nothing was recorded
        """
        samples = sorted(self._latencies.get(operation, []))
        if not samples:
            return None

        return HistogramStats(
            operation=operation,
            count=len(samples),
            p50=self._percentile(samples, 50),
            p95=self._percentile(samples, 95),
            p99=self._percentile(samples, 99),
            mean=statistics.mean(samples),
            min=samples[0],
            max=samples[-1],
        )

    def export_metrics(self) -> Dict:
        """Export every metric as a JSON-serializable dict"""
        histograms = {}
        for operation in list(self._latencies.keys()):
            stats = self.get_histogram_stats(operation)
            if stats:
                histograms[operation] = stats.to_dict()

        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "histograms": histograms,
        }

    def reset(self) -> None:
        self._latencies.clear()
        self._counters.clear()
        self._gauges.clear()

    @staticmethod
    def _percentile(sorted_data: List[float], percentile: float) -> float:
        """Linear-interpolated percentile of already sorted data"""
        if not sorted_data:
            return 0.0
        if len(sorted_data) == 1:
            return sorted_data[0]

        index = (percentile / 100) * (len(sorted_data) - 1)
        lower = int(index)
        upper = min(lower + 1, len(sorted_data) - 1)
        weight = index - lower
        return sorted_data[lower] * (1 - weight) + sorted_data[upper] * weight


class LatencyTimer:
    """Context manager that records elapsed milliseconds on exit"""

    def __init__(self, metrics: MetricsCollector, operation: str, labels: Optional[Dict[str, str]] = None):
        self.metrics = metrics
        self.operation = operation
        self.labels = labels
        self.start_time: Optional[float] = None
        self.latency_ms: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.latency_ms = (time.perf_counter() - self.start_time) * 1000
            self.metrics.record_latency(self.operation, self.latency_ms, self.labels)


_global_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Get the process-wide metrics collector"""
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def init_metrics(enable_histogram: bool = True, window_size: int = 10000) -> MetricsCollector:
    """
    Configure the process-wide metrics collector

    Modules bind get_metrics() at import time, so an existing collector is
    reconfigured and cleared in place rather than replaced.
    """
    collector = get_metrics()
    collector.enable_histogram = enable_histogram
    collector.window_size = window_size
    collector.reset()
    return collector
