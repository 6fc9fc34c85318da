"""
Metrics Module - in-process counters and gauges with Prometheus text export.

Operationally significant events (cursor resets, stale prices served, skipped
cycles) are counted here so they are observable outside the logs.
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class Counter:
    """A counter that only goes up."""
    name: str
    help: str
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def inc(self, value: float = 1.0):
        if value < 0:
            raise ValueError("Counter can only increase")
        with self._lock:
            self._value += value

    def get(self) -> float:
        with self._lock:
            return self._value


@dataclass
class Gauge:
    """A gauge that can go up or down."""
    name: str
    help: str
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def set(self, value: float):
        with self._lock:
            self._value = float(value)

    def get(self) -> float:
        with self._lock:
            return self._value


class MetricsRegistry:
    """Registry of named metrics."""

    def __init__(self):
        self._counters: Dict[str, Counter] = {}
        self._gauges: Dict[str, Gauge] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help: str = "") -> Counter:
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name=name, help=help)
            return self._counters[name]

    def gauge(self, name: str, help: str = "") -> Gauge:
        with self._lock:
            if name not in self._gauges:
                self._gauges[name] = Gauge(name=name, help=help)
            return self._gauges[name]

    def snapshot(self) -> Dict[str, float]:
        """Current values of every metric."""
        with self._lock:
            metrics = list(self._counters.values()) + list(self._gauges.values())
        return {m.name: m.get() for m in metrics}

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        with self._lock:
            counters = list(self._counters.values())
            gauges = list(self._gauges.values())

        for metric in counters:
            lines.append(f"# HELP {metric.name} {metric.help}")
            lines.append(f"# TYPE {metric.name} counter")
            lines.append(f"{metric.name} {metric.get()}")

        for metric in gauges:
            lines.append(f"# HELP {metric.name} {metric.help}")
            lines.append(f"# TYPE {metric.name} gauge")
            lines.append(f"{metric.name} {metric.get()}")

        return "\n".join(lines) + "\n"


_registry: Optional[MetricsRegistry] = None


def get_registry() -> MetricsRegistry:
    """Get the global metrics registry."""
    global _registry
    if _registry is None:
        _registry = MetricsRegistry()
    return _registry


# === ENGINE METRICS ===

def cursor_not_found_total() -> Counter:
    return get_registry().counter(
        "revshare_cursor_not_found_total",
        "Ingestion cursor missing from RPC history; volume in the gap is not counted",
    )


def ingested_transactions_total() -> Counter:
    return get_registry().counter(
        "revshare_ingested_transactions_total", "Swap transactions recorded as volume"
    )


def tx_parse_failures_total() -> Counter:
    return get_registry().counter(
        "revshare_tx_parse_failures_total", "Transactions skipped because they could not be parsed"
    )


def pagination_anomalies_total() -> Counter:
    return get_registry().counter(
        "revshare_pagination_anomalies_total", "Ingestion passes that exceeded the page ceiling"
    )


def stale_price_served_total() -> Counter:
    return get_registry().counter(
        "revshare_stale_price_served_total", "Cached prices served after an oracle failure"
    )


def cycles_applied_total() -> Counter:
    return get_registry().counter(
        "revshare_cycles_applied_total", "Snapshot cycles folded into balance-time credit"
    )


def cycles_skipped_total() -> Counter:
    return get_registry().counter(
        "revshare_cycles_skipped_total", "Snapshot cycles skipped (duplicate, failed, or missed)"
    )


def pool_balance_gauge() -> Gauge:
    return get_registry().gauge("revshare_pool_balance_usd", "Undistributed revenue pool")


def distributions_committed_total() -> Counter:
    return get_registry().counter(
        "revshare_distributions_committed_total", "Payout plans committed to the ledger"
    )


def reset_registry() -> None:
    """Drop every metric (tests)."""
    global _registry
    _registry = None
