"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters.
"""
import threading
from typing import Dict, Optional

# (counter name, help text) in exposition order
_COUNTERS = (
    ("requests_total", "Total HTTP requests"),
    ("builds_submitted_total", "Total builds submitted"),
    ("builds_completed_total", "Total builds completed successfully"),
    ("builds_failed_total", "Total builds failed"),
    ("cache_hits_total", "Dependency cache hits"),
    ("cache_misses_total", "Dependency cache misses"),
    ("cache_populated_total", "Dependency cache entries created"),
    ("cache_evictions_total", "Dependency cache entries evicted"),
    ("cache_errors_total", "Dependency cache restore/populate failures"),
    ("log_subscribers_dropped_total", "Log stream subscribers disconnected on buffer overflow"),
)


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name, _ in _COUNTERS}
        self._counters.update({
            "requests_2xx": 0,
            "requests_4xx": 0,
            "requests_5xx": 0,
        })

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = 0
            self._counters[name] += value

    def get(self, name: str) -> int:
        """Get a counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def get_all(self) -> Dict[str, int]:
        """Get all counter values."""
        with self._lock:
            return self._counters.copy()

    def to_prometheus(self, gauges: Optional[Dict[str, int]] = None) -> str:
        """Export metrics in Prometheus text format. Gauges are point-in-time values."""
        lines = []
        counters = self.get_all()

        for name, help_text in _COUNTERS:
            lines.append(f"# HELP builder_{name} {help_text}")
            lines.append(f"# TYPE builder_{name} counter")
            lines.append(f"builder_{name} {counters.get(name, 0)}")

        # Requests by status class
        lines.append("# HELP builder_requests_by_status HTTP requests by status class")
        lines.append("# TYPE builder_requests_by_status counter")
        lines.append(f'builder_requests_by_status{{status="2xx"}} {counters["requests_2xx"]}')
        lines.append(f'builder_requests_by_status{{status="4xx"}} {counters["requests_4xx"]}')
        lines.append(f'builder_requests_by_status{{status="5xx"}} {counters["requests_5xx"]}')

        for name, value in sorted((gauges or {}).items()):
            lines.append(f"# TYPE builder_{name} gauge")
            lines.append(f"builder_{name} {value}")

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
