"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters.
"""
import threading
from typing import Dict

# name -> help text, in exposition order
COUNTER_HELP = {
    "builds_created_total": "Total builds submitted",
    "builds_succeeded_total": "Total builds that exited 0",
    "builds_failed_total": "Total builds that ended Failed",
    "builds_timed_out_total": "Total builds killed after exceeding the time budget",
    "backend_unavailable_total": "Total builds rejected because the backend was unreachable",
    "teardown_errors_total": "Total stop/remove failures during teardown",
    "containers_reaped_total": "Total orphaned containers removed by the reaper",
    "log_drain_timeouts_total": "Total builds finalized before their log stream ended",
}


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "requests_total": 0,
            "requests_2xx": 0,
            "requests_4xx": 0,
            "requests_5xx": 0,
        }
        for name in COUNTER_HELP:
            self._counters[name] = 0

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

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        counters = self.get_all()

        lines.append("# HELP appbuilder_requests_total Total HTTP requests")
        lines.append("# TYPE appbuilder_requests_total counter")
        lines.append(f"appbuilder_requests_total {counters['requests_total']}")

        lines.append("# HELP appbuilder_requests_by_status HTTP requests by status class")
        lines.append("# TYPE appbuilder_requests_by_status counter")
        lines.append(f'appbuilder_requests_by_status{{status="2xx"}} {counters["requests_2xx"]}')
        lines.append(f'appbuilder_requests_by_status{{status="4xx"}} {counters["requests_4xx"]}')
        lines.append(f'appbuilder_requests_by_status{{status="5xx"}} {counters["requests_5xx"]}')

        for name, help_text in COUNTER_HELP.items():
            lines.append(f"# HELP appbuilder_{name} {help_text}")
            lines.append(f"# TYPE appbuilder_{name} counter")
            lines.append(f"appbuilder_{name} {counters.get(name, 0)}")

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
