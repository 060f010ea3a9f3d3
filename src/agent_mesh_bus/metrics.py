# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

import logging
import threading
import time
from pathlib import Path

log = logging.getLogger(__name__)


class BusMetrics:
    """Thread-safe Prometheus-compatible metrics collector."""

    def __init__(self):
        self._lock = threading.Lock()
        self._start_time = time.time()

        # Counters (only increase)
        self._counters = {
            "mesh_bus_messages_routed_total": 0,
            "mesh_bus_messages_failed_total": 0,
            "mesh_bus_messages_completed_total": 0,
            "mesh_bus_injections_total": 0,
            "mesh_bus_injections_failed_total": 0,
            "mesh_bus_evidence_recorded_total": 0,
            "mesh_bus_consumer_deliveries_total": 0,
            "mesh_bus_workflow_handoffs_total": 0,
        }

        # Gauges (can increase or decrease)
        self._gauges = {
            "mesh_bus_delivery_queue_size": 0,
            "mesh_bus_active_consumers": 0,
            "mesh_bus_active_messages": 0,
        }

        self._help = {
            "mesh_bus_messages_routed_total": "Total outbox messages routed to an inbox",
            "mesh_bus_messages_failed_total": "Total messages left unrouted after an error",
            "mesh_bus_messages_completed_total": "Total active messages moved to complete",
            "mesh_bus_injections_total": "Total deliveries injected into sessions",
            "mesh_bus_injections_failed_total": "Total deliveries the session backend rejected",
            "mesh_bus_evidence_recorded_total": "Total evidence records written",
            "mesh_bus_consumer_deliveries_total": "Total shared-log messages delivered",
            "mesh_bus_workflow_handoffs_total": "Total workflow handoff messages written",
            "mesh_bus_delivery_queue_size": "Current items waiting in delivery queues",
            "mesh_bus_active_consumers": "Current number of running consumers",
            "mesh_bus_active_messages": "Current messages in active tiers",
            "mesh_bus_start_time_seconds": "Unix timestamp when the bus started",
        }

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter. Unknown names are ignored."""
        with self._lock:
            if name in self._counters:
                self._counters[name] += value

    def set_gauge(self, name: str, value: float) -> None:
        """Set a gauge value."""
        with self._lock:
            self._gauges[name] = value

    def get(self, name: str) -> float:
        """Current value of a counter or gauge, 0 if unknown."""
        with self._lock:
            if name in self._counters:
                return self._counters[name]
            if name in self._gauges:
                return self._gauges[name]
            return 0

    def to_prometheus(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines = []
        with self._lock:
            lines.append(
                f"# HELP mesh_bus_start_time_seconds {self._help['mesh_bus_start_time_seconds']}"
            )
            lines.append("# TYPE mesh_bus_start_time_seconds gauge")
            lines.append(f"mesh_bus_start_time_seconds {self._start_time}")

            for name, value in self._counters.items():
                if name in self._help:
                    lines.append(f"# HELP {name} {self._help[name]}")
                lines.append(f"# TYPE {name} counter")
                lines.append(f"{name} {value}")

            for name, value in self._gauges.items():
                if name in self._help:
                    lines.append(f"# HELP {name} {self._help[name]}")
                lines.append(f"# TYPE {name} gauge")
                lines.append(f"{name} {value}")

        return "\n".join(lines) + "\n"

    def write(self, path: Path) -> None:
        """Write the Prometheus text export to ``path``."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_prometheus())

    def log_summary(self) -> str:
        """Return a human-readable summary for logging."""
        with self._lock:
            uptime = time.time() - self._start_time
            hours, remainder = divmod(int(uptime), 3600)
            minutes, seconds = divmod(remainder, 60)
            uptime_str = (
                f"{hours}h{minutes}m{seconds}s"
                if hours
                else f"{minutes}m{seconds}s"
                if minutes
                else f"{seconds}s"
            )
            c = self._counters
            return (
                f"uptime={uptime_str} "
                f"routed={c['mesh_bus_messages_routed_total']}"
                f"/{c['mesh_bus_messages_failed_total']} "
                f"inj={c['mesh_bus_injections_total']}/{c['mesh_bus_injections_failed_total']} "
                f"done={c['mesh_bus_messages_completed_total']} "
                f"handoffs={c['mesh_bus_workflow_handoffs_total']} "
                f"consumed={c['mesh_bus_consumer_deliveries_total']} "
                f"evidence={c['mesh_bus_evidence_recorded_total']}"
            )
