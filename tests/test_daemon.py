"""Tests for the daemon run loop and metrics export."""

import asyncio

from agent_mesh_bus import daemon
from agent_mesh_bus.codec import Owner
from agent_mesh_bus.metrics import BusMetrics

from conftest import make_domain, put_message


def test_metrics_prometheus_format():
    """Verify counters and gauges are exported with HELP and TYPE lines."""
    metrics = BusMetrics()
    metrics.inc("mesh_bus_messages_routed_total", 2)
    metrics.inc("unknown_total")
    metrics.set_gauge("mesh_bus_active_messages", 3)

    text = metrics.to_prometheus()
    assert "# TYPE mesh_bus_messages_routed_total counter" in text
    assert "mesh_bus_messages_routed_total 2" in text
    assert "# TYPE mesh_bus_active_messages gauge" in text
    assert "mesh_bus_active_messages 3" in text
    assert "unknown_total" not in text
    assert metrics.get("unknown_total") == 0
    assert "routed=2/0" in metrics.log_summary()


def test_run_processes_backlog_and_writes_metrics(bus, sessions):
    """Verify startup drains queued work and shutdown writes the metrics file."""
    make_domain(bus, "d", participants=("a",))
    sessions.sessions.add("d-a")
    put_message(bus.paths.tier_dir(Owner("d", "a"), "inbox"), "core", "d/a")

    async def scenario():
        stop = asyncio.Event()
        runner = asyncio.create_task(daemon.run(bus.config, ctx=bus, stop=stop))
        for _ in range(100):
            if bus.metrics.get("mesh_bus_injections_total"):
                break
            await asyncio.sleep(0.02)
        stop.set()
        await runner

    asyncio.run(scenario())

    assert [name for name, _, _ in sessions.injected] == ["d-a"]
    assert bus.paths.metrics_file.exists()
    assert "mesh_bus_injections_total 1" in bus.paths.metrics_file.read_text()
    assert bus.consumers.status() == {}
    assert bus.serializer._tasks == {}
