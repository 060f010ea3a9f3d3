#!/usr/bin/env python3
# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (C) 2025 xnoto
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""Mesh Bus Daemon - route message files between agent sessions.

Watches the bus root (default .ai/tx) and moves messages through per-domain
and per-participant queue tiers, injecting each active message into the
participant's session (tmux pane or OpenCode session).

Features:
- Outbox routing with cross-domain entry-point resolution
- One active message per participant, FIFO within a tier
- Workflow handoffs between participants of a domain
- Offset-tracked consumers of the shared message log
- Evidence log of routing anomalies (logs/evidence.jsonl)
- Prometheus metrics file (metrics.prom)

Shutdown (SIGINT/SIGTERM) stops the watcher, cancels timers and consumers,
and leaves every queue on disk as it is.
"""

import asyncio
import logging
import signal

from .config import BusConfig
from .context import BusContext

log = logging.getLogger(__name__)


async def metrics_worker(ctx: BusContext) -> None:
    """Periodically write the metrics file and log a summary."""
    while True:
        await asyncio.sleep(ctx.config.metrics_interval)
        try:
            ctx.update_gauges()
            ctx.metrics.write(ctx.paths.metrics_file)
            log.info(f"Metrics: {ctx.metrics.log_summary()}")
        except OSError as e:
            log.error(f"Metrics worker error: {e}")


async def stuck_worker(ctx: BusContext) -> None:
    """Flag messages that have sat in an active tier too long."""
    interval = max(ctx.config.stuck_after_seconds / 4, 1.0)
    while True:
        await asyncio.sleep(interval)
        try:
            ctx.router.check_stuck(ctx.config.stuck_after_seconds)
        except OSError as e:
            log.error(f"Stuck check error: {e}")


async def run(
    config: BusConfig, ctx: BusContext | None = None, stop: asyncio.Event | None = None
) -> None:
    ctx = ctx or BusContext(config)
    # Fatal: without the layout and evidence log there is nothing to run
    ctx.init()

    loop = asyncio.get_running_loop()
    stop = stop or asyncio.Event()

    def shutdown_handler(signum: int) -> None:
        log.info(f"Received signal {signum}, shutting down...")
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown_handler, sig)
        except (NotImplementedError, RuntimeError):
            log.debug(f"Cannot install handler for signal {sig}")

    log.info(f"Bus root: {ctx.paths.root}")
    log.info(f"Domain configs: {ctx.paths.meshes}")
    log.info(f"Session backend: {config.session_backend}")

    ctx.watcher.start(loop)
    ctx.router.process_backlog()
    for address in ctx.participant_addresses():
        ctx.consumers.start_consumer(address)

    tasks = [
        loop.create_task(metrics_worker(ctx), name="metrics-worker"),
        loop.create_task(stuck_worker(ctx), name="stuck-worker"),
    ]
    log.info(f"Bus running ({len(ctx.consumers.status())} consumers)")

    try:
        await stop.wait()
    finally:
        ctx.watcher.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        ctx.consumers.stop_all()
        await ctx.serializer.close()
        ctx.update_gauges()
        ctx.metrics.write(ctx.paths.metrics_file)
        log.info("Bus stopped")


def main():
    config = BusConfig.load()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        log.info("Shutting down")


if __name__ == "__main__":
    main()
