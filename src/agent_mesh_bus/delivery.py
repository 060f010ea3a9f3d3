# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

"""Per-session FIFO injection with idle waits between items.

Enqueueing never blocks. When an event loop is running, the first enqueue for
a session starts a drain task; the drain injects one item, waits for the
session's output to settle, then moves on. A session that disappears halts
its queue until the next enqueue.
"""

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

from .metrics import BusMetrics
from .sessions import SessionBackend

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryConfig:
    settle_delay: float = 0.5
    idle_window: float = 2.0
    idle_timeout: float = 30.0
    poll_interval: float = 0.5


@dataclass
class DeliveryItem:
    seq: int
    session: str
    kind: str  # "file", "text" or "command"
    payload: str
    is_prompt: bool = False
    enqueued_at: float = field(default_factory=time.time)


class DeliverySerializer:
    def __init__(
        self,
        backend: SessionBackend,
        config: DeliveryConfig | None = None,
        metrics: BusMetrics | None = None,
    ):
        self.backend = backend
        self.config = config or DeliveryConfig()
        self.metrics = metrics
        self._queues: dict[str, deque[DeliveryItem]] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._draining: set[str] = set()
        self._seq = itertools.count(1)

    # -- enqueue ---------------------------------------------------------------

    def _enqueue(
        self, session: str, kind: str, payload: str, is_prompt: bool = False
    ) -> DeliveryItem:
        item = DeliveryItem(next(self._seq), session, kind, payload, is_prompt)
        self._queues.setdefault(session, deque()).append(item)
        log.debug(f"Queued {kind} #{item.seq} for {session}")
        self._kick(session)
        return item

    def enqueue_file(self, session: str, path: Path | str, is_prompt: bool = False) -> DeliveryItem:
        return self._enqueue(session, "file", str(path), is_prompt)

    def enqueue_text(self, session: str, text: str) -> DeliveryItem:
        return self._enqueue(session, "text", text)

    def enqueue_command(self, session: str, command: str) -> DeliveryItem:
        return self._enqueue(session, "command", command)

    def _kick(self, session: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = self._tasks.get(session)
        if task is not None and not task.done():
            return
        self._tasks[session] = loop.create_task(self.drain(session))

    # -- drain -----------------------------------------------------------------

    def session_exists(self, session: str) -> bool:
        return self.backend.exists(session)

    def _inject(self, item: DeliveryItem) -> bool:
        if item.kind == "file":
            return self.backend.inject_file(item.session, Path(item.payload), item.is_prompt)
        if item.kind == "command":
            return self.backend.send_command(item.session, item.payload)
        return self.backend.inject_text(item.session, item.payload)

    async def drain(self, session: str) -> None:
        if session in self._draining:
            return
        self._draining.add(session)
        queue = self._queues.setdefault(session, deque())
        try:
            while queue:
                if not await asyncio.to_thread(self.backend.exists, session):
                    log.warning(f"Session {session} not found, holding {len(queue)} item(s)")
                    return
                item = queue.popleft()
                try:
                    ok = await asyncio.to_thread(self._inject, item)
                except Exception:
                    log.exception(f"Injection of {item.kind} #{item.seq} into {session} raised")
                    ok = False
                if self.metrics:
                    self.metrics.inc(
                        "mesh_bus_injections_total" if ok else "mesh_bus_injections_failed_total"
                    )
                if not ok:
                    log.error(f"Failed to deliver {item.kind} #{item.seq} to {session}")
                    continue
                log.info(f"Delivered {item.kind} #{item.seq} to {session}")

                idle = await asyncio.to_thread(
                    self.backend.wait_for_idle,
                    session,
                    self.config.idle_window,
                    self.config.idle_timeout,
                    self.config.poll_interval,
                )
                if not idle:
                    log.debug(f"{session} still busy after {self.config.idle_timeout}s, continuing")
        finally:
            self._draining.discard(session)

    async def flush(self) -> None:
        """Drain every queue whose session exists. Used by tests and shutdown."""
        running = [t for t in self._tasks.values() if not t.done()]
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        for session in list(self._queues):
            await self.drain(session)

    async def close(self) -> None:
        """Cancel running drain tasks. Items not yet injected stay queued."""
        running = [t for t in self._tasks.values() if not t.done()]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        self._tasks.clear()
        if running:
            log.info(f"Cancelled {len(running)} drain task(s), {self.total_pending()} item(s) left")

    # -- introspection ---------------------------------------------------------

    def pending(self, session: str) -> list[DeliveryItem]:
        return list(self._queues.get(session, ()))

    def status(self) -> dict:
        return {
            session: {"pending": len(queue), "draining": session in self._draining}
            for session, queue in self._queues.items()
        }

    def total_pending(self) -> int:
        return sum(len(q) for q in self._queues.values())
