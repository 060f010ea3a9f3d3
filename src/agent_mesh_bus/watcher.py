# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

"""Filesystem watch layer: turns new message files into dispatcher events.

Layout under the bus root:

    msgs/<file>.md                                  -> file:msgs:new
    mesh/<D>/msgs/<tier>/<file>.md                  -> file:<tier>:new
    mesh/<D>/agents/<A>/msgs/<tier>/<file>.md       -> file:agent-<tier>:new

Files the bus moved itself are registered in an IgnoreSet beforehand so the
resulting filesystem event does not feed back into the router.
"""

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileCreatedEvent, FileMovedEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .codec import is_terminal_filename, parse_filename
from .config import PARTICIPANT_TIERS, DomainConfigs
from .events import EventDispatcher
from .evidence import EvidenceRecorder, EvidenceType

log = logging.getLogger(__name__)


class IgnoreSet:
    """Paths to skip exactly once, each live for ``ttl`` seconds."""

    def __init__(self, ttl: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [p for p, deadline in self._entries.items() if deadline <= now]
        for path in expired:
            del self._entries[path]

    def add(self, path: Path | str) -> None:
        with self._lock:
            now = self.clock()
            self._purge(now)
            self._entries[str(path)] = now + self.ttl

    def consume(self, path: Path | str) -> bool:
        """Remove ``path`` and return True if it was registered and still live."""
        with self._lock:
            self._purge(self.clock())
            return self._entries.pop(str(path), None) is not None

    def __len__(self) -> int:
        with self._lock:
            self._purge(self.clock())
            return len(self._entries)


class _BusEventHandler(FileSystemEventHandler):
    def __init__(self, layer: "WatchLayer"):
        self.layer = layer

    def on_created(self, event: FileCreatedEvent) -> None:
        if event.is_directory:
            return
        self.layer.on_file(Path(event.src_path))

    def on_moved(self, event: FileMovedEvent) -> None:
        # Agents commonly write to a temp name and rename into place
        if event.is_directory:
            return
        self.layer.on_file(Path(event.dest_path))


class WatchLayer:
    def __init__(
        self,
        root: Path,
        dispatcher: EventDispatcher,
        ignore: IgnoreSet,
        evidence: EvidenceRecorder | None = None,
        write_settle: float = 0.1,
        domains: DomainConfigs | None = None,
    ):
        self.root = Path(root)
        self.dispatcher = dispatcher
        self.ignore = ignore
        self.evidence = evidence
        self.write_settle = write_settle
        self.domains = domains
        self.loop: asyncio.AbstractEventLoop | None = None
        self._observer: Observer | None = None

    def classify(self, path: Path) -> tuple[str, dict] | None:
        """Map a path to ``(topic, payload)``, or None if it is not a bus message."""
        path = Path(path)
        if path.suffix != ".md" or path.name.startswith("."):
            return None
        if is_terminal_filename(path.name):
            return None
        try:
            parts = path.relative_to(self.root).parts
        except ValueError:
            return None

        payload = {
            "path": str(path),
            "file": path.name,
            "domain": None,
            "participant": None,
            "tier": None,
            "sender": None,
            "to": None,
            "type": None,
            "msg_id": None,
        }

        try:
            info = parse_filename(path.name)
        except ValueError:
            info = None

        if len(parts) == 2 and parts[0] == "msgs":
            if info is None:
                log.warning(f"Ignoring unparsable log filename: {path.name}")
                if self.evidence is not None:
                    self.evidence.record(
                        EvidenceType.INVALID_MESSAGE,
                        f"Unparsable filename in shared log: {path.name}",
                        file=str(path),
                        component="watcher",
                    )
                return None
            topic = "file:msgs:new"
        elif len(parts) == 5 and parts[0] == "mesh" and parts[2] == "msgs":
            payload.update(domain=parts[1], tier=parts[3])
            topic = f"file:{parts[3]}:new"
        elif (
            len(parts) == 7
            and parts[0] == "mesh"
            and parts[2] == "agents"
            and parts[4] == "msgs"
            and parts[5] in PARTICIPANT_TIERS
        ):
            payload.update(domain=parts[1], participant=parts[3], tier=parts[5])
            topic = f"file:agent-{parts[5]}:new"
        else:
            return None

        if info is not None:
            payload.update(
                sender=info.sender, to=info.recipient, type=info.type, msg_id=info.msg_id
            )
            if payload["domain"]:
                payload["to_address"] = f"{payload['domain']}/{info.recipient}"
            else:
                payload["to_address"] = self.resolve_recipient(info.recipient)
        return topic, payload

    def resolve_recipient(self, recipient: str) -> str | None:
        """``domain/participant`` for a bare domain name in the shared log, else None."""
        if self.domains is None or not (self.root / "mesh" / recipient).is_dir():
            return None
        return f"{recipient}/{self.domains.default_participant(recipient)}"

    def on_file(self, path: Path) -> None:
        """Entry point for filesystem events (called on the observer thread)."""
        if self.ignore.consume(path):
            log.debug(f"Ignoring self-generated event: {path.name}")
            return
        classified = self.classify(path)
        if classified is None:
            return
        topic, payload = classified
        log.debug(f"{topic}: {path.name}")

        if self.loop is not None and self.loop.is_running():
            self.loop.call_soon_threadsafe(self._schedule, topic, payload)
        else:
            self.dispatcher.publish(topic, payload)

    def _schedule(self, topic: str, payload: dict) -> None:
        self.loop.create_task(self._dispatch(topic, payload))

    async def _dispatch(self, topic: str, payload: dict) -> None:
        # Let the writer finish before handlers read the file
        if self.write_settle:
            await asyncio.sleep(self.write_settle)
        await self.dispatcher.publish_async(topic, payload)

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self.loop = loop
        self.root.mkdir(parents=True, exist_ok=True)
        self._observer = Observer()
        self._observer.schedule(_BusEventHandler(self), str(self.root), recursive=True)
        self._observer.start()
        log.info(f"Watching {self.root} (recursive)")

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None
        log.info("Watch layer stopped")
