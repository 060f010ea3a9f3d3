# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

"""Offset-tracked consumers of the shared message log.

One consumer per participant address. Its cursor is the ``(timestamp,
filename)`` of the last message it delivered, persisted under
``state/offsets/``. Messages arrive through watch events and a fallback poll;
both go through :meth:`Consumer.process_message`, which checks the cursor
first so a message is delivered at most once.

Header directives (first match wins):

    clear-context: true   reset the session, then deliver
    self-modify: true     rewrite through a template, reset, then deliver
    lens: <name>          prepend a perspective block, then deliver
"""

import asyncio
import json
import logging
import string
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from .codec import (
    Message,
    MessageParseError,
    is_terminal_filename,
    parse_address,
    parse_filename,
    read_message,
    timestamp_from_filename,
    write_message,
)
from .config import BusPaths, DomainConfigs
from .delivery import DeliverySerializer
from .events import EventDispatcher
from .evidence import EvidenceRecorder, EvidenceType
from .metrics import BusMetrics
from .sessions import session_name_for
from .state import write_json

log = logging.getLogger(__name__)

Cursor = tuple[datetime, str]

DIRECTIVE_HEADERS = ("clear-context", "self-modify", "lens")


def _truthy(value: str | None) -> bool:
    return str(value).strip().lower() in ("true", "yes", "1")


class Consumer:
    def __init__(
        self,
        address: str,
        paths: BusPaths,
        dispatcher: EventDispatcher,
        serializer: DeliverySerializer,
        domains: DomainConfigs,
        evidence: EvidenceRecorder | None = None,
        metrics: BusMetrics | None = None,
        poll_interval: float = 5.0,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.address = address
        self.domain, _, self.participant = address.partition("/")
        self.paths = paths
        self.dispatcher = dispatcher
        self.serializer = serializer
        self.domains = domains
        self.evidence = evidence
        self.metrics = metrics
        self.poll_interval = poll_interval
        self.now = now

        self.cursor: Cursor | None = None
        # Seen this run but not persisted (session missing, unreadable, not ours)
        self.attempted: Cursor | None = None
        self.running = False
        self._poll_task: asyncio.Task | None = None

    # -- offsets ---------------------------------------------------------------

    @property
    def offset_file(self) -> Path:
        return self.paths.offset_file(self.address)

    def load_offset(self) -> Cursor | None:
        path = self.offset_file
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
            self.cursor = (
                datetime.fromisoformat(data["last_processed_timestamp"]),
                data.get("last_processed_file") or "",
            )
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as e:
            log.warning(f"Ignoring unreadable offset {path}: {e}")
            self.cursor = None
        return self.cursor

    def save_offset(self) -> None:
        if self.cursor is None:
            return
        timestamp, filename = self.cursor
        write_json(
            self.offset_file,
            {
                "participant": self.address,
                "last_processed_timestamp": timestamp.isoformat(),
                "last_processed_file": filename,
                "updated_at": datetime.now().isoformat(),
            },
        )

    # -- predicates ------------------------------------------------------------

    def key(self, path: Path) -> Cursor:
        return timestamp_from_filename(path.name, now=self.now()), path.name

    def is_processed(self, key: Cursor) -> bool:
        if self.cursor is not None and key <= self.cursor:
            return True
        return self.attempted is not None and key <= self.attempted

    def accepts_recipient(self, recipient: str | None) -> bool:
        """Filename-level check: our participant name, or our domain when we are its default."""
        if not recipient:
            return False
        if recipient == self.participant:
            return True
        return (
            recipient == self.domain
            and self.domains.default_participant(self.domain) == self.participant
        )

    def is_for_me(self, message: Message) -> bool:
        try:
            address = parse_address(message.to)
        except ValueError:
            return False
        if address.domain is None:
            return self.accepts_recipient(address.participant)
        return address.domain == self.domain and address.participant == self.participant

    def _mark_attempted(self, key: Cursor) -> None:
        if self.attempted is None or key > self.attempted:
            self.attempted = key

    # -- discovery -------------------------------------------------------------

    def pending(self) -> list[Path]:
        """Unprocessed log files whose filename names this participant, oldest first."""
        log_dir = self.paths.log_dir
        if not log_dir.is_dir():
            return []
        found = []
        for path in log_dir.iterdir():
            if path.suffix != ".md" or path.name.startswith(".") or is_terminal_filename(path.name):
                continue
            try:
                if not self.accepts_recipient(parse_filename(path.name).recipient):
                    continue
                key = self.key(path)
            except ValueError:
                continue
            if not self.is_processed(key):
                found.append((key, path))
        found.sort()
        return [path for _, path in found]

    def scan(self) -> int:
        delivered = 0
        for path in self.pending():
            if self.process_message(path):
                delivered += 1
        return delivered

    def on_message_event(self, payload: dict) -> None:
        if not self.accepts_recipient(payload.get("to")):
            return
        self.process_message(Path(payload["path"]))

    async def _poll(self) -> None:
        while self.running:
            await asyncio.sleep(self.poll_interval)
            try:
                self.scan()
            except Exception:
                log.exception(f"Poll for {self.address} failed")

    # -- processing ------------------------------------------------------------

    def process_message(self, path: Path) -> bool:
        """Deliver one log message if it is for us and not yet processed."""
        try:
            key = self.key(path)
        except ValueError as e:
            log.warning(f"Skipping {path.name}: {e}")
            return False
        if self.is_processed(key):
            return False

        try:
            message = read_message(path)
        except (MessageParseError, UnicodeDecodeError, OSError) as e:
            self._mark_attempted(key)
            if self.evidence:
                self.evidence.record(
                    EvidenceType.PARSE_ERROR,
                    f"Cannot parse {path.name}: {e}",
                    domain=self.domain,
                    participant=self.participant,
                    file=str(path),
                    component="consumer",
                )
            return False

        if not self.is_for_me(message):
            self._mark_attempted(key)
            return False

        session = session_name_for(self.address, self.serializer.backend.list())
        if not self.serializer.session_exists(session):
            log.warning(
                f"Session {session} not found for {self.address}, {path.name} stays pending"
            )
            self._mark_attempted(key)
            return False

        self._deliver(session, message, path)

        # The cursor only moves forward
        if self.cursor is None or key > self.cursor:
            self.cursor = key
            self.save_offset()
        if self.metrics:
            self.metrics.inc("mesh_bus_consumer_deliveries_total")
        log.info(f"Delivered {path.name} to {self.address}")
        return True

    def _deliver(self, session: str, message: Message, path: Path) -> None:
        if _truthy(message.get("clear-context")):
            log.info(f"clear-context directive for {self.address}")
            self.serializer.enqueue_command(session, "clear")
            self.serializer.enqueue_file(session, path, is_prompt=message.type == "prompt")
        elif _truthy(message.get("self-modify")):
            rewritten = self._rewrite(message, path)
            log.info(f"self-modify directive for {self.address}: {rewritten.name}")
            self.serializer.enqueue_command(session, "clear")
            self.serializer.enqueue_file(session, rewritten, is_prompt=True)
        elif message.get("lens"):
            target = self._apply_lens(message, path, message.get("lens"))
            self.serializer.enqueue_file(session, target, is_prompt=message.type == "prompt")
        else:
            self.serializer.enqueue_file(session, path, is_prompt=message.type == "prompt")

    def _write_rewritten(self, message: Message, body: str, path: Path) -> Path:
        rewritten = Message(
            sender=message.sender,
            to=message.to,
            type=message.type,
            status=message.status,
            msg_id=message.msg_id,
            timestamp=message.timestamp,
            extra={k: v for k, v in message.extra.items() if k not in DIRECTIVE_HEADERS},
            body=body,
        )
        return write_message(self.paths.rewritten_dir, rewritten, filename=path.name)

    def _rewrite(self, message: Message, path: Path) -> Path:
        name = message.get("template") or self.participant
        template = self.domains.template(name)
        if template is None:
            log.warning(f"Template {name} not found, delivering {path.name} body as-is")
            return self._write_rewritten(message, message.body, path)
        body = string.Template(template).safe_substitute(
            body=message.body,
            sender=message.sender,
            to=message.to,
            type=message.type,
            msg_id=message.msg_id or "",
            domain=self.domain,
            participant=self.participant,
        )
        return self._write_rewritten(message, body, path)

    def _apply_lens(self, message: Message, path: Path, lens: str) -> Path:
        perspective = self.domains.lens(lens)
        if perspective is None:
            log.warning(f"Unknown lens {lens}, delivering {path.name} unchanged")
            return path
        body = f"## Perspective: {lens}\n\n{perspective.strip()}\n\n---\n\n{message.body}"
        return self._write_rewritten(message, body, path)

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> int:
        """Load the offset, catch up on the log, then follow new arrivals."""
        self.running = True
        self.load_offset()
        delivered = self.scan()
        self.dispatcher.subscribe("file:msgs:new", self.on_message_event)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._poll_task = loop.create_task(self._poll())
        log.info(f"Consumer {self.address} started ({delivered} caught up)")
        return delivered

    def stop(self) -> None:
        self.running = False
        self.dispatcher.unsubscribe("file:msgs:new", self.on_message_event)
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        log.info(f"Consumer {self.address} stopped")


class ConsumerManager:
    """Owns at most one consumer per participant address."""

    def __init__(
        self,
        paths: BusPaths,
        dispatcher: EventDispatcher,
        serializer: DeliverySerializer,
        domains: DomainConfigs,
        evidence: EvidenceRecorder | None = None,
        metrics: BusMetrics | None = None,
        poll_interval: float = 5.0,
        enabled: bool = True,
    ):
        self.paths = paths
        self.dispatcher = dispatcher
        self.serializer = serializer
        self.domains = domains
        self.evidence = evidence
        self.metrics = metrics
        self.poll_interval = poll_interval
        self.enabled = enabled
        self._consumers: dict[str, Consumer] = {}

    def _update_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("mesh_bus_active_consumers", len(self._consumers))

    def start_consumer(self, address: str) -> Consumer | None:
        if not self.enabled:
            log.debug(f"Consumers disabled, not starting {address}")
            return None
        if address in self._consumers:
            return self._consumers[address]
        consumer = Consumer(
            address,
            self.paths,
            self.dispatcher,
            self.serializer,
            self.domains,
            evidence=self.evidence,
            metrics=self.metrics,
            poll_interval=self.poll_interval,
        )
        self._consumers[address] = consumer
        consumer.start()
        self._update_gauge()
        return consumer

    def stop_consumer(self, address: str) -> bool:
        consumer = self._consumers.pop(address, None)
        if consumer is None:
            return False
        consumer.stop()
        self._update_gauge()
        return True

    def stop_all(self) -> None:
        for address in list(self._consumers):
            self.stop_consumer(address)

    def is_running(self, address: str) -> bool:
        return address in self._consumers

    def status(self) -> dict:
        return {
            address: {
                "running": consumer.running,
                "cursor": consumer.cursor[1] if consumer.cursor else None,
            }
            for address, consumer in self._consumers.items()
        }
