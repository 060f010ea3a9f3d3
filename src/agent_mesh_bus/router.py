# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

"""Queue tiers and routing.

Every owner (a domain, or a participant within one) has the tiers

    inbox -> next -> active -> complete -> archive

and participants additionally have an ``outbox``. At most one message sits in
``active`` per owner; ``next`` holds at most one while ``active`` is busy and
everything else waits in ``inbox``.

All operations run synchronously off an explicit work queue. A public call
enqueues its operation and drains the queue; follow-up operations scheduled
along the way are appended to the same queue instead of being called
recursively, so a deep backlog never grows the stack.
"""

import logging
import os
import time
from collections import deque
from collections.abc import Callable
from pathlib import Path

from .codec import (
    Address,
    Message,
    MessageParseError,
    Owner,
    build_message,
    is_terminal_filename,
    is_valid_address,
    message_filename,
    parse_address,
    parse_filename,
    read_message,
    write_message,
)
from .config import TIERS, BusPaths, DomainConfigs
from .delivery import DeliverySerializer
from .events import EventDispatcher
from .evidence import EvidenceRecorder, EvidenceType
from .metrics import BusMetrics
from .sessions import session_name_for
from .state import LockTimeout, StateStore
from .watcher import IgnoreSet

log = logging.getLogger(__name__)

FAST_TRACK_TYPES = ("ask", "ask-response")

ROUTER_TOPICS = (
    "file:inbox:new",
    "file:next:new",
    "file:agent-inbox:new",
    "file:agent-next:new",
    "file:agent-outbox:new",
)
TIER_OPERATIONS = {"inbox": "process_inbox", "next": "process_next", "outbox": "process_outbox"}


class RoutingError(Exception):
    """A destination could not be determined for an outgoing message."""


class Router:
    def __init__(
        self,
        paths: BusPaths,
        state: StateStore,
        domains: DomainConfigs,
        serializer: DeliverySerializer,
        evidence: EvidenceRecorder,
        ignore: IgnoreSet,
        metrics: BusMetrics | None = None,
        dedup_window: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.paths = paths
        self.state = state
        self.domains = domains
        self.serializer = serializer
        self.evidence = evidence
        self.ignore = ignore
        self.metrics = metrics
        self.dedup_window = dedup_window
        self.clock = clock

        self._work: deque[tuple[str, Owner, dict]] = deque()
        self._draining = False
        self._recent: dict[tuple[str, str], float] = {}
        # (evidence type, path) pairs already reported during this process lifetime
        self._reported: set[tuple[str, str]] = set()

    # =========================================================================
    # Work queue
    # =========================================================================

    def _schedule(self, operation: str, owner: Owner, **kwargs) -> None:
        self._work.append((operation, owner, kwargs))

    def _run(self) -> None:
        if self._draining:
            return
        self._draining = True
        try:
            while self._work:
                operation, owner, kwargs = self._work.popleft()
                try:
                    getattr(self, f"_{operation}")(owner, **kwargs)
                except LockTimeout as e:
                    log.error(f"{operation} for {owner} gave up on state lock: {e}")
                    self._record(
                        EvidenceType.PROCESSING_ERROR,
                        f"{operation} for {owner}: {e}",
                        owner,
                    )
                except Exception as e:
                    log.exception(f"{operation} for {owner} failed")
                    self._record(
                        EvidenceType.PROCESSING_ERROR,
                        f"{operation} for {owner} failed: {e}",
                        owner,
                    )
        finally:
            self._draining = False

    def attach(self, dispatcher: EventDispatcher) -> None:
        for topic in ROUTER_TOPICS:
            dispatcher.subscribe(topic, self.handle_file_event)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _record(self, evidence_type: str, description: str, owner: Owner | None = None, **context):
        if owner is not None:
            context.setdefault("domain", owner.domain)
            context.setdefault("participant", owner.participant)
        context.setdefault("component", "router")
        return self.evidence.record(evidence_type, description, **context)

    def _record_once(
        self, evidence_type: str, path: Path, description: str, owner: Owner, **context
    ):
        key = (evidence_type, str(path))
        if key in self._reported:
            return
        self._reported.add(key)
        self._record(evidence_type, description, owner, file=str(path), **context)

    def files(self, owner: Owner | str, tier: str) -> list[Path]:
        """Message files in a tier, in lexical (= chronological) order."""
        directory = self.paths.tier_dir(Owner.parse(owner), tier)
        if not directory.is_dir():
            return []
        return sorted(
            p
            for p in directory.iterdir()
            if p.is_file()
            and p.suffix == ".md"
            and not p.name.startswith(".")
            and not is_terminal_filename(p.name)
        )

    def _move(self, src: Path, dest_dir: Path) -> Path | None:
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / src.name
        # Register first: the watcher may see the rename before os.replace returns
        self.ignore.add(dest)
        try:
            os.replace(src, dest)
        except FileNotFoundError:
            self.ignore.consume(dest)
            log.debug(f"{src.name} vanished before it could be moved")
            return None
        log.debug(f"Moved {src.name}: {src.parent.name} -> {dest_dir.name}")
        return dest

    def _read(self, path: Path, owner: Owner) -> Message | None:
        try:
            return read_message(path)
        except (MessageParseError, UnicodeDecodeError, OSError) as e:
            self._record_once(
                EvidenceType.PARSE_ERROR, path, f"Cannot parse {path.name}: {e}", owner
            )
            return None

    def _message_type(self, path: Path, owner: Owner) -> str | None:
        try:
            return parse_filename(path.name).type
        except ValueError:
            message = self._read(path, owner)
            return message.type if message else None

    def owners(self, domain: str) -> list[Owner]:
        """The domain owner followed by every participant directory under it."""
        result = [Owner(domain)]
        agents_dir = self.paths.domain_dir(domain) / "agents"
        if agents_dir.is_dir():
            result.extend(Owner(domain, p.name) for p in sorted(agents_dir.iterdir()) if p.is_dir())
        return result

    def domain_names(self) -> list[str]:
        if not self.paths.mesh_dir.is_dir():
            return []
        return sorted(p.name for p in self.paths.mesh_dir.iterdir() if p.is_dir())

    # =========================================================================
    # Public operations
    # =========================================================================

    def process_inbox(self, owner: Owner | str) -> None:
        self._schedule("process_inbox", Owner.parse(owner))
        self._run()

    def process_next(self, owner: Owner | str) -> None:
        self._schedule("process_next", Owner.parse(owner))
        self._run()

    def process_outbox(self, owner: Owner | str) -> None:
        self._schedule("process_outbox", Owner.parse(owner))
        self._run()

    def complete(self, owner: Owner | str, file: str | Path, output: str | None = None) -> bool:
        """Move ``file`` from active to complete. False if it is not active."""
        owner = Owner.parse(owner)
        src = self.paths.tier_dir(owner, "active") / Path(file).name
        if not src.exists():
            log.debug(f"{Path(file).name} not active for {owner}, nothing to complete")
            return False
        dest = self._move(src, self.paths.tier_dir(owner, "complete"))
        if dest is None:
            return False

        self.state.increment(owner, "tasks_completed")
        self.state.update(owner, {"status": "idle", "active_file": None})
        if self.metrics:
            self.metrics.inc("mesh_bus_messages_completed_total")
        log.info(f"Completed {dest.name} for {owner}")

        if not owner.is_participant or self._holds_workflow_step(owner):
            if output is None:
                message = self._read(dest, owner)
                output = message.body if message else ""
            self._advance_workflow(owner.domain, output)

        self._schedule("process_next", owner)
        self._run()
        return True

    def start_workflow(self, domain: str, participants: list[str]) -> dict:
        if not participants:
            raise ValueError("A workflow needs at least one participant")
        log.info(f"Starting workflow for {domain}: {' -> '.join(participants)}")
        return self.state.update(
            domain,
            {
                "workflow": list(participants),
                "workflow_position": 0,
                "workflow_complete": False,
                "current_agent": participants[0],
                "previous_agent": None,
            },
        )

    def archive(self, owner: Owner | str, file: str | Path) -> bool:
        owner = Owner.parse(owner)
        src = self.paths.tier_dir(owner, "complete") / Path(file).name
        if not src.exists():
            return False
        return self._move(src, self.paths.tier_dir(owner, "archive")) is not None

    def queue_status(self, owner: Owner | str) -> dict[str, int]:
        owner = Owner.parse(owner)
        tiers = TIERS + (("outbox",) if owner.is_participant else ())
        return {tier: len(self.files(owner, tier)) for tier in tiers}

    def process_backlog(self, domain: str | None = None) -> None:
        """Drain every owner's outbox and inbox, e.g. for files written while stopped."""
        domains = [domain] if domain else self.domain_names()
        for name in domains:
            for owner in self.owners(name):
                if owner.is_participant:
                    self._schedule("process_outbox", owner)
                self._schedule("process_inbox", owner)
        self._run()

    def check_stuck(self, max_age: float) -> list[Path]:
        """Record evidence for active messages older than ``max_age`` seconds."""
        stuck = []
        now = time.time()
        for domain in self.domain_names():
            for owner in self.owners(domain):
                for path in self.files(owner, "active"):
                    try:
                        age = now - path.stat().st_mtime
                    except FileNotFoundError:
                        continue
                    if age < max_age:
                        continue
                    stuck.append(path)
                    self._record_once(
                        EvidenceType.QUEUE_STUCK,
                        path,
                        f"{path.name} active for {int(age)}s in {owner}",
                        owner,
                        queue="active",
                    )
        return stuck

    def total_active(self) -> int:
        return sum(
            len(self.files(owner, "active"))
            for domain in self.domain_names()
            for owner in self.owners(domain)
        )

    def handle_file_event(self, payload: dict) -> None:
        """Dispatcher handler for tier arrivals."""
        domain = payload.get("domain")
        tier = payload.get("tier")
        if not domain or not tier:
            return
        operation = TIER_OPERATIONS.get(tier)
        if operation is None:
            return
        owner = Owner(domain, payload.get("participant"))
        if operation == "process_outbox" and not owner.is_participant:
            return

        now = self.clock()
        key = (owner.key, payload.get("file", ""))
        last = self._recent.get(key)
        if last is not None and now - last < self.dedup_window:
            log.debug(f"Suppressed duplicate event for {key[1]} in {owner}")
            return
        self._recent[key] = now
        self._recent = {k: t for k, t in self._recent.items() if now - t < self.dedup_window}

        self._schedule(operation, owner)
        self._run()

    # =========================================================================
    # Operations (run from the work queue)
    # =========================================================================

    def _process_inbox(self, owner: Owner) -> None:
        inbox = self.files(owner, "inbox")
        if not inbox:
            return

        if owner.is_participant:
            for path in list(inbox):
                if self._message_type(path, owner) not in FAST_TRACK_TYPES:
                    continue
                inbox.remove(path)
                # Undeliverable asks wait in the inbox for their session
                session = self._session_for(owner, path)
                if session is None:
                    continue
                dest = self._move(path, self.paths.tier_dir(owner, "complete"))
                if dest is not None:
                    log.info(f"Fast-tracking {dest.name} to {owner}")
                    self.serializer.enqueue_file(session, dest)
            if not inbox:
                return

        if self.files(owner, "next"):
            return
        moved = self._move(inbox[0], self.paths.tier_dir(owner, "next"))
        if moved is None:
            return
        log.info(f"Queued {moved.name} as next for {owner}")
        self._schedule("process_next", owner)
        if len(inbox) > 1:
            self._schedule("process_inbox", owner)

    def _process_next(self, owner: Owner) -> None:
        if self.files(owner, "active"):
            return
        pending = self.files(owner, "next")
        if not pending:
            return
        dest = self._move(pending[0], self.paths.tier_dir(owner, "active"))
        if dest is None:
            return

        message = self._read(dest, owner)
        current = self.state.read(owner)
        participant = owner.participant or self._domain_target(owner.domain, message, current)
        patch = {"status": "processing", "current_agent": participant, "active_file": dest.name}

        seed = not current.get("workflow") and not current.get("workflow_complete")
        if not owner.is_participant and seed:
            workflow = self.domains.workflow(owner.domain)
            if workflow:
                log.info(f"Seeding workflow for {owner.domain}: {' -> '.join(workflow)}")
                patch.update(
                    workflow=workflow,
                    workflow_position=workflow.index(participant) if participant in workflow else 0,
                    workflow_complete=False,
                )

        self.state.update(owner, patch)
        log.info(f"Activated {dest.name} for {owner}")
        self._notify(Owner(owner.domain, participant), dest, message)
        self._schedule("process_inbox", owner)

    def _domain_target(self, domain: str, message: Message | None, current: dict) -> str:
        if message and is_valid_address(message.to):
            address = parse_address(message.to, default_domain=domain)
            if address.domain == domain and address.participant != domain:
                return address.participant
        return current.get("current_agent") or self.domains.entry_point(domain) or domain

    def _process_outbox(self, owner: Owner) -> None:
        for path in self.files(owner, "outbox"):
            self._route(owner, path)

    def _route(self, owner: Owner, path: Path) -> None:
        message = self._read(path, owner)
        if message is None:
            return

        try:
            dest = self.resolve_destination(message.to, owner.domain)
        except RoutingError as e:
            self._record_once(EvidenceType.ROUTING_FAILURE, path, str(e), owner)
            if self.metrics:
                self.metrics.inc("mesh_bus_messages_failed_total")
            return

        valid, reason = self.domains.validate_route(
            owner.domain, owner.participant, message.status, message.to
        )
        if not valid:
            log.warning(f"Routing table mismatch for {path.name}: {reason}")

        if not self.paths.domain_dir(dest.domain).is_dir():
            self._record_once(
                EvidenceType.MESH_NOT_FOUND,
                path,
                f"Domain '{dest.domain}' not found for {path.name}",
                owner,
                to=message.to,
            )
            if self.metrics:
                self.metrics.inc("mesh_bus_messages_failed_total")
            return

        target = Owner(dest.domain, dest.participant)
        moved = self._move(path, self.paths.tier_dir(target, "inbox"))
        if moved is None:
            return
        if self.metrics:
            self.metrics.inc("mesh_bus_messages_routed_total")
        log.info(f"Routed {moved.name}: {owner} -> {target}")
        self._schedule("process_inbox", target)

        if message.type == "task-complete":
            self._complete_sender(owner, message.body)

    def _complete_sender(self, owner: Owner, output: str) -> None:
        for active in self.files(owner, "active"):
            self.complete(owner, active.name, output=output)
        domain_owner = Owner(owner.domain)
        if self.state.read(domain_owner).get("current_agent") == owner.participant:
            for active in self.files(domain_owner, "active"):
                self.complete(domain_owner, active.name, output=output)

    def resolve_destination(self, to: str, sender_domain: str) -> Address:
        """Resolve a ``to`` header into a concrete (domain, participant)."""
        to = (to or "").strip()
        if not is_valid_address(to):
            raise RoutingError(f"Invalid destination address: {to!r}")
        if "/" in to:
            return parse_address(to)

        if self.paths.domain_dir(to).is_dir():
            entry = self.domains.entry_point(to)
            if entry:
                return Address(to, entry)
            agents = self.domains.agents(to)
            fallback = agents[0] if agents else to
            self._record(
                EvidenceType.HARDCODED_FALLBACK,
                f"No entry_point for domain '{to}', using '{fallback}'",
                Owner(to),
                to=to,
            )
            return Address(to, fallback)

        return Address(sender_domain, to)

    # =========================================================================
    # Workflow and delivery
    # =========================================================================

    def _holds_workflow_step(self, owner: Owner) -> bool:
        """True when participant ``owner`` is working the current step of its domain's workflow.

        Handoffs land in the participant's own tiers, so after the first step the
        domain's active tier is empty and the participant's completion is what
        moves the workflow on.
        """
        current = self.state.read(owner.domain)
        return (
            bool(current.get("workflow"))
            and not current.get("workflow_complete")
            and current.get("current_agent") == owner.participant
            and not self.files(Owner(owner.domain), "active")
        )

    def _advance_workflow(self, domain: str, output: str) -> None:
        current = self.state.read(domain)
        workflow = current.get("workflow") or []
        if not workflow or current.get("workflow_complete"):
            return

        position = current.get("workflow_position", 0)
        if position >= len(workflow) - 1:
            self.state.update(domain, {"workflow_complete": True, "status": "complete"})
            log.info(f"Workflow for {domain} complete")
            return

        previous, following = workflow[position], workflow[position + 1]
        message = build_message(
            sender=f"{domain}/{previous}",
            to=f"{domain}/{following}",
            msg_type="task",
            body=f"# Handoff from {previous}\n\n{output}".rstrip() + "\n",
            status="handoff",
            workflow_position=str(position + 1),
        )
        target = Owner(domain, following)
        inbox = self.paths.tier_dir(target, "inbox")
        filename = message_filename(message)
        self.ignore.add(inbox / filename)
        path = write_message(inbox, message, filename)

        self.state.update(
            domain,
            {
                "current_agent": following,
                "previous_agent": previous,
                "workflow_position": position + 1,
            },
        )
        if self.metrics:
            self.metrics.inc("mesh_bus_workflow_handoffs_total")
        log.info(f"Workflow handoff {previous} -> {following} in {domain}: {path.name}")
        self._schedule("process_inbox", target)

    def _session_for(self, owner: Owner, path: Path) -> str | None:
        """The live session for ``owner``, or None after recording the miss once per file."""
        address = f"{owner.domain}/{owner.participant or owner.domain}"
        session = session_name_for(address, self.serializer.backend.list())
        if self.serializer.session_exists(session):
            return session
        self._record_once(
            EvidenceType.MISSING_SESSION,
            path,
            f"No session '{session}' for {address}; {path.name} left in {path.parent.name}",
            owner,
            session=session,
        )
        return None

    def _notify(self, owner: Owner, path: Path, message: Message | None) -> bool:
        """Hand an active message to the participant's session."""
        session = self._session_for(owner, path)
        if session is None:
            return False
        is_prompt = message is not None and message.type == "prompt"
        self.serializer.enqueue_file(session, path, is_prompt=is_prompt)
        return True
