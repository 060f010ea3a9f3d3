# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

"""Wiring for one bus instance.

Every component is an explicit instance held here, so several buses (one per
test, say) can coexist in a process.
"""

import logging

from .config import BusConfig, DomainConfigs
from .consumer import ConsumerManager
from .delivery import DeliveryConfig, DeliverySerializer
from .events import EventDispatcher
from .evidence import EvidenceRecorder
from .metrics import BusMetrics
from .router import Router
from .sessions import SessionBackend, make_backend
from .state import StateStore
from .watcher import IgnoreSet, WatchLayer

log = logging.getLogger(__name__)


class BusContext:
    def __init__(self, config: BusConfig, backend: SessionBackend | None = None):
        self.config = config
        self.paths = config.paths
        self.metrics = BusMetrics()
        self.dispatcher = EventDispatcher()
        self.evidence = EvidenceRecorder(
            self.paths.evidence_file, max_lines=config.evidence_max_lines, metrics=self.metrics
        )
        self.state = StateStore(self.paths, self.dispatcher, lock_timeout=config.lock_timeout)
        self.domains = DomainConfigs(self.paths)
        self.ignore = IgnoreSet(ttl=config.ignore_ttl)
        self.backend = backend or make_backend(
            config.session_backend,
            settle_delay=config.settle_delay,
            opencode_port=config.opencode_port,
        )
        self.serializer = DeliverySerializer(
            self.backend,
            DeliveryConfig(
                settle_delay=config.settle_delay,
                idle_window=config.idle_window,
                idle_timeout=config.idle_timeout,
                poll_interval=config.idle_poll_interval,
            ),
            metrics=self.metrics,
        )
        self.router = Router(
            self.paths,
            self.state,
            self.domains,
            self.serializer,
            self.evidence,
            self.ignore,
            metrics=self.metrics,
            dedup_window=config.dedup_window,
        )
        self.consumers = ConsumerManager(
            self.paths,
            self.dispatcher,
            self.serializer,
            self.domains,
            evidence=self.evidence,
            metrics=self.metrics,
            poll_interval=config.consumer_poll_interval,
            enabled=config.consumers_enabled,
        )
        self.watcher = WatchLayer(
            self.paths.root,
            self.dispatcher,
            self.ignore,
            evidence=self.evidence,
            write_settle=config.write_settle,
            domains=self.domains,
        )
        self.router.attach(self.dispatcher)

    def init(self) -> None:
        """Create the on-disk layout. Raises OSError if the root is unusable."""
        self.paths.ensure()
        self.evidence.init()

    def participant_addresses(self) -> list[str]:
        return [
            owner.key
            for domain in self.router.domain_names()
            for owner in self.router.owners(domain)
            if owner.is_participant
        ]

    def update_gauges(self) -> None:
        self.metrics.set_gauge("mesh_bus_delivery_queue_size", self.serializer.total_pending())
        self.metrics.set_gauge("mesh_bus_active_messages", self.router.total_active())
