# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

"""Configuration: config file, environment overrides, paths, and domain configs.

Precedence for every setting: environment variable > config file > default.

Config file: ~/.config/agent-mesh-bus/config.json

    {
      "root": ".ai/tx",
      "log_level": "INFO",
      "session_backend": "tmux",
      "opencode_port": 4096,
      "lock_timeout": 5,
      "delivery": {"settle_delay": 0.5, "idle_window": 2, "idle_timeout": 30},
      "consumer": {"poll_interval": 5},
      "evidence": {"max_lines": 5000}
    }
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .codec import Owner

log = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "agent-mesh-bus"
CONFIG_FILE = CONFIG_DIR / "config.json"

TIERS = ("inbox", "next", "active", "complete", "archive")
PARTICIPANT_TIERS = TIERS + ("outbox",)

# "research-807055" is an instance of the "research" domain
_INSTANCE_SUFFIX_RE = re.compile(r"^(?P<base>.+)-[0-9a-f]{6,}$")


def _load_config_file() -> dict:
    """Load the JSON config file. Missing or invalid files yield an empty dict."""
    if not CONFIG_FILE.exists():
        return {}
    try:
        data = json.loads(CONFIG_FILE.read_text())
    except (json.JSONDecodeError, OSError) as e:
        log.warning(f"Failed to load config file {CONFIG_FILE}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def _coerce(value: Any, cast: type) -> Any:
    if cast is bool:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    return cast(value)


def _get_config_value(
    env_var: str, path: list[str], default: Any, config: dict, cast: type = str
) -> Any:
    """Resolve a setting from env var, then nested config path, then default."""
    env_value = os.environ.get(env_var)
    if env_value is not None:
        return _coerce(env_value, cast)

    node: Any = config
    for key in path:
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    if node is None:
        return default
    return _coerce(node, cast)


# =============================================================================
# Paths
# =============================================================================


@dataclass(frozen=True)
class BusPaths:
    """Directory layout shared by the router, consumers, and watch layer."""

    root: Path
    meshes: Path

    @property
    def log_dir(self) -> Path:
        """Shared, flat message log."""
        return self.root / "msgs"

    @property
    def mesh_dir(self) -> Path:
        return self.root / "mesh"

    @property
    def state_dir(self) -> Path:
        return self.root / "state"

    @property
    def offsets_dir(self) -> Path:
        return self.state_dir / "offsets"

    @property
    def rewritten_dir(self) -> Path:
        return self.state_dir / "rewritten"

    @property
    def evidence_file(self) -> Path:
        return self.root / "logs" / "evidence.jsonl"

    @property
    def metrics_file(self) -> Path:
        return self.root / "metrics.prom"

    def domain_dir(self, domain: str) -> Path:
        return self.mesh_dir / domain

    def owner_dir(self, owner: Owner) -> Path:
        base = self.domain_dir(owner.domain)
        if owner.participant:
            return base / "agents" / owner.participant
        return base

    def tier_dir(self, owner: Owner, tier: str) -> Path:
        return self.owner_dir(owner) / "msgs" / tier

    def state_file(self, owner: Owner) -> Path:
        return self.owner_dir(owner) / "state.json"

    def lock_file(self, owner: Owner) -> Path:
        return self.owner_dir(owner) / ".lock"

    def offset_file(self, address: str) -> Path:
        return self.offsets_dir / f"{address.replace('/', '-')}.json"

    def domain_config_file(self, domain: str) -> Path:
        return self.meshes / "mesh-configs" / f"{domain}.json"

    @property
    def lens_index_file(self) -> Path:
        return self.meshes / "lenses" / "index.json"

    def template_file(self, name: str) -> Path:
        return self.meshes / "templates" / f"{name}.md"

    def ensure(self) -> None:
        """Create the directories the bus needs. Failures are fatal to startup."""
        for directory in (
            self.log_dir,
            self.mesh_dir,
            self.offsets_dir,
            self.rewritten_dir,
            self.evidence_file.parent,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def ensure_owner(self, owner: Owner) -> None:
        tiers = PARTICIPANT_TIERS if owner.is_participant else TIERS
        for tier in tiers:
            self.tier_dir(owner, tier).mkdir(parents=True, exist_ok=True)


# =============================================================================
# Bus configuration
# =============================================================================


@dataclass(frozen=True)
class BusConfig:
    root: Path = Path(".ai/tx")
    meshes: Path | None = None
    log_level: str = "INFO"
    session_backend: str = "tmux"
    opencode_port: int = 4096
    lock_timeout: float = 5.0
    ignore_ttl: float = 5.0
    dedup_window: float = 1.0
    write_settle: float = 0.1
    settle_delay: float = 0.5
    idle_window: float = 2.0
    idle_timeout: float = 30.0
    idle_poll_interval: float = 0.5
    consumer_poll_interval: float = 5.0
    consumers_enabled: bool = True
    evidence_max_lines: int = 5000
    stuck_after_seconds: float = 1800.0
    metrics_interval: float = 30.0

    @property
    def paths(self) -> BusPaths:
        return BusPaths(root=self.root, meshes=self.meshes or self.root / "meshes")

    @classmethod
    def load(cls, config: dict | None = None) -> "BusConfig":
        """Build the configuration from environment and config file."""
        if config is None:
            config = _load_config_file()
        root = Path(_get_config_value("MESH_BUS_ROOT", ["root"], ".ai/tx", config))
        meshes = _get_config_value("MESH_BUS_MESHES", ["meshes"], None, config)
        return cls(
            root=root,
            meshes=Path(meshes) if meshes else None,
            log_level=_get_config_value(
                "MESH_BUS_LOG_LEVEL", ["log_level"], "INFO", config
            ).upper(),
            session_backend=_get_config_value(
                "MESH_BUS_SESSION_BACKEND", ["session_backend"], "tmux", config
            ),
            opencode_port=_get_config_value(
                "OPENCODE_PORT", ["opencode_port"], 4096, config, int
            ),
            lock_timeout=_get_config_value(
                "MESH_BUS_LOCK_TIMEOUT", ["lock_timeout"], 5.0, config, float
            ),
            ignore_ttl=_get_config_value(
                "MESH_BUS_IGNORE_TTL", ["watch", "ignore_ttl"], 5.0, config, float
            ),
            dedup_window=_get_config_value(
                "MESH_BUS_DEDUP_WINDOW", ["watch", "dedup_window"], 1.0, config, float
            ),
            write_settle=_get_config_value(
                "MESH_BUS_WRITE_SETTLE", ["watch", "write_settle"], 0.1, config, float
            ),
            settle_delay=_get_config_value(
                "MESH_BUS_SETTLE_DELAY", ["delivery", "settle_delay"], 0.5, config, float
            ),
            idle_window=_get_config_value(
                "MESH_BUS_IDLE_WINDOW", ["delivery", "idle_window"], 2.0, config, float
            ),
            idle_timeout=_get_config_value(
                "MESH_BUS_IDLE_TIMEOUT", ["delivery", "idle_timeout"], 30.0, config, float
            ),
            idle_poll_interval=_get_config_value(
                "MESH_BUS_IDLE_POLL", ["delivery", "poll_interval"], 0.5, config, float
            ),
            consumer_poll_interval=_get_config_value(
                "MESH_BUS_CONSUMER_POLL", ["consumer", "poll_interval"], 5.0, config, float
            ),
            consumers_enabled=_get_config_value(
                "MESH_BUS_CONSUMERS", ["consumer", "enabled"], True, config, bool
            ),
            evidence_max_lines=_get_config_value(
                "MESH_BUS_EVIDENCE_MAX_LINES", ["evidence", "max_lines"], 5000, config, int
            ),
            stuck_after_seconds=_get_config_value(
                "MESH_BUS_STUCK_AFTER", ["evidence", "stuck_after"], 1800.0, config, float
            ),
            metrics_interval=_get_config_value(
                "MESH_BUS_METRICS_INTERVAL", ["metrics_interval"], 30.0, config, float
            ),
        )


# =============================================================================
# Domain configuration
# =============================================================================


class DomainConfigs:
    """Cached loader for per-domain configuration and the lens index.

    A domain config looks like:

        {
          "mesh": "research",
          "agents": ["interviewer", "editorial/writer"],
          "entry_point": "interviewer",
          "workflow": ["interviewer", "writer"],
          "routing": {"interviewer": {"complete": {"writer": "when done"}}}
        }
    """

    def __init__(self, paths: BusPaths):
        self.paths = paths
        self._cache: dict[str, dict] = {}
        self._lenses: dict | None = None

    def _candidates(self, domain: str) -> list[str]:
        names = [domain]
        match = _INSTANCE_SUFFIX_RE.match(domain)
        if match:
            names.append(match.group("base"))
        return names

    def load(self, domain: str) -> dict | None:
        """Return the config for a domain (or its base domain), None if absent."""
        if domain in self._cache:
            return self._cache[domain]
        for name in self._candidates(domain):
            path = self.paths.domain_config_file(name)
            if not path.exists():
                continue
            try:
                config = json.loads(path.read_text())
            except (json.JSONDecodeError, OSError) as e:
                log.warning(f"Failed to load domain config {path}: {e}")
                return None
            self._cache[domain] = config
            return config
        return None

    def invalidate(self, domain: str | None = None) -> None:
        if domain is None:
            self._cache.clear()
            self._lenses = None
        else:
            self._cache.pop(domain, None)

    def agents(self, domain: str) -> list[str]:
        """Participant names (category prefixes stripped) in config order."""
        config = self.load(domain) or {}
        return [a.rsplit("/", 1)[-1] for a in config.get("agents", []) if a]

    def entry_point(self, domain: str) -> str | None:
        config = self.load(domain) or {}
        entry = config.get("entry_point")
        return entry.rsplit("/", 1)[-1] if entry else None

    def default_participant(self, domain: str) -> str:
        """Who receives messages addressed to the bare domain name."""
        entry = self.entry_point(domain)
        if entry:
            return entry
        agents = self.agents(domain)
        return agents[0] if agents else domain

    def workflow(self, domain: str) -> list[str]:
        config = self.load(domain) or {}
        return [a.rsplit("/", 1)[-1] for a in config.get("workflow", []) if a]

    def routing(self, domain: str) -> dict:
        config = self.load(domain) or {}
        routing = config.get("routing")
        return routing if isinstance(routing, dict) else {}

    def validate_route(
        self, domain: str, participant: str, status: str | None, to: str
    ) -> tuple[bool, str | None]:
        """Check ``status -> to`` against the sender's routing table.

        No table (or no status) means nothing to validate.
        """
        if not status:
            return True, None
        agent_routing = self.routing(domain).get(participant)
        if not agent_routing:
            return True, None
        targets = agent_routing.get(status)
        if not targets:
            valid = ", ".join(agent_routing)
            return False, f"Unknown status '{status}' for {participant}. Valid statuses: {valid}"
        target = to.rsplit("/", 1)[-1]
        if target not in targets:
            valid = ", ".join(targets)
            return False, f"Status '{status}' cannot route to '{target}'. Valid targets: {valid}"
        return True, None

    def lens_index(self) -> dict:
        if self._lenses is None:
            path = self.paths.lens_index_file
            self._lenses = {}
            if path.exists():
                try:
                    data = json.loads(path.read_text())
                    self._lenses = data if isinstance(data, dict) else {}
                except (json.JSONDecodeError, OSError) as e:
                    log.warning(f"Failed to load lens index {path}: {e}")
        return self._lenses

    def lens(self, name: str) -> str | None:
        """Perspective text for a lens. Entries are strings or {"perspective": ...}."""
        entry = self.lens_index().get(name)
        if isinstance(entry, dict):
            entry = entry.get("perspective") or entry.get("description")
        return entry if isinstance(entry, str) else None

    def template(self, name: str) -> str | None:
        path = self.paths.template_file(name)
        try:
            return path.read_text()
        except OSError:
            return None
