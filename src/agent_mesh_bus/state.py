# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

"""Atomic state store: one JSON record per domain or participant.

Reads never lock. Updates take an exclusive lock file (O_CREAT|O_EXCL), merge,
write via temp file + rename, and publish ``state:changed``.
"""

import json
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from .codec import Owner
from .config import BusPaths
from .events import EventDispatcher

log = logging.getLogger(__name__)

LOCK_RETRY_INITIAL = 0.01
LOCK_RETRY_MAX = 0.2


class LockTimeout(TimeoutError):
    """Raised when a state lock cannot be acquired within the timeout."""


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def default_record(owner: Owner) -> dict:
    now = _now()
    record = {
        "domain": owner.domain,
        "status": "initialized",
        "started": now,
        "current_agent": None,
        "previous_agent": None,
        "workflow": [],
        "workflow_position": 0,
        "workflow_complete": False,
        "tasks_completed": 0,
        "updated": now,
    }
    if owner.participant:
        record["participant"] = owner.participant
    return record


def write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class StateStore:
    def __init__(
        self,
        paths: BusPaths,
        dispatcher: EventDispatcher | None = None,
        lock_timeout: float = 5.0,
    ):
        self.paths = paths
        self.dispatcher = dispatcher
        self.lock_timeout = lock_timeout

    @contextmanager
    def lock(self, key: str | Owner, timeout: float | None = None) -> Iterator[None]:
        """Hold the owner's lock file for the duration of the block."""
        owner = Owner.parse(key)
        lock_path = self.paths.lock_file(owner)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        timeout = self.lock_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        delay = LOCK_RETRY_INITIAL

        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                break
            except FileExistsError:
                if time.monotonic() >= deadline:
                    raise LockTimeout(
                        f"Timed out after {timeout}s waiting for lock {lock_path}"
                    ) from None
                time.sleep(delay)
                delay = min(delay * 2, LOCK_RETRY_MAX)

        try:
            os.write(fd, str(os.getpid()).encode())
            os.close(fd)
            yield
        finally:
            lock_path.unlink(missing_ok=True)

    def read(self, key: str | Owner) -> dict:
        """Return the record, creating the default on first access."""
        owner = Owner.parse(key)
        path = self.paths.state_file(owner)
        if path.exists():
            try:
                return json.loads(path.read_text())
            except (json.JSONDecodeError, OSError) as e:
                log.warning(f"Unreadable state {path}, using defaults: {e}")
                return default_record(owner)
        record = default_record(owner)
        write_json(path, record)
        return record

    def update(self, key: str | Owner, patch: dict) -> dict:
        owner = Owner.parse(key)
        with self.lock(owner):
            previous = self.read(owner)
            current = {**previous, **patch, "updated": _now()}
            write_json(self.paths.state_file(owner), current)

        if self.dispatcher is not None:
            self.dispatcher.publish(
                "state:changed",
                {"key": owner.key, "changes": patch, "previous": previous, "current": current},
            )
        return current

    def increment(self, key: str | Owner, field: str, amount: int = 1) -> dict:
        """Read-then-update. Two processes incrementing concurrently can lose one."""
        current = self.read(key).get(field) or 0
        return self.update(key, {field: current + amount})

    def get(self, key: str | Owner, dotted_path: str, default: Any = None) -> Any:
        node: Any = self.read(key)
        for part in dotted_path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def clear(self, key: str | Owner) -> None:
        owner = Owner.parse(key)
        self.paths.state_file(owner).unlink(missing_ok=True)
        log.info(f"Cleared state for {owner.key}")
