"""Shared fixtures: an in-memory session backend and a bus rooted in tmp_path."""

import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from agent_mesh_bus.codec import build_message, message_filename, write_message
from agent_mesh_bus.config import BusConfig
from agent_mesh_bus.context import BusContext
from agent_mesh_bus.sessions import SessionBackend


class FakeSessions(SessionBackend):
    """Records every injection instead of talking to a terminal."""

    def __init__(self, sessions=()):
        self.sessions = set(sessions)
        self.injected: list[tuple[str, str, str]] = []
        self.idle = True
        self.fail_injections = False
        self.settle_delay = 0

    def list(self):
        return sorted(self.sessions)

    def exists(self, name):
        return name in self.sessions

    def create(self, name, workdir=None, command=None):
        self.sessions.add(name)
        return True

    def kill(self, name):
        self.sessions.discard(name)
        return True

    def inject_text(self, name, text):
        if self.fail_injections:
            return False
        self.injected.append((name, "text", text))
        return True

    def inject_file(self, name, path, is_prompt=False):
        if self.fail_injections:
            return False
        self.injected.append((name, "prompt" if is_prompt else "file", str(path)))
        return True

    def send_command(self, name, command):
        self.injected.append((name, "command", command))
        return True

    def snapshot(self, name):
        return ""

    def wait_for_idle(self, name, idle_window=2.0, timeout=30.0, poll_interval=0.5):
        return self.idle


@pytest.fixture
def sessions():
    return FakeSessions()


@pytest.fixture
def bus(tmp_path, sessions):
    config = BusConfig(
        root=tmp_path / "tx",
        meshes=tmp_path / "meshes",
        settle_delay=0,
        idle_window=0,
        idle_timeout=0.1,
        idle_poll_interval=0,
        write_settle=0,
        consumer_poll_interval=0.05,
        lock_timeout=0.2,
    )
    ctx = BusContext(config, backend=sessions)
    ctx.init()
    return ctx


def make_domain(ctx: BusContext, domain: str, config: dict | None = None, participants=()):
    """Create a domain directory, its participants and (optionally) its config."""
    ctx.paths.domain_dir(domain).mkdir(parents=True, exist_ok=True)
    for participant in participants:
        (ctx.paths.domain_dir(domain) / "agents" / participant).mkdir(parents=True, exist_ok=True)
    if config is not None:
        path = ctx.paths.domain_config_file(domain)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(config))
        ctx.domains.invalidate(domain)


def put_message(
    directory: Path,
    sender: str,
    to: str,
    msg_type: str = "task",
    body: str = "Do the thing.",
    minutes_ago: int = 10,
    **extra,
) -> Path:
    message = build_message(sender, to, msg_type, body, **extra)
    when = datetime.now() - timedelta(minutes=minutes_ago)
    return write_message(directory, message, message_filename(message, when=when))
