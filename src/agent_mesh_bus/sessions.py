# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

"""Execution environments that host agent sessions.

A backend can create, list, kill and check named sessions, inject text, file
references or control commands into them, and infer when their output has
gone quiet. Readiness can only be observed by polling: a session is idle when
successive snapshots of its output stop changing.
"""

import fnmatch
import logging
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path

import requests

log = logging.getLogger(__name__)


def session_name_for(address: str, sessions: list[str]) -> str:
    """Map a ``domain/participant`` address to a session name.

    ``core/core`` is ``core`` and ``D/D`` is ``D``. Otherwise the first live
    session matching ``D-*-A`` wins, falling back to ``D-A``.
    """
    domain, _, participant = address.partition("/")
    if not participant or participant == domain:
        return domain
    pattern = f"{domain}-*-{participant}"
    for name in sessions:
        if fnmatch.fnmatchcase(name, pattern):
            return name
    return f"{domain}-{participant}"


class SessionBackend(ABC):
    """Shared behavior: file injection and output-idle detection."""

    settle_delay: float = 0.5

    @abstractmethod
    def list(self) -> list[str]:
        ...

    @abstractmethod
    def exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def create(self, name: str, workdir: Path | None = None, command: str | None = None) -> bool:
        ...

    @abstractmethod
    def kill(self, name: str) -> bool:
        ...

    @abstractmethod
    def inject_text(self, name: str, text: str) -> bool:
        ...

    @abstractmethod
    def send_command(self, name: str, command: str) -> bool:
        ...

    @abstractmethod
    def snapshot(self, name: str) -> str | None:
        """Opaque value that changes whenever the session produces output."""
        ...

    def inject_file(self, name: str, path: Path, is_prompt: bool = False) -> bool:
        """Reference a message file, or paste a prompt file's full text."""
        path = Path(path)
        if is_prompt:
            try:
                text = path.read_text()
            except OSError as e:
                log.error(f"Cannot read prompt file {path}: {e}")
                return False
            return self.inject_text(name, text)
        return self.inject_text(name, f"@{path.resolve()}")

    def wait_for_idle(
        self, name: str, idle_window: float = 2.0, timeout: float = 30.0, poll_interval: float = 0.5
    ) -> bool:
        """Block until output is unchanged for ``idle_window`` seconds. False on timeout."""
        deadline = time.monotonic() + timeout
        last = self.snapshot(name)
        stable_since = time.monotonic()
        while time.monotonic() < deadline:
            time.sleep(poll_interval)
            current = self.snapshot(name)
            now = time.monotonic()
            if current != last:
                last = current
                stable_since = now
            elif now - stable_since >= idle_window:
                return True
        return False

    def readiness_check(self, name: str) -> dict:
        if not self.exists(name):
            return {"ready": False, "gate": "session_missing"}
        first = self.snapshot(name)
        time.sleep(self.settle_delay)
        if self.snapshot(name) != first:
            return {"ready": False, "gate": "output_changing"}
        return {"ready": True, "gate": "idle"}


# =============================================================================
# tmux
# =============================================================================


class TmuxSessions(SessionBackend):
    def __init__(self, settle_delay: float = 0.5, tmux: str = "tmux"):
        self.settle_delay = settle_delay
        self.tmux = tmux

    def _run(self, *args: str, input_text: str | None = None) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.tmux, *args],
            input=input_text,
            capture_output=True,
            text=True,
            check=False,
        )

    def list(self) -> list[str]:
        result = self._run("list-sessions", "-F", "#{session_name}")
        if result.returncode != 0:
            return []
        return [line for line in result.stdout.splitlines() if line]

    def exists(self, name: str) -> bool:
        return self._run("has-session", "-t", name).returncode == 0

    def create(self, name: str, workdir: Path | None = None, command: str | None = None) -> bool:
        args = ["new-session", "-d", "-s", name]
        if workdir:
            args += ["-c", str(workdir)]
        if command:
            args.append(command)
        result = self._run(*args)
        if result.returncode != 0:
            log.error(f"Failed to create tmux session {name}: {result.stderr.strip()}")
            return False
        log.info(f"Created tmux session {name}")
        return True

    def kill(self, name: str) -> bool:
        return self._run("kill-session", "-t", name).returncode == 0

    def inject_text(self, name: str, text: str) -> bool:
        buffer = f"mesh-{name}"
        loaded = self._run("load-buffer", "-b", buffer, "-", input_text=text)
        if loaded.returncode != 0:
            log.error(f"load-buffer failed for {name}: {loaded.stderr.strip()}")
            return False
        pasted = self._run("paste-buffer", "-d", "-b", buffer, "-t", name)
        if pasted.returncode != 0:
            log.error(f"paste-buffer failed for {name}: {pasted.stderr.strip()}")
            return False
        # The pane needs a moment to absorb a large paste before Enter submits it
        time.sleep(self.settle_delay)
        return self._run("send-keys", "-t", name, "Enter").returncode == 0

    def send_command(self, name: str, command: str) -> bool:
        return self.inject_text(name, f"/{command.lstrip('/')}")

    def snapshot(self, name: str) -> str | None:
        result = self._run("capture-pane", "-p", "-t", name)
        return result.stdout if result.returncode == 0 else None


# =============================================================================
# OpenCode
# =============================================================================

INJECTION_RETRIES = 3
INJECTION_TIMEOUT = 5


class OpenCodeSessions(SessionBackend):
    """Sessions on an OpenCode server, identified by session title."""

    def __init__(
        self,
        base_url: str = "http://localhost:4096",
        settle_delay: float = 0.5,
        retries: int = INJECTION_RETRIES,
        timeout: float = INJECTION_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.settle_delay = settle_delay
        self.retries = retries
        self.timeout = timeout

    def _sessions(self) -> list[dict]:
        try:
            resp = requests.get(f"{self.base_url}/session", timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            log.error(f"Failed to fetch sessions: {e}")
            return []

    def _find(self, name: str) -> dict | None:
        matching = [s for s in self._sessions() if s.get("title") == name]
        if not matching:
            return None
        matching.sort(key=lambda s: s.get("time", {}).get("updated", 0), reverse=True)
        return matching[0]

    def list(self) -> list[str]:
        return [s["title"] for s in self._sessions() if s.get("title")]

    def exists(self, name: str) -> bool:
        return self._find(name) is not None

    def create(self, name: str, workdir: Path | None = None, command: str | None = None) -> bool:
        params = {"directory": str(workdir)} if workdir else None
        try:
            resp = requests.post(
                f"{self.base_url}/session",
                json={"title": name},
                params=params,
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            log.error(f"Failed to create session {name}: {e}")
            return False
        log.info(f"Created OpenCode session {name}")
        return True

    def kill(self, name: str) -> bool:
        session = self._find(name)
        if session is None:
            return False
        try:
            resp = requests.delete(f"{self.base_url}/session/{session['id']}", timeout=self.timeout)
            return resp.status_code in (200, 204)
        except requests.RequestException as e:
            log.error(f"Failed to delete session {name}: {e}")
            return False

    def inject_text(self, name: str, text: str) -> bool:
        """Send text through /prompt_async, which wakes idle sessions."""
        session = self._find(name)
        if session is None:
            log.warning(f"No OpenCode session titled {name}")
            return False
        session_id = session["id"]
        payload = {"parts": [{"type": "text", "text": text}]}

        for attempt in range(self.retries):
            try:
                resp = requests.post(
                    f"{self.base_url}/session/{session_id}/prompt_async",
                    json=payload,
                    timeout=self.timeout,
                )
                # prompt_async returns 204 No Content on success
                if resp.status_code in (200, 204):
                    log.info(f"Injected message into session {name} ({session_id[:8]})")
                    return True
                log.warning(f"Injection attempt {attempt + 1} failed: {resp.status_code}")
            except requests.RequestException as e:
                log.warning(f"Injection attempt {attempt + 1} failed: {e}")

            if attempt < self.retries - 1:
                time.sleep(0.5 * (attempt + 1))

        log.error(f"Injection failed after {self.retries} attempts for session {name}")
        return False

    def send_command(self, name: str, command: str) -> bool:
        session = self._find(name)
        if session is None:
            return False
        try:
            resp = requests.post(
                f"{self.base_url}/session/{session['id']}/command",
                json={"command": command.lstrip("/"), "arguments": ""},
                timeout=self.timeout,
            )
            return resp.status_code in (200, 204)
        except requests.RequestException as e:
            log.error(f"Command {command} failed for {name}: {e}")
            return False

    def snapshot(self, name: str) -> str | None:
        session = self._find(name)
        if session is None:
            return None
        return str(session.get("time", {}).get("updated"))


def make_backend(kind: str, settle_delay: float = 0.5, opencode_port: int = 4096) -> SessionBackend:
    if kind == "opencode":
        return OpenCodeSessions(f"http://localhost:{opencode_port}", settle_delay=settle_delay)
    if kind == "tmux":
        return TmuxSessions(settle_delay=settle_delay)
    raise ValueError(f"Unknown session backend: {kind}")
