# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

"""Agent Mesh Bus - File-based message routing and delivery for agent sessions."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("agent-mesh-bus")
except PackageNotFoundError:  # pragma: no cover - fallback for dev
    __version__ = "0.1.0"
