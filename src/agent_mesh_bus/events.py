# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

"""In-process publish/subscribe with priorities, wildcards and one-shot handlers."""

import inspect
import itertools
import logging
import re
import time
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

log = logging.getLogger(__name__)

EVENT_LOG_SIZE = 1000

Handler = Callable[[dict], Any]


@dataclass
class Subscription:
    topic: str
    handler: Handler
    priority: int
    once: bool
    seq: int


class EventDispatcher:
    def __init__(self):
        self._subs: dict[str, list[Subscription]] = {}
        self._seq = itertools.count()
        self._event_log: deque[dict] = deque(maxlen=EVENT_LOG_SIZE)
        self._counts: Counter[str] = Counter()

    def subscribe(
        self, topic: str, handler: Handler, priority: int = 0, once: bool = False
    ) -> Subscription:
        sub = Subscription(topic, handler, priority, once, next(self._seq))
        self._subs.setdefault(topic, []).append(sub)
        return sub

    def unsubscribe(self, topic: str, handler: Handler) -> bool:
        subs = self._subs.get(topic, [])
        remaining = [s for s in subs if s.handler != handler]
        if len(remaining) == len(subs):
            return False
        if remaining:
            self._subs[topic] = remaining
        else:
            del self._subs[topic]
        return True

    def remove_all(self, topic: str | None = None) -> None:
        if topic is None:
            self._subs.clear()
        else:
            self._subs.pop(topic, None)

    def _matching(self, topic: str) -> list[Subscription]:
        matched = list(self._subs.get(topic, []))
        for pattern, subs in self._subs.items():
            if "*" not in pattern or pattern == topic:
                continue
            regex = "^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$"
            if re.match(regex, topic):
                matched.extend(subs)
        matched.sort(key=lambda s: (-s.priority, s.seq))
        return matched

    def _remove(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.topic)
        if not subs:
            return
        subs[:] = [s for s in subs if s is not sub]
        if not subs:
            del self._subs[sub.topic]

    def _record(self, topic: str, payload: dict) -> None:
        self._event_log.append({"topic": topic, "payload": payload, "time": time.time()})
        self._counts[topic] += 1

    def publish(self, topic: str, payload: dict | None = None) -> int:
        """Run every matching handler synchronously. Returns the number invoked."""
        payload = payload if payload is not None else {}
        self._record(topic, payload)
        invoked = 0
        for sub in self._matching(topic):
            if sub.once:
                self._remove(sub)
            try:
                result = sub.handler(payload)
                if inspect.isawaitable(result):
                    # Sync publish cannot await; close to avoid "never awaited" warnings
                    close = getattr(result, "close", None)
                    if close:
                        close()
                    log.warning(f"Async handler for {topic} skipped by synchronous publish")
            except Exception:
                log.exception(f"Handler error for {topic}")
            invoked += 1
        return invoked

    async def publish_async(self, topic: str, payload: dict | None = None) -> int:
        """Await every matching handler in priority order."""
        payload = payload if payload is not None else {}
        self._record(topic, payload)
        invoked = 0
        for sub in self._matching(topic):
            if sub.once:
                self._remove(sub)
            try:
                result = sub.handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception(f"Handler error for {topic}")
            invoked += 1
        return invoked

    def get_event_log(self, topic: str | None = None) -> list[dict]:
        if topic is None:
            return list(self._event_log)
        return [e for e in self._event_log if e["topic"] == topic]

    def get_stats(self) -> dict:
        return {
            "topics": sorted(self._subs),
            "subscriptions": sum(len(s) for s in self._subs.values()),
            "events": dict(self._counts),
            "logged": len(self._event_log),
        }

    def clear_event_log(self) -> None:
        self._event_log.clear()
        self._counts.clear()
