# ==============================
# Metrics (In-Memory)
# ==============================
"""
Thread-safe in-memory counters and timers for the knowledge engine.

Names in use:
- compilations.<status>      compilation outcomes
- knowledge.applied          successful applies (version bumps)
- knowledge.writer_contention writer lock refusals
- queries.total / queries.empty / queries.failed
- sources.degraded           entity source unavailable
- model.latency_ms           collaborator round-trips (timer)

No exporters. snapshot() is served by the admin API for debugging.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List


@dataclass
class Timer:
    name: str
    started: float


class Metrics:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._timers_ms: Dict[str, List[int]] = {}

    def inc(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def count(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def start_timer(self, name: str) -> Timer:
        return Timer(name=name, started=time.monotonic())

    def stop_timer(self, timer: Timer) -> int:
        elapsed_ms = int((time.monotonic() - timer.started) * 1000)
        with self._lock:
            self._timers_ms.setdefault(timer.name, []).append(elapsed_ms)
        return elapsed_ms

    @contextmanager
    def timed(self, name: str) -> Iterator[Timer]:
        timer = self.start_timer(name)
        try:
            yield timer
        finally:
            self.stop_timer(timer)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "timers_ms": {k: list(v) for k, v in self._timers_ms.items()},
            }
