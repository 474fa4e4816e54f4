from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Iterator


log = logging.getLogger(__name__)


class Telemetry:
    """Timing spans and counters, reported through the logging pipeline."""

    def __init__(self, slow_threshold_seconds: float | None = None, max_samples: int = 100):
        self.slow_threshold_seconds = slow_threshold_seconds
        self._lock = threading.Lock()
        # Only the most recent samples per span name are kept.
        self._durations: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=max_samples))
        self._counters: dict[str, int] = defaultdict(int)

    @contextmanager
    def span(self, name: str, slow_after: float | None = None) -> Iterator[None]:
        threshold = slow_after if slow_after is not None else self.slow_threshold_seconds
        log.debug("span start %s", name)
        start = time.perf_counter()
        ok = False
        try:
            yield
            ok = True
        finally:
            elapsed = time.perf_counter() - start
            with self._lock:
                self._durations[name].append(elapsed)
            outcome = "ok" if ok else "error"
            if threshold is not None and elapsed > threshold:
                log.warning("span end %s (%s) took %.0f ms, over %.0f ms", name, outcome, elapsed * 1000, threshold * 1000)
            else:
                log.info("span end %s (%s) %.0f ms", name, outcome, elapsed * 1000)

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[counter] += amount

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def durations(self, name: str) -> list[float]:
        with self._lock:
            return list(self._durations.get(name, ()))
