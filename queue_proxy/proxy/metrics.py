"""Thread-safe event collector behind the status route."""

from __future__ import annotations

import statistics
import threading
import time
from collections import deque
from datetime import datetime, timezone


class ProxyMetrics:
    """Collects structured events from the admission queue and dispatcher.

    Events are plain dicts with a ``type`` key: ``admitted``, ``dispatch``,
    ``response`` or ``abandoned``.  Thread-safe so ``snapshot()`` can be
    called from any thread.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self.start_time: float = time.time()
        self._events: deque[dict] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._seq = 0
        self._counts: dict[str, int] = {}

    def record(self, event: dict) -> None:
        """Append an event (thread-safe). Adds ``_seq`` and ``ts``."""
        with self._lock:
            event = dict(event)  # shallow copy to avoid caller mutation
            event["_seq"] = self._seq
            if "ts" not in event:
                event["ts"] = datetime.now(timezone.utc).isoformat()
            self._seq += 1
            self._events.append(event)
            etype = event.get("type", "")
            self._counts[etype] = self._counts.get(etype, 0) + 1
            if etype == "response" and event.get("error"):
                self._counts["error"] = self._counts.get("error", 0) + 1

    def events_since(self, seq: int) -> list[dict]:
        """Return retained events with ``_seq`` > *seq*."""
        with self._lock:
            return [e for e in self._events if e["_seq"] > seq]

    def snapshot(self) -> dict:
        """Aggregate stats for the status route."""
        with self._lock:
            dispatches = [e for e in self._events if e.get("type") == "dispatch"]
            responses = [e for e in self._events if e.get("type") == "response"]

            wait_values = [d["wait_ms"] for d in dispatches if "wait_ms" in d]
            upstream_values = [r["upstream_ms"] for r in responses if "upstream_ms" in r]

            return {
                "uptime_s": round(time.time() - self.start_time, 1),
                "total_admitted": self._counts.get("admitted", 0),
                "total_dispatched": self._counts.get("dispatch", 0),
                "total_completed": self._counts.get("response", 0),
                "total_errors": self._counts.get("error", 0),
                "total_abandoned": self._counts.get("abandoned", 0),
                "avg_wait_ms": round(statistics.mean(wait_values), 1) if wait_values else 0,
                "avg_upstream_ms": round(statistics.mean(upstream_values), 1) if upstream_values else 0,
                "recent_responses": list(responses[-20:]),
            }
