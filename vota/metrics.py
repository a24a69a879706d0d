"""
In-memory metrics for provider traffic.

Counts calls and failures per provider endpoint label, keeps the last latency
samples per label, and remembers recent errors for quick root-cause checks.
State is per-instance and resets on restart; the durable record of every call
is the usage ledger.
"""

import threading
import time
from collections import defaultdict
from typing import Dict, List

MAX_SAMPLES = 100
MAX_ERRORS = 50


class ProviderMetrics:
    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._latency: Dict[str, List[float]] = defaultdict(list)
        self._errors: List[dict] = []
        self._started = time.time()

    def observe(self, endpoint: str, duration_ms: float, ok: bool):
        """Record one provider call."""
        with self._lock:
            self._counters[f"requests.{endpoint}"] += 1
            if not ok:
                self._counters[f"errors.{endpoint}"] += 1
            samples = self._latency[endpoint]
            samples.append(duration_ms)
            if len(samples) > MAX_SAMPLES:
                self._latency[endpoint] = samples[-MAX_SAMPLES:]

    def record_error(self, endpoint: str, error_type: str, message: str, user_id: int = 0):
        with self._lock:
            self._errors.append({
                "timestamp": time.time(),
                "endpoint": endpoint,
                "error_type": error_type,
                "message": message[:300],
                "user_id": user_id,
            })
            if len(self._errors) > MAX_ERRORS:
                self._errors.pop(0)

    def snapshot(self) -> dict:
        now = time.time()
        with self._lock:
            latency = {}
            for endpoint, samples in self._latency.items():
                if not samples:
                    continue
                ordered = sorted(samples)
                n = len(ordered)
                latency[endpoint] = {
                    "p50": ordered[n // 2],
                    "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
                    "avg": sum(ordered) / n,
                    "count": n,
                }
            return {
                "timestamp": now,
                "counters": dict(self._counters),
                "latency": latency,
                "recent_errors": list(self._errors[-10:]),
                "uptime_seconds": now - self._started,
            }
