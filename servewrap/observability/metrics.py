from __future__ import annotations

from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any


@dataclass
class _LatencyAgg:
    count: int = 0
    sum_ms: float = 0.0
    max_ms: float = 0.0

    def observe(self, elapsed_ms: float) -> None:
        self.count += 1
        self.sum_ms += float(elapsed_ms)
        if elapsed_ms > self.max_ms:
            self.max_ms = float(elapsed_ms)


class LabelMap:
    """Thread-safe, increment-only counters keyed by a string label."""

    def __init__(self, label: str = "") -> None:
        self.label = label
        self._lock = Lock()
        self._values: dict[str, int] = {}

    def add(self, key: str, delta: int = 1) -> None:
        if delta < 0:
            raise ValueError(f"LabelMap counters cannot decrease (got delta {delta})")
        with self._lock:
            self._values[key] = self._values.get(key, 0) + delta

    def get(self, key: str) -> int | None:
        """Return the counter for key, or None if key was never added."""

        with self._lock:
            return self._values.get(key)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._values)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)


# Memoizes the string form of HTTP response codes so the request path doesn't
# format a new string per request. Keys are either full codes (200, 404) or
# families (2 for "2xx").
_RESPONSE_CODE_SLOTS = 1000
_response_code_cache: list[str | None] = [None] * _RESPONSE_CODE_SLOTS
_response_code_lock = Lock()


def response_code_string(code: int) -> str:
    if 0 <= code < _RESPONSE_CODE_SLOTS:
        cached = _response_code_cache[code]
        if cached is not None:
            return cached

    ret = f"{code}xx" if 0 <= code < 10 else str(code)

    if 0 <= code < _RESPONSE_CODE_SLOTS:
        with _response_code_lock:
            if _response_code_cache[code] is None:
                _response_code_cache[code] = ret
            ret = _response_code_cache[code]
    return ret


class InMemoryMetrics:
    """Thread-safe, process-local metrics (resets on restart)."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.http_requests_total: int = 0
        self.http_request_ms = _LatencyAgg()
        self.status_codes = LabelMap("code_family")
        self.status_codes_full = LabelMap("code")
        self.bucket_started = LabelMap("bucket")
        self.bucket_finished = LabelMap("bucket")

    def observe_http_request(self, elapsed_ms: float) -> None:
        with self._lock:
            self.http_requests_total += 1
            self.http_request_ms.observe(elapsed_ms)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            counters = {"http_requests_total": self.http_requests_total}
            latency = {"http_request_ms": asdict(self.http_request_ms)}
        return {
            "counters": counters,
            "latency_ms": latency,
            "status_codes": self.status_codes.snapshot(),
            "status_codes_full": self.status_codes_full.snapshot(),
            "buckets": {
                "started": self.bucket_started.snapshot(),
                "finished": self.bucket_finished.snapshot(),
            },
        }

    def reset(self) -> None:
        with self._lock:
            self.http_requests_total = 0
            self.http_request_ms = _LatencyAgg()
        for label_map in (self.status_codes, self.status_codes_full, self.bucket_started, self.bucket_finished):
            label_map.reset()


_METRICS: InMemoryMetrics | None = None


def get_metrics() -> InMemoryMetrics:
    global _METRICS
    if _METRICS is None:
        _METRICS = InMemoryMetrics()
    return _METRICS


def reset_metrics() -> None:
    """Reset metrics counters/aggregates (used by tests)."""

    get_metrics().reset()
