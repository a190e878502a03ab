"""
Thread-safe in-memory metrics for the generation orchestrator.

Tracks dispatch traffic and latency, admission denials, poll reads, job
outcomes and auto-save failures. Data is ephemeral (resets on restart);
durable history lives in the stage records themselves.
"""

import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = defaultdict(float)

# Rolling windows: last 100 latency samples per operation, last 50 errors
LATENCY_WINDOW = 100
ERROR_WINDOW = 50
_latencies: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=LATENCY_WINDOW))
_errors: Deque[dict] = deque(maxlen=ERROR_WINDOW)


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'dispatch.accepted', 'jobs.failed')."""
    with _lock:
        _counters[name] += amount


def record_latency(operation: str, duration_ms: float):
    with _lock:
        _latencies[operation].append(duration_ms)


def set_gauge(name: str, value: float):
    """Set a gauge value (e.g. 'open_stages', 'active_pollers')."""
    with _lock:
        _gauges[name] = value


def add_gauge(name: str, delta: float):
    with _lock:
        _gauges[name] += delta


def record_error(operation: str, error_type: str, message: str, file_id: str = ""):
    """Keep a short record of a failure; `file_id` is the "pipeline:stage" it concerned."""
    with _lock:
        _errors.append({
            "at": time.time(),
            "operation": operation,
            "type": error_type,
            "message": message[:300],
            "file_id": file_id,
        })


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def _percentiles(samples) -> dict:
    ordered = sorted(samples)
    count = len(ordered)
    return {
        "p50": ordered[count // 2],
        "p95": ordered[min(count - 1, int(count * 0.95))],
        "avg": sum(ordered) / count,
        "count": count,
    }


def _ratio(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def get_snapshot() -> dict:
    """Complete metrics snapshot for the /metrics endpoint."""
    now = time.time()

    with _lock:
        counters = dict(_counters)
        completed = counters.get("jobs.completed", 0)
        failed = counters.get("jobs.failed", 0)

        return {
            "timestamp": now,
            "uptime_seconds": now - _gauges.get("start_time", now),
            "counters": counters,
            "gauges": dict(_gauges),
            "latency": {op: _percentiles(s) for op, s in _latencies.items() if s},
            "dispatch_rejection_rate": _ratio(
                counters.get("errors.dispatch_rejected", 0), counters.get("requests.dispatch", 0)
            ),
            "job_failure_rate": _ratio(failed, completed + failed),
            "recent_errors": list(_errors)[-10:],
        }


def reset():
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latencies.clear()
        _errors.clear()
