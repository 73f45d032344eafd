"""In-process metrics registry with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, Tuple


_COUNTER_HELP: Dict[str, str] = {
    "postflow_rate_limit_block_total": "Requests blocked by rate limiting.",
    "postflow_platform_publish_total": "Platform publish attempts by outcome.",
    "postflow_credits_total": "Credit ledger movements by operation.",
    "postflow_jobs_total": "Job outcomes by kind and status.",
    "postflow_sweep_posts_total": "Due posts handled by the recovery sweep by outcome.",
}


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def _format_labels(labels: Tuple[Tuple[str, str], ...]) -> str:
    if not labels:
        return ""
    joined = ",".join(f'{name}="{_escape_label(value)}"' for name, value in labels)
    return "{" + joined + "}"


class MetricsRegistry:
    """Thread-safe counters owned by the application and cleared on shutdown."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._started_at = time.time()
        self._http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
        self._http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
        self._http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
        self._counters: Dict[str, Dict[Tuple[Tuple[str, str], ...], int]] = defaultdict(lambda: defaultdict(int))

    def record_http_request(self, *, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        status = str(status_code)
        method_label = method.upper()
        path_label = path or "unknown"
        duration = max(duration_seconds, 0.0)

        with self._lock:
            self._http_requests_total[(method_label, path_label, status)] += 1
            self._http_request_duration_sum[(method_label, path_label)] += duration
            self._http_request_duration_count[(method_label, path_label)] += 1

    def _increment(self, name: str, count: int, **labels: str) -> None:
        if count <= 0:
            return
        key = tuple(sorted((label, _normalize_label(value)) for label, value in labels.items()))
        with self._lock:
            self._counters[name][key] += int(count)

    def record_rate_limit_block(self, *, kind: str) -> None:
        self._increment("postflow_rate_limit_block_total", 1, kind=kind)

    def record_platform_publish(self, *, platform: str, outcome: str, count: int = 1) -> None:
        self._increment("postflow_platform_publish_total", count, platform=platform, outcome=outcome)

    def record_credits(self, *, operation: str, amount: int) -> None:
        self._increment("postflow_credits_total", amount, operation=operation)

    def record_job(self, *, kind: str, status: str) -> None:
        self._increment("postflow_jobs_total", 1, kind=kind, status=status)

    def record_sweep_post(self, *, outcome: str, count: int = 1) -> None:
        self._increment("postflow_sweep_posts_total", count, outcome=outcome)

    def counter_value(self, name: str, **labels: str) -> int:
        key = tuple(sorted((label, _normalize_label(value)) for label, value in labels.items()))
        with self._lock:
            return int(self._counters.get(name, {}).get(key, 0))

    def render_prometheus(self, *, app_name: str, app_version: str, env: str) -> str:
        uptime = max(time.time() - self._started_at, 0.0)

        with self._lock:
            http_total = dict(self._http_requests_total)
            duration_sum = dict(self._http_request_duration_sum)
            duration_count = dict(self._http_request_duration_count)
            counters = {name: dict(values) for name, values in self._counters.items()}

        lines = [
            "# HELP postflow_build_info Build metadata.",
            "# TYPE postflow_build_info gauge",
            (
                f'postflow_build_info{{app_name="{_escape_label(app_name)}",'
                f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
            ),
            "# HELP postflow_process_uptime_seconds Process uptime in seconds.",
            "# TYPE postflow_process_uptime_seconds gauge",
            f"postflow_process_uptime_seconds {uptime:.6f}",
            "# HELP postflow_http_requests_total Total HTTP requests.",
            "# TYPE postflow_http_requests_total counter",
        ]
        for (method, path, status), value in sorted(http_total.items()):
            lines.append(
                f'postflow_http_requests_total{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}",status="{_escape_label(status)}"}} {value}'
            )

        lines.extend(
            [
                "# HELP postflow_http_request_duration_seconds Request duration summary.",
                "# TYPE postflow_http_request_duration_seconds summary",
            ]
        )
        for (method, path), value in sorted(duration_sum.items()):
            lines.append(
                f'postflow_http_request_duration_seconds_sum{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value:.6f}'
            )
        for (method, path), value in sorted(duration_count.items()):
            lines.append(
                f'postflow_http_request_duration_seconds_count{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value}'
            )

        for name, help_text in _COUNTER_HELP.items():
            lines.extend([f"# HELP {name} {help_text}", f"# TYPE {name} counter"])
            for labels, value in sorted(counters.get(name, {}).items()):
                lines.append(f"{name}{_format_labels(labels)} {value}")

        lines.append("")
        return "\n".join(lines)

    def clear(self) -> None:
        with self._lock:
            self._http_requests_total.clear()
            self._http_request_duration_sum.clear()
            self._http_request_duration_count.clear()
            self._counters.clear()
        self._started_at = time.time()
