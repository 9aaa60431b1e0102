"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_chunk_outcomes_total: Dict[Tuple[str, str], int] = defaultdict(int)
_provider_tasks_total: Dict[Tuple[str, str], int] = defaultdict(int)
_continuations_published_total: Dict[str, int] = defaultdict(int)
_ledger_transitions_total: Dict[str, int] = defaultdict(int)
_jobs_finalized_total: Dict[str, int] = defaultdict(int)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_chunk_outcome(*, outcome: str, reason: str = "") -> None:
    with _lock:
        _chunk_outcomes_total[(_normalize_label(outcome), _normalize_label(reason, fallback="none"))] += 1


def record_provider_task(*, provider: str, result: str, count: int = 1) -> None:
    if count <= 0:
        return
    with _lock:
        _provider_tasks_total[(_normalize_label(provider), _normalize_label(result))] += int(count)


def record_continuation_published(*, status: str = "published") -> None:
    with _lock:
        _continuations_published_total[_normalize_label(status)] += 1


def record_ledger_transition(*, status: str, count: int = 1) -> None:
    if count <= 0:
        return
    with _lock:
        _ledger_transitions_total[_normalize_label(status)] += int(count)


def record_job_finalized(*, status: str) -> None:
    with _lock:
        _jobs_finalized_total[_normalize_label(status)] += 1


def _render_counter(
    lines: list[str],
    *,
    name: str,
    help_text: str,
    label_names: Tuple[str, ...],
    values: Dict,
) -> None:
    lines.extend(
        [
            f"# HELP {name} {help_text}",
            f"# TYPE {name} counter",
        ]
    )
    for key, value in sorted(values.items()):
        label_values = key if isinstance(key, tuple) else (key,)
        labels = ",".join(
            f'{label}="{_escape_label(str(label_value))}"' for label, label_value in zip(label_names, label_values)
        )
        lines.append(f"{name}{{{labels}}} {value}")


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        chunk_outcomes_total = dict(_chunk_outcomes_total)
        provider_tasks_total = dict(_provider_tasks_total)
        continuations_published_total = dict(_continuations_published_total)
        ledger_transitions_total = dict(_ledger_transitions_total)
        jobs_finalized_total = dict(_jobs_finalized_total)

    lines = [
        "# HELP photoset_build_info Build metadata.",
        "# TYPE photoset_build_info gauge",
        (
            f'photoset_build_info{{app_name="{_escape_label(app_name)}",'
            f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
        ),
        "# HELP photoset_process_uptime_seconds Process uptime in seconds.",
        "# TYPE photoset_process_uptime_seconds gauge",
        f"photoset_process_uptime_seconds {uptime:.6f}",
    ]

    _render_counter(
        lines,
        name="photoset_http_requests_total",
        help_text="Total HTTP requests.",
        label_names=("method", "path", "status"),
        values=http_total,
    )

    lines.extend(
        [
            "# HELP photoset_http_request_duration_seconds Request duration summary.",
            "# TYPE photoset_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(
            (
                f'photoset_http_request_duration_seconds_sum{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value:.6f}'
            )
        )
    for (method, path), value in sorted(duration_count.items()):
        lines.append(
            (
                f'photoset_http_request_duration_seconds_count{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value}'
            )
        )

    _render_counter(
        lines,
        name="photoset_chunk_outcomes_total",
        help_text="Chunk dispatcher outcomes.",
        label_names=("outcome", "reason"),
        values=chunk_outcomes_total,
    )
    _render_counter(
        lines,
        name="photoset_provider_tasks_total",
        help_text="Provider task creation attempts by result.",
        label_names=("provider", "result"),
        values=provider_tasks_total,
    )
    _render_counter(
        lines,
        name="photoset_continuations_published_total",
        help_text="Continuation chunk publishes.",
        label_names=("status",),
        values=continuations_published_total,
    )
    _render_counter(
        lines,
        name="photoset_ledger_transitions_total",
        help_text="Ledger entries terminalized by the poller.",
        label_names=("status",),
        values=ledger_transitions_total,
    )
    _render_counter(
        lines,
        name="photoset_jobs_finalized_total",
        help_text="Jobs moved to a terminal status.",
        label_names=("status",),
        values=jobs_finalized_total,
    )

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _chunk_outcomes_total.clear()
        _provider_tasks_total.clear()
        _continuations_published_total.clear()
        _ledger_transitions_total.clear()
        _jobs_finalized_total.clear()
    _started_at = time.time()
