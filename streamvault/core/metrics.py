"""Process-local counters rendered in the Prometheus text format."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import DefaultDict, Dict, List, Tuple


PREFIX = "streamvault"

LabelValues = Tuple[str, ...]


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _label(value: str) -> str:
    return (value or "").strip() or "unknown"


def _format_labels(names: LabelValues, values: LabelValues) -> str:
    pairs = ",".join(f'{name}="{_escape_label(value)}"' for name, value in zip(names, values))
    return "{" + pairs + "}"


class _Family:
    def __init__(self, name: str, help_text: str, label_names: LabelValues, kind: str = "counter") -> None:
        self.name = f"{PREFIX}_{name}"
        self.help_text = help_text
        self.label_names = label_names
        self.kind = kind
        self.values: DefaultDict[LabelValues, float] = defaultdict(float)

    def header(self) -> List[str]:
        return [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} {self.kind}"]

    def samples(self, snapshot: Dict[LabelValues, float], *, suffix: str = "") -> List[str]:
        lines = []
        for labels, value in sorted(snapshot.items()):
            rendered = f"{int(value)}" if float(value).is_integer() else f"{value:.6f}"
            lines.append(f"{self.name}{suffix}{_format_labels(self.label_names, labels)} {rendered}")
        return lines


_lock = Lock()
_started_at = time.time()

_http_requests = _Family("http_requests_total", "Total HTTP requests.", ("method", "path", "status"))
_http_duration = _Family(
    "http_request_duration_seconds",
    "Request duration summary.",
    ("method", "path"),
    kind="summary",
)
_http_duration_count: DefaultDict[LabelValues, float] = defaultdict(float)

_tokens_issued = _Family("tokens_issued_total", "Playback token issuance outcomes.", ("outcome",))
_token_validations = _Family("token_validations_total", "Playback token validation outcomes by reason.", ("outcome",))
_queue_items = _Family("queue_items_total", "Queue item outcomes by action.", ("action", "outcome"))
_remote_requests = _Family(
    "remote_requests_total", "Remote streaming service requests by operation.", ("operation", "outcome")
)
_reconciliation_issues = _Family("reconciliation_issues_total", "Issues found by reconciliation runs.", ("kind",))
_source_cleanups = _Family("source_cleanups_total", "Local source file cleanup outcomes.", ("outcome",))

_COUNTERS = (
    _tokens_issued,
    _token_validations,
    _queue_items,
    _remote_requests,
    _reconciliation_issues,
    _source_cleanups,
)


def _increment(family: _Family, labels: LabelValues, amount: float = 1) -> None:
    with _lock:
        family.values[labels] += amount


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    route = (method.upper(), path or "unknown")
    with _lock:
        _http_requests.values[route + (str(status_code),)] += 1
        _http_duration.values[route] += max(duration_seconds, 0.0)
        _http_duration_count[route] += 1


def record_token_issued(*, outcome: str) -> None:
    _increment(_tokens_issued, (_label(outcome),))


def record_token_validation(*, outcome: str) -> None:
    _increment(_token_validations, (_label(outcome),))


def record_queue_item(*, action: str, outcome: str) -> None:
    _increment(_queue_items, (_label(action), _label(outcome)))


def record_remote_request(*, operation: str, outcome: str) -> None:
    _increment(_remote_requests, (_label(operation), _label(outcome)))


def record_reconciliation_issue(*, kind: str, count: int = 1) -> None:
    if count > 0:
        _increment(_reconciliation_issues, (_label(kind),), int(count))


def record_source_cleanup(*, outcome: str) -> None:
    _increment(_source_cleanups, (_label(outcome),))


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    with _lock:
        requests = dict(_http_requests.values)
        duration_sum = dict(_http_duration.values)
        duration_count = dict(_http_duration_count)
        counters = [(family, dict(family.values)) for family in _COUNTERS]

    build_labels = _format_labels(("app_name", "version", "env"), (app_name, app_version, env))
    lines = [
        f"# HELP {PREFIX}_build_info Build metadata.",
        f"# TYPE {PREFIX}_build_info gauge",
        f"{PREFIX}_build_info{build_labels} 1",
        f"# HELP {PREFIX}_process_uptime_seconds Process uptime in seconds.",
        f"# TYPE {PREFIX}_process_uptime_seconds gauge",
        f"{PREFIX}_process_uptime_seconds {max(time.time() - _started_at, 0.0):.6f}",
    ]
    lines += _http_requests.header() + _http_requests.samples(requests)
    lines += _http_duration.header()
    lines += [
        f"{_http_duration.name}_sum{_format_labels(_http_duration.label_names, key)} {value:.6f}"
        for key, value in sorted(duration_sum.items())
    ]
    lines += _http_duration.samples(duration_count, suffix="_count")
    for family, snapshot in counters:
        lines += family.header() + family.samples(snapshot)
    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at
    with _lock:
        for family in (_http_requests, _http_duration) + _COUNTERS:
            family.values.clear()
        _http_duration_count.clear()
    _started_at = time.time()
