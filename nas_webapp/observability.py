from __future__ import annotations

import re
import threading
from datetime import datetime, timezone
from typing import Any


class MetricsCollector:
    """Process-local metrics for the task engine.

    Task lifecycle is tracked as labelled series: admissions per action,
    terminal outcomes per action and status, and run time per action. Plain
    counters and gauges hold the rest (busy rejections, retries, pool and
    lock occupancy).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, int] = {}
        self._gauges: dict[str, float] = {}
        self._admitted: dict[str, int] = {}
        self._finished: dict[tuple[str, str], int] = {}
        self._durations: dict[str, tuple[float, int]] = {}

    def record_count(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counts[name] = self._counts.get(name, 0) + value

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def record_task_admitted(self, action: str) -> None:
        with self._lock:
            self._admitted[action] = self._admitted.get(action, 0) + 1

    def record_task_finished(self, action: str, status: str, seconds: float) -> None:
        with self._lock:
            key = (action, status)
            self._finished[key] = self._finished.get(key, 0) + 1
            total, count = self._durations.get(action, (0.0, 0))
            self._durations[action] = (total + seconds, count + 1)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            finished: dict[str, dict[str, int]] = {}
            for (action, status), count in self._finished.items():
                finished.setdefault(action, {})[status] = count
            durations = {
                action: {"count": count, "sum_seconds": total, "avg_seconds": total / count}
                for action, (total, count) in self._durations.items()
            }
            return {
                "counts": dict(self._counts),
                "gauges": dict(self._gauges),
                "tasks": {
                    "admitted": dict(self._admitted),
                    "finished": finished,
                    "durations": durations,
                },
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }


def _normalize_metric_name(name: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9_]", "_", name.replace(":", "_"))
    sanitized = re.sub(r"_+", "_", sanitized).strip("_")
    if not sanitized:
        return "metric"
    if sanitized[0].isdigit():
        sanitized = f"m_{sanitized}"
    return sanitized.lower()


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _labels(**labels: str) -> str:
    rendered = ",".join(f'{key}="{_escape_label(str(value))}"' for key, value in labels.items())
    return "{" + rendered + "}"


def _render_task_series(tasks: dict[str, Any], prefix: str) -> list[str]:
    lines: list[str] = []

    admitted = tasks.get("admitted") or {}
    if admitted:
        metric_name = f"{prefix}_tasks_admitted_total"
        lines.append(f"# TYPE {metric_name} counter")
        for action in sorted(admitted):
            lines.append(f"{metric_name}{_labels(action=action)} {int(admitted[action])}")

    finished = tasks.get("finished") or {}
    if finished:
        metric_name = f"{prefix}_tasks_finished_total"
        lines.append(f"# TYPE {metric_name} counter")
        for action in sorted(finished):
            for status in sorted(finished[action]):
                value = int(finished[action][status])
                lines.append(f"{metric_name}{_labels(action=action, status=status)} {value}")

    durations = tasks.get("durations") or {}
    if durations:
        metric_name = f"{prefix}_task_duration_seconds"
        lines.append(f"# TYPE {metric_name} summary")
        for action in sorted(durations):
            labels = _labels(action=action)
            lines.append(f"{metric_name}_sum{labels} {float(durations[action]['sum_seconds']):.6f}")
            lines.append(f"{metric_name}_count{labels} {int(durations[action]['count'])}")
    return lines


def render_prometheus(snapshot: dict[str, Any], *, prefix: str = "nas") -> str:
    lines: list[str] = []

    tasks = snapshot.get("tasks")
    if isinstance(tasks, dict):
        lines.extend(_render_task_series(tasks, prefix))

    counts = snapshot.get("counts")
    if isinstance(counts, dict):
        for name in sorted(counts):
            metric_name = f"{prefix}_{_normalize_metric_name(str(name))}"
            lines.append(f"# TYPE {metric_name} counter")
            lines.append(f"{metric_name} {int(counts[name])}")

    gauges = snapshot.get("gauges")
    if isinstance(gauges, dict):
        for name in sorted(gauges):
            metric_name = f"{prefix}_{_normalize_metric_name(str(name))}"
            lines.append(f"# TYPE {metric_name} gauge")
            lines.append(f"{metric_name} {float(gauges[name]):.6f}")

    if not lines:
        lines.append("# no metrics recorded")
    return "\n".join(lines) + "\n"
