"""Prometheus-format metrics for the assistant relay.

Counts chat requests by status, outbound frames by type and stream
outcomes, and tracks stream duration as a histogram.  Values live in
process memory behind a lock and are rendered on ``/metrics``.
"""

import threading
from collections import defaultdict

from fastapi import APIRouter, Response

_lock = threading.Lock()
_enabled = True

LabelKey = tuple[tuple[str, str], ...]

DURATION_BUCKETS = [0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]

_counters: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
_histogram_sums: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
_histogram_counts: dict[str, dict[LabelKey, int]] = defaultdict(lambda: defaultdict(int))
_histogram_buckets: dict[str, dict[LabelKey, list[int]]] = defaultdict(
    lambda: defaultdict(lambda: [0] * len(DURATION_BUCKETS)),
)


def set_enabled(enabled: bool) -> None:
    global _enabled
    _enabled = enabled


def inc_counter(name: str, labels: dict[str, str], value: float = 1.0) -> None:
    if not _enabled:
        return
    key: LabelKey = tuple(sorted(labels.items()))
    with _lock:
        _counters[name][key] += value


def observe_histogram(name: str, labels: dict[str, str], value: float) -> None:
    if not _enabled:
        return
    key: LabelKey = tuple(sorted(labels.items()))
    with _lock:
        _histogram_sums[name][key] += value
        _histogram_counts[name][key] += 1
        # per-bucket counts; render_metrics accumulates them
        buckets = _histogram_buckets[name][key]
        for i, bound in enumerate(DURATION_BUCKETS):
            if value <= bound:
                buckets[i] += 1
                break


def counter_value(name: str, labels: dict[str, str]) -> float:
    key: LabelKey = tuple(sorted(labels.items()))
    with _lock:
        return _counters.get(name, {}).get(key, 0.0)


def reset_metrics() -> None:
    with _lock:
        _counters.clear()
        _histogram_sums.clear()
        _histogram_counts.clear()
        _histogram_buckets.clear()


def _format_labels(label_pairs: LabelKey) -> str:
    if not label_pairs:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in label_pairs) + "}"


def _with_label(label_pairs: LabelKey, key: str, value: str) -> LabelKey:
    merged = dict(label_pairs)
    merged[key] = value
    return tuple(sorted(merged.items()))


def render_metrics() -> str:
    lines: list[str] = []
    with _lock:
        for name, label_map in sorted(_counters.items()):
            lines.append(f"# TYPE {name} counter")
            for label_pairs, value in sorted(label_map.items()):
                lines.append(f"{name}{_format_labels(label_pairs)} {value}")

        for name in sorted(_histogram_sums.keys()):
            lines.append(f"# TYPE {name} histogram")
            for label_pairs in sorted(_histogram_sums[name].keys()):
                cumulative = 0
                for bound, count in zip(
                    DURATION_BUCKETS, _histogram_buckets[name][label_pairs], strict=True
                ):
                    cumulative += count
                    bucket_labels = _with_label(label_pairs, "le", str(bound))
                    lines.append(f"{name}_bucket{_format_labels(bucket_labels)} {cumulative}")
                total = _histogram_counts[name][label_pairs]
                inf_labels = _with_label(label_pairs, "le", "+Inf")
                lines.append(f"{name}_bucket{_format_labels(inf_labels)} {total}")
                base = _format_labels(label_pairs)
                lines.append(f"{name}_sum{base} {_histogram_sums[name][label_pairs]}")
                lines.append(f"{name}_count{base} {total}")

    lines.append("")
    return "\n".join(lines)


# -- Relay helpers --


def record_request(status_code: int) -> None:
    inc_counter("relay_requests_total", {"status": str(status_code)})


def record_frame(frame_type: str) -> None:
    inc_counter("relay_frames_total", {"type": frame_type})


def record_stream_outcome(outcome: str, duration_s: float) -> None:
    inc_counter("relay_stream_outcomes_total", {"outcome": outcome})
    observe_histogram("relay_stream_duration_seconds", {"outcome": outcome}, duration_s)


metrics_router = APIRouter()


@metrics_router.get("/metrics")
def prometheus_metrics() -> Response:
    return Response(
        content=render_metrics(),
        media_type="text/plain; charset=utf-8",
    )
