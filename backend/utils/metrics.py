from __future__ import annotations

import threading
from typing import Any, Dict, Iterable, List, Sequence, Tuple


_Labels = Tuple[str, ...]


def _escape(val: Any) -> str:
    return str(val).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _label_str(names: Sequence[str], values: _Labels) -> str:
    if not names:
        return ""
    inner = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(names, values))
    return "{" + inner + "}"


class Counter:
    """Monotonic counter family keyed by a fixed set of label names."""

    kind = "counter"

    def __init__(self, name: str, help_text: str, labels: Sequence[str] = ()) -> None:
        self.name = str(name)
        self.help_text = str(help_text)
        self.labels = tuple(labels)
        self._lock = threading.Lock()
        self._values: Dict[_Labels, float] = {}

    def _key(self, labels: Dict[str, Any]) -> _Labels:
        return tuple(str(labels.get(n, "")) for n in self.labels)

    def inc(self, amount: float = 1.0, **labels: Any) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, **labels: Any) -> float:
        with self._lock:
            return float(self._values.get(self._key(labels), 0.0))

    def total(self) -> float:
        with self._lock:
            return float(sum(self._values.values()))

    def reset(self) -> None:
        with self._lock:
            self._values.clear()

    def samples(self) -> Iterable[Tuple[str, _Labels, float]]:
        with self._lock:
            items = sorted(self._values.items())
        for key, val in items:
            yield self.name, key, val


class Summary(Counter):
    """Count and sum of observations (e.g. durations in seconds)."""

    kind = "summary"

    def __init__(self, name: str, help_text: str, labels: Sequence[str] = ()) -> None:
        super().__init__(name, help_text, labels)
        self._counts: Dict[_Labels, int] = {}

    def observe(self, value: float, **labels: Any) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + max(0.0, float(value))
            self._counts[key] = self._counts.get(key, 0) + 1

    def count(self, **labels: Any) -> int:
        with self._lock:
            return int(self._counts.get(self._key(labels), 0))

    def reset(self) -> None:
        with self._lock:
            self._values.clear()
            self._counts.clear()

    def samples(self) -> Iterable[Tuple[str, _Labels, float]]:
        with self._lock:
            keys = sorted(self._counts.keys())
            counts = dict(self._counts)
            sums = dict(self._values)
        for key in keys:
            yield f"{self.name}_count", key, float(counts[key])
            yield f"{self.name}_sum", key, float(sums.get(key, 0.0))


class Registry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: List[Counter] = []

    def register(self, metric: Counter) -> Counter:
        with self._lock:
            self._metrics.append(metric)
        return metric

    def counter(self, name: str, help_text: str, labels: Sequence[str] = ()) -> Counter:
        return self.register(Counter(name, help_text, labels))

    def summary(self, name: str, help_text: str, labels: Sequence[str] = ()) -> Summary:
        metric = Summary(name, help_text, labels)
        self.register(metric)
        return metric

    def reset(self) -> None:
        with self._lock:
            metrics = list(self._metrics)
        for m in metrics:
            m.reset()

    def render(self) -> str:
        """Prometheus text exposition format (0.0.4)."""
        with self._lock:
            metrics = list(self._metrics)
        lines: List[str] = []
        for m in metrics:
            lines.append(f"# HELP {m.name} {m.help_text}")
            lines.append(f"# TYPE {m.name} {m.kind}")
            for sample_name, key, val in m.samples():
                num = f"{val:.6f}" if sample_name.endswith("_sum") else str(int(val))
                lines.append(f"{sample_name}{_label_str(m.labels, key)} {num}")
        return "\n".join(lines) + "\n"


REGISTRY = Registry()

RATE_LIMIT_REQUESTS = REGISTRY.counter(
    "medialink_rate_limit_requests_total",
    "Rate limit decisions.",
    ("scope", "decision"),
)
OUTBOUND_REQUEST_DURATION = REGISTRY.summary(
    "medialink_outbound_request_duration_seconds",
    "Outbound request duration summary.",
    ("target_kind", "method"),
)
OUTBOUND_FAILURES = REGISTRY.counter(
    "medialink_outbound_failures_total",
    "Outbound request failures.",
    ("target_kind", "method", "reason"),
)
OUTBOUND_RETRIES = REGISTRY.counter(
    "medialink_outbound_retries_total",
    "Outbound retries performed.",
    ("target_kind", "method"),
)
FLOW_ERRORS = REGISTRY.counter(
    "medialink_flow_errors_total",
    "Request flow failures by error code.",
    ("code",),
)
CLAIM_TOKENS_ISSUED = REGISTRY.counter(
    "medialink_claim_tokens_issued_total", "Claim tokens issued."
)
AGENTS_LINKED = REGISTRY.counter(
    "medialink_agents_linked_total", "Agents linked through a claim token."
)
INGEST_ITEMS = REGISTRY.counter(
    "medialink_ingest_items_total",
    "Agent ingest items by result status.",
    ("status",),
)
PLAYBACK_REPORTS = REGISTRY.counter(
    "medialink_playback_reports_total",
    "Playback reports by outcome.",
    ("outcome",),
)
TMDB_ENRICH_ITEMS = REGISTRY.counter(
    "medialink_tmdb_enrich_items_total",
    "TMDB enrichment items by result status.",
    ("status",),
)
