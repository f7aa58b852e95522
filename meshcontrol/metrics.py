"""Labelled counters describing registrations and update traffic."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Sequence

PROMETHEUS_NAMESPACE = "headscale"


class CounterVec:
    """A family of monotonically increasing counters keyed by label values."""

    def __init__(
        self,
        namespace: str,
        name: str,
        help_text: str,
        label_names: Sequence[str],
    ) -> None:
        self.namespace = namespace
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()
        self._values: defaultdict[tuple[str, ...], float] = defaultdict(float)

    @property
    def full_name(self) -> str:
        return f"{self.namespace}_{self.name}" if self.namespace else self.name

    def _key(self, label_values: Sequence[str]) -> tuple[str, ...]:
        if len(label_values) != len(self.label_names):
            raise ValueError(
                f"{self.full_name} expects {len(self.label_names)} label values, "
                f"got {len(label_values)}"
            )
        return tuple(str(v) for v in label_values)

    def inc(self, *args: str) -> None:
        """Add one to the counter for the given label values."""
        key = self._key(args)
        with self._lock:
            self._values[key] += 1

    def value(self, *args: str) -> float:
        """Current count for the given label values."""
        key = self._key(args)
        with self._lock:
            return self._values.get(key, 0.0)


# High cardinality (user x node); may become opt-in.
node_registrations = CounterVec(
    PROMETHEUS_NAMESPACE,
    "node_registrations_total",
    "The total amount of registered node attempts",
    ("action", "auth", "status", "user"),
)

update_requests_sent_to_node = CounterVec(
    PROMETHEUS_NAMESPACE,
    "update_request_sent_to_node_total",
    "The number of calls/messages issued on a specific nodes update channel",
    ("user", "node", "status"),
)