"""Fan-out of state updates to the update channels of connected nodes."""

from __future__ import annotations

import logging
import threading
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class UpdateChannel(Protocol):
    def put(self, item: Any) -> None: ...


class Notifier:
    """Keeps one update channel per machine key and broadcasts to them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._nodes: dict[str, UpdateChannel] = {}

    def add_node(self, machine_key: str, channel: UpdateChannel) -> None:
        """Register (or replace) the channel for ``machine_key``."""
        with self._lock:
            self._nodes[machine_key] = channel
            logger.debug("added channel for %s, %d open", machine_key, len(self._nodes))

    def remove_node(self, machine_key: str) -> None:
        """Forget the channel for ``machine_key``; unknown keys are ignored."""
        with self._lock:
            self._nodes.pop(machine_key, None)
            logger.debug("removed channel for %s, %d open", machine_key, len(self._nodes))

    def notify_all(self, update: Any) -> None:
        """Send ``update`` to every registered channel."""
        self.notify_with_ignore(update)

    def notify_with_ignore(self, update: Any, *args: str) -> None:
        """Send ``update`` to every channel whose key is not in ``args``."""
        ignore = set(args)
        with self._lock:
            targets = [(k, c) for k, c in self._nodes.items() if k not in ignore]
        for key, channel in targets:
            logger.debug("sending update to %s", key)
            channel.put(update)