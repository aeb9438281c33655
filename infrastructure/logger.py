"""
THREADLOOM MUTATION LOG - Recent Change History

Logging setup plus an in-memory ring buffer of committed change events.

Architecture:
- configure_logging: One-call stdlib logging setup for the "threadloom" tree
- MutationLog: Thread-safe ring buffer fed by a ChangeNotifier subscription

Usage:
    configure_logging("DEBUG")

    log = MutationLog(max_size=1000)
    log.attach(graph.notifier)
    graph.add_message(...)

    for event in log.get_last(10):
        print(f"{event.timestamp}: {event.type.value}")

Design:
- Bounded: old events fall off the end (deque maxlen)
- Passive: the log only observes committed events, it never blocks a mutation
"""
import logging
import threading
from collections import deque
from typing import List, Optional, Union

from infrastructure.config import ThreadloomConfig
from infrastructure.event_bus import ChangeEvent, ChangeEventType, ChangeNotifier, Subscription


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Module loggers use __name__ (core.*, infrastructure.*); the notifier logs as threadloom.*
LOGGER_NAMES = ("threadloom", "core", "infrastructure")


def configure_logging(level: Union[str, int] = "INFO") -> logging.Logger:
    """
    Configure the project logger trees (see LOGGER_NAMES).

    Idempotent: calling it again only changes the level.

    Returns:
        The "threadloom" logger
    """
    level = level if isinstance(level, int) else level.upper()
    for name in LOGGER_NAMES:
        tree = logging.getLogger(name)
        tree.setLevel(level)
        if not any(getattr(h, "_threadloom", False) for h in tree.handlers):
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            handler._threadloom = True
            tree.addHandler(handler)

    return logging.getLogger("threadloom")


def configure_from_config(config: ThreadloomConfig) -> logging.Logger:
    """configure_logging() at the level named in [logging]."""
    return configure_logging(config.logging.level)


# =============================================================================
# MUTATION LOG
# =============================================================================

class MutationLog:
    """
    Thread-safe ring buffer for recent change events.

    Provides O(1) append and O(n) query for filtering.
    """

    def __init__(self, max_size: int = 10000):
        self._buffer: deque[ChangeEvent] = deque(maxlen=max_size)
        self._lock = threading.RLock()
        self._subscription: Optional[Subscription] = None

    @classmethod
    def from_config(cls, config: ThreadloomConfig) -> "MutationLog":
        return cls(max_size=config.logging.mutation_buffer_size)

    def attach(self, notifier: ChangeNotifier) -> Subscription:
        """
        Start recording every event the notifier publishes.

        Re-attaching detaches from the previous notifier first.
        """
        self.detach()
        self._subscription = notifier.subscribe_all(self.append)
        return self._subscription

    def detach(self) -> None:
        """Stop recording."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def append(self, event: ChangeEvent) -> None:
        """Add an event to the buffer."""
        with self._lock:
            self._buffer.append(event)

    def get_since(self, timestamp: float) -> List[ChangeEvent]:
        """Get all events published at or after a Unix timestamp."""
        with self._lock:
            return [e for e in self._buffer if e.timestamp >= timestamp]

    def get_last(self, n: int) -> List[ChangeEvent]:
        """Get the last n events, oldest first."""
        with self._lock:
            items = list(self._buffer)
            return items[-n:] if n > 0 else []

    def get_by_type(self, event_type: Union[ChangeEventType, str]) -> List[ChangeEvent]:
        """Get all buffered events of one type."""
        event_type = ChangeEventType(event_type)
        with self._lock:
            return [e for e in self._buffer if e.type == event_type]

    def get_by_branch(self, branch_id: str) -> List[ChangeEvent]:
        """Get all buffered events whose payload mentions a branch id."""
        with self._lock:
            return [
                e for e in self._buffer
                if branch_id in (
                    e.payload.get("branch_id"),
                    e.payload.get("result_branch_id"),
                    e.payload.get("source_branch_id"),
                    e.payload.get("target_branch_id"),
                )
            ]

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)
