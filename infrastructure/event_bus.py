"""
Change notifier for decoupled conversation-graph notifications.

Follows the publisher-subscriber pattern without coupling the graph to its
consumers (views, loggers, persistence adapters).

Design Principles:
- Explicit observer registry: event name -> ordered callback list
- One registry per graph instance, never a module-level singleton
- Synchronous dispatch in registration order
- A failing callback is logged and skipped; the rest still run and the
  publisher never sees the exception
- Type-safe events via msgspec

Usage:
    notifier = ChangeNotifier()

    def on_message(event: ChangeEvent):
        print(f"Message added: {event.payload['message_id']}")

    sub = notifier.subscribe(ChangeEventType.MESSAGE_ADDED, on_message)
    ...
    sub.unsubscribe()
"""
from typing import Callable, List, Dict, Any, Optional, Union
import msgspec
import time
from collections import defaultdict
import logging
from enum import Enum


logger = logging.getLogger("threadloom.event_bus")


class ChangeEventType(str, Enum):
    """Mutation events broadcast by the ChangeNotifier."""
    MESSAGE_ADDED = "message_added"
    BRANCH_CREATED = "branch_created"
    BRANCH_SWITCHED = "branch_switched"
    MERGE_COMPLETED = "merge_completed"
    # Secondary mutations
    CODE_LINKED = "code_linked"
    DOCUMENT_LINKED = "document_linked"
    BIDIRECTIONAL_LINK_CREATED = "bidirectional_link_created"
    BRANCH_RENAMED = "branch_renamed"
    BRANCH_ARCHIVED = "branch_archived"
    BRANCH_RESTORED = "branch_restored"
    CONVERSATION_CREATED = "conversation_created"


class ChangeEvent(msgspec.Struct, kw_only=True, frozen=True):
    """
    Event emitted after a graph mutation has been committed.

    Attributes:
        type: Type of event (message_added, branch_created, ...)
        payload: Event-specific data (message_id, branch_id, ...)
        timestamp: Unix timestamp when the event was published
        source: Component that published it ("conversation_graph", ...)
    """
    type: ChangeEventType
    payload: Dict[str, Any]
    timestamp: float
    source: str


Handler = Callable[[ChangeEvent], Any]


class Subscription:
    """
    Disposable handle returned by subscribe().

    unsubscribe() is idempotent. Also usable as a context manager:

        with notifier.subscribe_all(handler):
            graph.add_message(...)
    """

    def __init__(self, notifier: "ChangeNotifier", event_types: List[Optional[ChangeEventType]], handler: Handler):
        self._notifier = notifier
        self._event_types = event_types
        self._handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        for event_type in self._event_types:
            self._notifier._remove(event_type, self._handler)
        self._active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class ChangeNotifier:
    """
    Per-graph observer registry for mutation events.

    Thread Safety:
        NOT thread-safe. Subscribing while another thread publishes needs
        external locking; publishing iterates over a copy of the callback
        list, so a handler may unsubscribe itself during dispatch.

    Performance:
        - O(n) dispatch per event, n = subscribers of that type + wildcard
    """

    def __init__(self, source: str = "conversation_graph"):
        self._source = source
        self._subscribers: Dict[ChangeEventType, List[Handler]] = defaultdict(list)
        # Wildcard handlers receive every event type
        self._wildcard: List[Handler] = []

    def subscribe(
        self,
        event_type: Union[ChangeEventType, str],
        handler: Handler,
    ) -> Subscription:
        """
        Register a synchronous handler for one event type.

        The same handler registered twice is called twice.

        Raises:
            ValueError: If event_type names no known event
        """
        event_type = ChangeEventType(event_type)
        self._subscribers[event_type].append(handler)
        logger.debug(f"Subscribed handler to {event_type.value}")
        return Subscription(self, [event_type], handler)

    def subscribe_all(self, handler: Handler) -> Subscription:
        """Register a handler for every event type."""
        self._wildcard.append(handler)
        logger.debug("Subscribed wildcard handler")
        return Subscription(self, [None], handler)

    def publish(self, event_type: ChangeEventType, payload: Dict[str, Any]) -> ChangeEvent:
        """
        Build an event and dispatch it to all subscribers.

        Type-specific handlers run first, in registration order, then
        wildcard handlers in registration order. Exceptions in handlers are
        logged but don't propagate.

        Returns:
            The dispatched ChangeEvent
        """
        event = ChangeEvent(
            type=event_type,
            payload=payload,
            timestamp=time.time(),
            source=self._source,
        )
        logger.debug(
            f"Publishing {event.type.value} from {event.source} "
            f"(payload keys: {list(event.payload.keys())})"
        )

        for handler in list(self._subscribers[event.type]) + list(self._wildcard):
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Error in handler for {event.type.value}: {e}",
                    exc_info=True
                )

        return event

    def _remove(self, event_type: Optional[ChangeEventType], handler: Handler) -> None:
        handlers = self._wildcard if event_type is None else self._subscribers[event_type]
        # Remove one registration; duplicates registered separately stay
        if handler in handlers:
            handlers.remove(handler)
            logger.debug(
                f"Unsubscribed handler from {event_type.value if event_type else '*'}"
            )

    def clear_subscribers(self, event_type: Optional[ChangeEventType] = None) -> None:
        """
        Clear all subscribers for an event type (or all types and wildcards).

        Warning:
            This is primarily for testing.
        """
        if event_type is None:
            self._subscribers.clear()
            self._wildcard.clear()
            logger.info("Cleared all change subscribers")
        else:
            self._subscribers[ChangeEventType(event_type)].clear()
            logger.info(f"Cleared subscribers for {ChangeEventType(event_type).value}")

    def subscriber_count(self, event_type: Optional[ChangeEventType] = None) -> int:
        """
        Count subscribers for an event type (wildcards included), or all
        registrations when event_type is None.
        """
        if event_type is None:
            total = sum(len(handlers) for handlers in self._subscribers.values())
            return total + len(self._wildcard)
        return len(self._subscribers[ChangeEventType(event_type)]) + len(self._wildcard)
