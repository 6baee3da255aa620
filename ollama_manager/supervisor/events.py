"""
Event delivery from the ServiceSupervisor to its subscribers.

Three kinds of events exist: status changes (a ServiceState), resident-memory
changes (bytes) and service errors (a human-readable description). Any number
of callbacks may subscribe to each kind. Delivery is serialized, so every
subscriber sees every event once and in emission order.
"""
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger(__name__)


class EventKind(Enum):
    STATUS_CHANGED = "statusChanged"
    RAM_USAGE_CHANGED = "ramUsageChanged"
    SERVICE_ERROR = "serviceError"


class Subscription:
    """Handle returned by EventChannel.subscribe(); removes exactly one callback."""

    def __init__(self, channel: "EventChannel", kind: EventKind, callback: Callable[[Any], None]):
        self.channel = channel
        self.kind = kind
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stops delivery to this callback. Calling it twice is harmless."""
        if not self._active:
            return
        self._active = False
        self.channel._remove(self)


class EventChannel:
    """Thread-safe publish/subscribe hub for supervisor notifications."""

    def __init__(self) -> None:
        self._subscriptions: Dict[EventKind, List[Subscription]] = {kind: [] for kind in EventKind}
        self._lock = threading.Lock()
        # Reentrant so a callback may emit without deadlocking its own thread.
        self._dispatch_lock = threading.RLock()

    def subscribe(self, kind: EventKind, callback: Callable[[Any], None]) -> Subscription:
        subscription = Subscription(self, kind, callback)
        with self._lock:
            self._subscriptions[kind].append(subscription)
        return subscription

    def on_status_changed(self, callback: Callable[[Any], None]) -> Subscription:
        return self.subscribe(EventKind.STATUS_CHANGED, callback)

    def on_ram_usage_changed(self, callback: Callable[[int], None]) -> Subscription:
        return self.subscribe(EventKind.RAM_USAGE_CHANGED, callback)

    def on_service_error(self, callback: Callable[[str], None]) -> Subscription:
        return self.subscribe(EventKind.SERVICE_ERROR, callback)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions[subscription.kind]
            if subscription in subscribers:
                subscribers.remove(subscription)

    def remove_all_listeners(self, kind: Optional[EventKind] = None) -> None:
        """
        Removes every subscription of one kind, or of all kinds when `kind` is None.

        :param kind: The event kind to clear, or None for a full teardown.
        """
        kinds = [kind] if kind is not None else list(EventKind)
        with self._lock:
            for k in kinds:
                for subscription in self._subscriptions[k]:
                    subscription._active = False
                self._subscriptions[k] = []

    def listener_count(self, kind: EventKind) -> int:
        with self._lock:
            return len(self._subscriptions[kind])

    def emit(self, kind: EventKind, payload: Any) -> None:
        """
        Delivers `payload` to every current subscriber of `kind`.
        A failing callback is logged and does not affect the others.
        """
        with self._dispatch_lock:
            with self._lock:
                subscribers = list(self._subscriptions[kind])
            for subscription in subscribers:
                if not subscription.active:
                    continue
                try:
                    subscription.callback(payload)
                except Exception as e:
                    log.error(f"Subscriber for '{kind.value}' raised an exception: {e}", exc_info=True)


class SubscriptionGroup:
    """
    A scoped set of subscriptions on one channel.

    Every bind() releases the previously bound set first, so re-attaching a
    consumer never leaks handlers. The generation counter increases on each
    bind and release; callbacks wrapped by the group drop events that arrive
    for a generation that is no longer current.
    """

    def __init__(self, channel: EventChannel):
        self.channel = channel
        self.generation = 0
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def bind(self, status: Callable = None, ram_usage: Callable = None, error: Callable = None) -> int:
        """
        Replaces the group's subscriptions with the given callbacks.

        :return: The generation number of the new binding.
        """
        with self._lock:
            self._release_locked()
            generation = self.generation
            bindings = (
                (EventKind.STATUS_CHANGED, status),
                (EventKind.RAM_USAGE_CHANGED, ram_usage),
                (EventKind.SERVICE_ERROR, error),
            )
            for kind, callback in bindings:
                if callback is None:
                    continue
                self._subscriptions.append(
                    self.channel.subscribe(kind, self._guard(generation, callback))
                )
            return generation

    def _guard(self, generation: int, callback: Callable) -> Callable:
        def guarded(payload):
            if generation == self.generation:
                callback(payload)
        return guarded

    def _release_locked(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        self.generation += 1

    def release(self) -> None:
        with self._lock:
            self._release_locked()

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __enter__(self) -> "SubscriptionGroup":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.release()
