"""Notification fan-out from the synchronization core to its host.

Subscribers are kept in an ordered list per topic and can unsubscribe
explicitly. Delegate-style objects can be attached as a whole: every method
named after a topic is subscribed.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class Topic(str, Enum):
    """Notifications published by the core."""

    # Services
    DID_LOGIN = "did_login"  # (session)
    WILL_LOGOUT = "will_logout"  # ()
    DID_LOGOUT = "did_logout"  # ()

    # Rooms list
    DID_JOIN_ROOM = "did_join_room"  # (room)
    DID_PART_ROOM = "did_part_room"  # (room)
    DID_UPDATE_ROOM = "did_update_room"  # (room)

    # Single room
    DID_ROOM_MESSAGE = "did_room_message"  # (event, direction, state)
    DID_SELECT_ROOM = "did_select_room"  # (entry)


class Subscription:
    """Handle returned by EventBus.subscribe."""

    def __init__(self, bus: "EventBus", topic: Topic, callback: Callable[..., Any]):
        self.bus = bus
        self.topic = topic
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        """Stop receiving notifications. Safe to call twice."""
        if self.active:
            self.bus._remove(self)
            self.active = False


class EventBus:
    """Ordered per-topic subscriber registry.

    Attributes:
        single_subscriber: When True, subscribing to a topic replaces the
            current subscriber, matching one-delegate-per-slot semantics
    """

    def __init__(self, single_subscriber: bool = False):
        self.single_subscriber = single_subscriber
        self._subscribers: Dict[Topic, List[Subscription]] = {topic: [] for topic in Topic}

    def subscribe(self, topic: Topic, callback: Callable[..., Any]) -> Subscription:
        """Register a callback for a topic.

        Args:
            topic: Topic to listen to
            callback: Called with the topic's arguments; may return an awaitable

        Returns:
            Subscription handle for unsubscribing
        """
        subscription = Subscription(self, topic, callback)
        if self.single_subscriber:
            for existing in list(self._subscribers[topic]):
                existing.unsubscribe()
        self._subscribers[topic].append(subscription)
        return subscription

    def attach(self, delegate: Any) -> List[Subscription]:
        """Subscribe every method of ``delegate`` named after a topic.

        Returns:
            The created subscriptions, in topic order
        """
        subscriptions = []
        for topic in Topic:
            handler = getattr(delegate, topic.value, None)
            if callable(handler):
                subscriptions.append(self.subscribe(topic, handler))
        if not subscriptions:
            logger.warning(f"{type(delegate).__name__} handles no notification topics")
        return subscriptions

    def subscriber_count(self, topic: Topic) -> int:
        return len(self._subscribers[topic])

    def publish(self, topic: Topic, *args: Any) -> None:
        """Invoke all subscribers of a topic in subscription order.

        Subscriber exceptions are logged and never propagate to the publisher.
        Awaitables returned by subscribers are scheduled on the running loop.
        """
        for subscription in list(self._subscribers[topic]):
            if not subscription.active:
                continue
            try:
                result = subscription.callback(*args)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    task.add_done_callback(_log_task_failure)
            except Exception:
                logger.exception(f"Subscriber for {topic.value} raised")

    def clear(self) -> None:
        for subscriptions in self._subscribers.values():
            for subscription in subscriptions:
                subscription.active = False
            subscriptions.clear()

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscribers[subscription.topic].remove(subscription)
        except ValueError:
            pass


def _log_task_failure(task: "asyncio.Future") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Async subscriber failed", exc_info=exc)
