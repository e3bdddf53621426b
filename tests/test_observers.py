"""Unit tests for the notification event bus."""

import logging
from unittest.mock import MagicMock

import pytest

from roomsync.observers import EventBus, Topic
from tests.factories import settle


class TestPublish:
    """Test fan-out to subscribers."""

    def test_subscribers_called_in_order(self, bus):
        calls = []
        bus.subscribe(Topic.DID_JOIN_ROOM, lambda room: calls.append(("first", room)))
        bus.subscribe(Topic.DID_JOIN_ROOM, lambda room: calls.append(("second", room)))

        bus.publish(Topic.DID_JOIN_ROOM, "!a")

        assert calls == [("first", "!a"), ("second", "!a")]

    def test_other_topics_not_notified(self, bus):
        callback = MagicMock()
        bus.subscribe(Topic.DID_PART_ROOM, callback)

        bus.publish(Topic.DID_JOIN_ROOM, "!a")

        callback.assert_not_called()

    def test_failing_subscriber_is_isolated(self, bus, caplog):
        """A raising subscriber is logged and the rest still run."""

        def broken(room):
            raise RuntimeError("boom")

        after = MagicMock()
        bus.subscribe(Topic.DID_JOIN_ROOM, broken)
        bus.subscribe(Topic.DID_JOIN_ROOM, after)

        with caplog.at_level(logging.ERROR, logger="roomsync.observers"):
            bus.publish(Topic.DID_JOIN_ROOM, "!a")

        after.assert_called_once_with("!a")
        assert "Subscriber for did_join_room raised" in caplog.text

    @pytest.mark.asyncio
    async def test_async_subscriber_is_scheduled(self, bus):
        received = []

        async def handler(room):
            received.append(room)

        bus.subscribe(Topic.DID_JOIN_ROOM, handler)

        bus.publish(Topic.DID_JOIN_ROOM, "!a")
        await settle()

        assert received == ["!a"]


class TestSubscriptions:
    """Test subscription handles and delegate attachment."""

    def test_unsubscribe(self, bus):
        callback = MagicMock()
        subscription = bus.subscribe(Topic.DID_LOGOUT, callback)

        subscription.unsubscribe()
        subscription.unsubscribe()
        bus.publish(Topic.DID_LOGOUT)

        callback.assert_not_called()
        assert bus.subscriber_count(Topic.DID_LOGOUT) == 0

    def test_unsubscribe_during_publish(self, bus):
        """A subscriber removed by an earlier one is skipped."""
        second = MagicMock()
        holder = {}
        bus.subscribe(Topic.DID_LOGOUT, lambda: holder["second"].unsubscribe())
        holder["second"] = bus.subscribe(Topic.DID_LOGOUT, second)

        bus.publish(Topic.DID_LOGOUT)

        second.assert_not_called()

    def test_attach_delegate(self, bus):
        """Every method named after a topic is subscribed."""

        class Delegate:
            def __init__(self):
                self.joined = []
                self.logged_out = False

            def did_join_room(self, room):
                self.joined.append(room)

            def did_logout(self):
                self.logged_out = True

        delegate = Delegate()
        subscriptions = bus.attach(delegate)

        bus.publish(Topic.DID_JOIN_ROOM, "!a")
        bus.publish(Topic.DID_LOGOUT)

        assert len(subscriptions) == 2
        assert delegate.joined == ["!a"]
        assert delegate.logged_out is True

    def test_single_subscriber_replaces(self):
        bus = EventBus(single_subscriber=True)
        first = MagicMock()
        second = MagicMock()
        bus.subscribe(Topic.DID_SELECT_ROOM, first)
        bus.subscribe(Topic.DID_SELECT_ROOM, second)

        bus.publish(Topic.DID_SELECT_ROOM, "entry")

        first.assert_not_called()
        second.assert_called_once_with("entry")

    def test_clear(self, bus):
        callback = MagicMock()
        bus.subscribe(Topic.DID_LOGIN, callback)

        bus.clear()
        bus.publish(Topic.DID_LOGIN, "session")

        callback.assert_not_called()
