"""
Unit tests for the change feed adapter
"""

import asyncio

from atelier.services.change_feed import ChangeFeedAdapter
from atelier.services.record_store import ChangeEvent, ChangeKind, InMemoryRecordStore

from conftest import settle


def _status_is(value):
    return lambda record: record.get("status") == value


class TestNotifications:
    """Predicate-scoped delivery"""

    def test_entering_and_leaving_records_both_notify(self, make_order):
        """A record moving between stages notifies both stage subscribers"""
        async def scenario():
            store = InMemoryRecordStore()
            row = make_order(status="pending")
            store.seed("orders", [row])
            feed = ChangeFeedAdapter(store)
            pending_events, production_events, dispatch_events = [], [], []
            feed.subscribe(_status_is("pending"), pending_events.append)
            feed.subscribe(_status_is("in_progress"), production_events.append)
            feed.subscribe(_status_is("to_deliver"), dispatch_events.append)
            await feed.start()

            await store.update("orders", row["id"], {"status": "in_progress"})
            await settle(feed)
            await feed.stop()
            return pending_events, production_events, dispatch_events

        pending_events, production_events, dispatch_events = asyncio.run(scenario())

        assert len(pending_events) == 1
        assert len(production_events) == 1
        assert dispatch_events == []
        assert pending_events[0].kind == ChangeKind.UPDATE

    def test_event_without_images_notifies_everyone(self):
        """Events lacking before and after go to every subscriber"""
        store = InMemoryRecordStore()
        feed = ChangeFeedAdapter(store)
        first, second = [], []
        feed.subscribe(_status_is("pending"), first.append)
        feed.subscribe(_status_is("completed"), second.append)

        async def scenario():
            feed.dispatch(ChangeEvent(ChangeKind.DELETE, "orders"))
            await settle(feed, rounds=1)

        asyncio.run(scenario())

        assert len(first) == 1
        assert len(second) == 1

    def test_async_callbacks_are_scheduled(self, make_order):
        """Coroutine callbacks run as tasks and their failures are contained"""
        async def scenario():
            store = InMemoryRecordStore()
            row = make_order()
            store.seed("orders", [row])
            feed = ChangeFeedAdapter(store)
            seen = []

            async def good(event):
                seen.append(event.after["id"])

            async def bad(event):
                raise RuntimeError("listener broke")

            feed.subscribe(_status_is("pending"), bad)
            feed.subscribe(_status_is("pending"), good)
            await feed.start()
            await store.update("orders", row["id"], {"comments": "changed"})
            await settle(feed)
            await feed.stop()
            return seen, row["id"]

        seen, order_id = asyncio.run(scenario())

        assert seen == [order_id]

    def test_unsubscribe_stops_delivery(self, make_order):
        """An unsubscribed callback receives nothing further"""
        async def scenario():
            store = InMemoryRecordStore()
            row = make_order()
            store.seed("orders", [row])
            feed = ChangeFeedAdapter(store)
            events = []
            unsubscribe = feed.subscribe(_status_is("pending"), events.append)
            await feed.start()
            unsubscribe()
            await store.update("orders", row["id"], {"comments": "x"})
            await settle(feed)
            await feed.stop()
            return events, feed.subscriber_count

        events, count = asyncio.run(scenario())

        assert events == []
        assert count == 0


class TestReconnection:
    """Connection loss, backoff and resync"""

    def test_disconnect_marks_degraded_then_resyncs(self, make_order):
        """After reconnecting every subscriber gets a resync notification"""
        async def scenario():
            store = InMemoryRecordStore()
            row = make_order()
            store.seed("orders", [row])
            feed = ChangeFeedAdapter(store, initial_backoff=0.01, max_backoff=0.05)
            events, connection = [], []
            feed.subscribe(_status_is("pending"), events.append)
            feed.on_connection_change(connection.append)
            await feed.start()

            store.disconnect_subscribers()
            await settle(feed)
            degraded = feed.is_degraded

            await asyncio.sleep(0.05)
            await settle(feed)
            recovered = not feed.is_degraded

            await store.update("orders", row["id"], {"comments": "after reconnect"})
            await settle(feed)
            await feed.stop()
            return degraded, recovered, events, connection, feed.reconnects

        degraded, recovered, events, connection, reconnects = asyncio.run(scenario())

        assert degraded is True
        assert recovered is True
        assert connection == [False, True]
        assert reconnects == 1
        assert events[0] is None
        assert events[-1].after["comments"] == "after reconnect"

    def test_staleness_window(self):
        """Staleness is reported only past the configured window"""
        now = [0.0]
        feed = ChangeFeedAdapter(InMemoryRecordStore(), staleness_window=30, clock=lambda: now[0])

        assert feed.degraded_for() == 0.0
        assert feed.staleness_exceeded is False

        feed._set_degraded()
        now[0] = 10.0
        assert feed.is_degraded is True
        assert feed.degraded_for() == 10.0
        assert feed.staleness_exceeded is False

        now[0] = 31.0
        assert feed.staleness_exceeded is True

    def test_failed_initial_subscribe_retries(self, make_order):
        """A store that refuses the first subscription is retried"""
        class FlakyStore(InMemoryRecordStore):
            def __init__(self):
                super().__init__()
                self.refusals = 1

            def subscribe(self, collection, kinds=None):
                if self.refusals:
                    self.refusals -= 1
                    raise ConnectionError("realtime unavailable")
                return super().subscribe(collection, kinds)

        async def scenario():
            store = FlakyStore()
            feed = ChangeFeedAdapter(store, initial_backoff=0.01)
            events = []
            feed.subscribe(lambda record: True, events.append)
            await feed.start()
            was_degraded = feed.is_degraded
            await asyncio.sleep(0.05)
            await settle(feed)
            await feed.stop()
            return was_degraded, feed.is_degraded, events

        was_degraded, still_degraded, events = asyncio.run(scenario())

        assert was_degraded is True
        assert still_degraded is False
        assert events == [None]
