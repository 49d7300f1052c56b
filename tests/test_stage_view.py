"""
Unit tests for stage views
"""

import asyncio
from datetime import timedelta

from atelier.schemas.stage import Stage
from atelier.services.change_feed import ChangeFeedAdapter
from atelier.services.stage_view import (
    DispatchView,
    FulfilledView,
    IntakeView,
    ProductionView,
    ViewState,
    stage_predicate,
)
from atelier.utils.error_handler import TransientIO

from conftest import BASE_TIME, build_store, settle


class TestLoading:
    """Snapshot loading and state transitions"""

    def test_load_filters_by_stage_and_deleted(self, store, normalizer, make_order):
        """Only live orders of the view's stage are loaded, newest first"""
        older = make_order(status="pending")
        newer = make_order(status="pending")
        deleted = make_order(status="pending", deleted_at=BASE_TIME)
        other = make_order(status="in_progress")
        store.seed("orders", [older, newer, deleted, other])
        view = IntakeView(store, normalizer)

        assert view.state == ViewState.UNINITIALIZED
        state = asyncio.run(view.load())

        assert state == ViewState.READY
        assert [o.id for o in view.get_orders()] == [newer["id"], older["id"]]

    def test_failed_load_keeps_previous_snapshot(self, store, normalizer, make_order):
        """A store failure sets error without dropping the last good snapshot"""
        row = make_order()
        store.seed("orders", [row])
        view = IntakeView(store, normalizer)
        asyncio.run(view.load())

        store.queue_failure("query", ConnectionError("network down"))
        state = asyncio.run(view.load())

        assert state == ViewState.ERROR
        assert isinstance(view.last_error, TransientIO)
        assert [o.id for o in view.get_orders()] == [row["id"]]

    def test_load_without_deleted_at_column(self, normalizer, make_order):
        """A deployment lacking deleted_at still loads"""
        store = build_store(drop_columns=("deleted_at",))
        row = make_order()
        del row["deleted_at"]
        store.seed("orders", [row])
        view = IntakeView(store, normalizer)

        assert asyncio.run(view.load()) == ViewState.READY
        assert view.count == 1

    def test_fulfilled_sort_falls_back_to_created_at(self, normalizer, make_order):
        """Without completed_at the Fulfilled view sorts by creation time"""
        store = build_store(drop_columns=("completed_at",))
        first = make_order(status="completed")
        second = make_order(status="completed")
        store.seed("orders", [first, second])
        view = FulfilledView(store, normalizer)

        assert asyncio.run(view.load()) == ViewState.READY
        assert [o.id for o in view.get_orders()] == [second["id"], first["id"]]

    def test_fulfilled_sorts_by_completion(self, store, normalizer, make_order):
        """Most recently completed orders come first"""
        early = make_order(status="completed", completed_at=BASE_TIME + timedelta(days=5))
        late = make_order(status="completed", completed_at=BASE_TIME + timedelta(days=1))
        store.seed("orders", [early, late])
        view = FulfilledView(store, normalizer)
        asyncio.run(view.load())

        assert [o.id for o in view.get_orders()] == [early["id"], late["id"]]


class TestReads:
    """Copies, search and local edits"""

    def test_get_orders_returns_copies(self, store, normalizer, make_order):
        """Mutating a returned order does not touch the snapshot"""
        store.seed("orders", [make_order(customer_name="Jane")])
        view = IntakeView(store, normalizer)
        asyncio.run(view.load())

        orders = view.get_orders()
        orders[0].customer.name = "Changed"

        assert view.get_orders()[0].customer.name == "Jane"

    def test_search_is_case_insensitive_on_customer(self, store, normalizer, make_order):
        """The default search covers the customer name"""
        store.seed("orders", [make_order(customer_name="Jane Wambui"), make_order(customer_name="Otieno")])
        view = IntakeView(store, normalizer)
        asyncio.run(view.load())

        assert [o.customer.name for o in view.apply_search_filter("wamB")] == ["Jane Wambui"]
        assert len(view.apply_search_filter("")) == 2
        assert view.apply_search_filter("Ankara") == []

    def test_fulfilled_search_covers_product_and_color(self, store, normalizer, make_order):
        """Fulfilled searches phone, product names and colors"""
        store.seed("orders", [
            make_order(status="completed", product_name="Silk Gown", color="Emerald"),
            make_order(status="completed", product_name="Linen Shirt", color="White"),
        ])
        view = FulfilledView(store, normalizer)
        asyncio.run(view.load())

        assert len(view.apply_search_filter("emerald")) == 1
        assert len(view.apply_search_filter("linen")) == 1

    def test_remove_order_is_idempotent(self, store, normalizer, make_order):
        """Removing twice reports False the second time"""
        row = make_order()
        store.seed("orders", [row])
        view = IntakeView(store, normalizer)
        asyncio.run(view.load())
        notified = []
        view.on_snapshot_changed(notified.append)

        assert view.remove_order(row["id"]) is True
        assert view.remove_order(row["id"]) is False
        assert view.get_orders() == []
        assert len(notified) == 1

    def test_checked_overlay_survives_reload(self, store, normalizer, make_order):
        """A locally kept checked flag is reapplied after reload"""
        row = make_order(status="in_progress")
        store.seed("orders", [row])
        view = ProductionView(store, normalizer)
        asyncio.run(view.load())

        view.mark_checked_locally(row["id"], True)
        asyncio.run(view.load())

        assert view.get_order(row["id"]).checked is True

    def test_removed_order_forgets_checked_overlay(self, store, normalizer, make_order):
        """An order that comes back after removal starts unchecked"""
        row = make_order(status="in_progress")
        store.seed("orders", [row])
        view = ProductionView(store, normalizer)
        asyncio.run(view.load())

        view.mark_checked_locally(row["id"], True)
        view.remove_order(row["id"])
        asyncio.run(view.load())

        assert view.get_order(row["id"]).checked is False

    def test_reload_prunes_overlay_of_departed_orders(self, store, normalizer, make_order):
        """Flags of orders that left the stage do not return with them"""
        row = make_order(status="in_progress")
        store.seed("orders", [row])
        view = ProductionView(store, normalizer)
        asyncio.run(view.load())
        view.mark_checked_locally(row["id"], True)

        store.put_external("orders", row["id"], {"status": "to_deliver"})
        asyncio.run(view.load())
        assert view.contains(row["id"]) is False

        store.put_external("orders", row["id"], {"status": "in_progress"})
        asyncio.run(view.load())
        assert view.get_order(row["id"]).checked is False


class TestLiveUpdates:
    """Change-feed driven reloads"""

    def test_views_follow_a_stage_change(self, store, normalizer, make_order):
        """Both the source and target views reload after an external move"""
        row = make_order(status="in_progress")
        store.seed("orders", [row])

        async def scenario():
            feed = ChangeFeedAdapter(store)
            production = ProductionView(store, normalizer, change_feed=feed)
            dispatch = DispatchView(store, normalizer, change_feed=feed)
            await feed.start()
            await production.start()
            await dispatch.start()

            store.put_external("orders", row["id"], {"status": "to_deliver"})
            await settle(feed)
            result = ([o.id for o in production.get_orders()], [o.id for o in dispatch.get_orders()])
            production.stop()
            dispatch.stop()
            await feed.stop()
            return result

        production_ids, dispatch_ids = asyncio.run(scenario())

        assert production_ids == []
        assert dispatch_ids == [row["id"]]

    def test_is_stale_past_window(self, store, normalizer):
        """A view is stale when its feed has been down too long"""
        now = [0.0]
        feed = ChangeFeedAdapter(store, staleness_window=5, clock=lambda: now[0])
        view = IntakeView(store, normalizer, change_feed=feed)

        feed._set_degraded()
        now[0] = 6.0

        assert view.is_stale is True
        assert IntakeView(store, normalizer).is_stale is False


class TestPredicate:
    """Stage membership predicate"""

    def test_predicate(self):
        """Live records at the stage match, deleted ones do not"""
        predicate = stage_predicate(Stage.PENDING)

        assert predicate({"status": "pending", "deleted_at": None})
        assert not predicate({"status": "pending", "deleted_at": "2024-01-01"})
        assert not predicate({"status": "in_progress"})
