"""
Composition root: builds the store, the four stage views and the services
that share them, and owns their start/stop lifecycle.
"""

import logging
from typing import Dict, Optional

from fastapi import Request

from atelier.config import Settings, get_settings
from atelier.schemas.stage import Stage
from atelier.services.change_feed import ChangeFeedAdapter
from atelier.services.diagnostics import (
    DatabaseDiagnosticSink,
    LoggingDiagnosticSink,
    ReconciliationDiagnostics,
)
from atelier.services.order_editor import OrderEditor
from atelier.services.order_events import OrderEventBus, PipelineStats
from atelier.services.record_normalizer import RecordNormalizer
from atelier.services.record_store import InMemoryRecordStore, RecordStore
from atelier.services.stage_view import VIEW_CLASSES, StageView
from atelier.services.transition_coordinator import TransitionCoordinator
from atelier.utils.error_handler import NotFoundError

logger = logging.getLogger(__name__)


class OrderPipeline:
    """Every service of the order pipeline, wired to one store"""

    def __init__(
        self,
        store: RecordStore,
        settings: Optional[Settings] = None,
        diagnostics: Optional[ReconciliationDiagnostics] = None,
        collection: str = "orders",
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.collection = collection
        self.diagnostics = diagnostics or ReconciliationDiagnostics(
            sinks=[LoggingDiagnosticSink()],
            dedupe_seconds=self.settings.diagnostic_dedupe_seconds,
        )
        self.normalizer = RecordNormalizer(
            diagnostics=self.diagnostics,
            placeholder_image=self.settings.placeholder_image_url,
        )
        self.change_feed = ChangeFeedAdapter(
            store,
            collection=collection,
            initial_backoff=self.settings.feed_retry_initial_seconds,
            max_backoff=self.settings.feed_retry_max_seconds,
            staleness_window=self.settings.feed_staleness_seconds,
        )
        self.views: Dict[Stage, StageView] = {
            stage: view_class(store, self.normalizer, change_feed=self.change_feed, collection=collection)
            for stage, view_class in VIEW_CLASSES.items()
        }
        self.events = OrderEventBus()
        self.coordinator = TransitionCoordinator(
            store, self.normalizer, views=self.views, events=self.events, collection=collection
        )
        self.editor = OrderEditor(
            store, self.normalizer, views=self.views, events=self.events, collection=collection
        )
        self.stats = PipelineStats(store, self.events, collection=collection)
        self.started = False

    def view(self, stage: Stage) -> StageView:
        view = self.views.get(stage)
        if view is None:
            raise NotFoundError(f"No view for stage {stage.label}")
        return view

    async def start(self) -> None:
        """Open the change feed first, then load every view"""
        if self.started:
            return
        await self.change_feed.start()
        for view in self.views.values():
            await view.start()
        try:
            await self.stats.refresh()
        except Exception as e:
            logger.error(f"Could not load stage counts: {e}")
        self.started = True
        logger.info("Order pipeline started")

    async def stop(self) -> None:
        for view in self.views.values():
            view.stop()
        self.stats.close()
        await self.change_feed.stop()
        await self.store.close()
        self.started = False
        logger.info("Order pipeline stopped")


def build_record_store(settings: Optional[Settings] = None) -> RecordStore:
    settings = settings or get_settings()
    if settings.record_store == "memory":
        logger.info("Using in-memory record store")
        return InMemoryRecordStore()
    if settings.record_store != "sql":
        raise ValueError(f"Unknown RECORD_STORE: {settings.record_store}")

    from atelier.database import build_async_engine
    from atelier.services.sql_record_store import SqlRecordStore

    logger.info("Using SQL record store")
    return SqlRecordStore(build_async_engine(settings.database_url))


def build_pipeline(settings: Optional[Settings] = None) -> OrderPipeline:
    settings = settings or get_settings()
    store = build_record_store(settings)
    sinks = [LoggingDiagnosticSink()]
    if settings.persist_diagnostics and settings.record_store == "sql":
        from atelier.database import SessionLocal

        sinks.append(DatabaseDiagnosticSink(SessionLocal))
    diagnostics = ReconciliationDiagnostics(sinks=sinks, dedupe_seconds=settings.diagnostic_dedupe_seconds)
    return OrderPipeline(store, settings=settings, diagnostics=diagnostics)


def get_pipeline(request: Request) -> OrderPipeline:
    """FastAPI dependency: the pipeline built at start-up"""
    return request.app.state.pipeline
