"""
Change feed adapter

Turns the store's raw change stream for one collection into predicate-scoped
notifications for stage views, and keeps the stream alive: a dropped stream
is resubscribed with exponential backoff and every subscriber then gets a
resync notification (`on_change(None)`) so it can reload whatever it missed.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Union

from atelier.services.record_store import ChangeEvent, ChangeStream, RecordStore

logger = logging.getLogger(__name__)

Predicate = Callable[[Mapping[str, Any]], bool]
ChangeCallback = Callable[[Optional[ChangeEvent]], Union[None, Awaitable[None]]]
ConnectionCallback = Callable[[bool], Any]


@dataclass
class _Subscription:
    predicate: Predicate
    on_change: ChangeCallback


class ChangeFeedAdapter:
    """Stage-scoped notifications over one collection's change stream"""

    def __init__(
        self,
        store: RecordStore,
        collection: str = "orders",
        initial_backoff: float = 0.5,
        max_backoff: float = 30.0,
        staleness_window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.collection = collection
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.staleness_window = staleness_window
        self._clock = clock

        self._subscriptions: Dict[int, _Subscription] = {}
        self._next_token = 0
        self._connection_listeners: List[ConnectionCallback] = []
        self._stream: Optional[ChangeStream] = None
        self._pump: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._degraded_since: Optional[float] = None
        self._running = False
        self.reconnects = 0

    # -------------------- subscriber API --------------------

    def subscribe(self, predicate: Predicate, on_change: ChangeCallback) -> Callable[[], None]:
        """Register interest in records matching `predicate`; returns an unsubscribe function"""
        token = self._next_token
        self._next_token += 1
        self._subscriptions[token] = _Subscription(predicate, on_change)

        def unsubscribe() -> None:
            self._subscriptions.pop(token, None)

        return unsubscribe

    def on_connection_change(self, callback: ConnectionCallback) -> Callable[[], None]:
        self._connection_listeners.append(callback)

        def remove() -> None:
            if callback in self._connection_listeners:
                self._connection_listeners.remove(callback)

        return remove

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    # -------------------- health --------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_degraded(self) -> bool:
        return self._degraded_since is not None

    def degraded_for(self) -> float:
        """Seconds since the stream was lost, 0 while connected"""
        if self._degraded_since is None:
            return 0.0
        return max(0.0, self._clock() - self._degraded_since)

    @property
    def staleness_exceeded(self) -> bool:
        return self.is_degraded and self.degraded_for() > self.staleness_window

    # -------------------- lifecycle --------------------

    async def start(self) -> None:
        """Open the stream and start pumping events"""
        if self._running:
            return
        self._running = True
        try:
            self._stream = self.store.subscribe(self.collection)
        except Exception as e:
            logger.warning(f"Change feed for {self.collection} could not subscribe: {e}")
            self._stream = None
            self._set_degraded()
        self._pump = asyncio.create_task(self._run(), name=f"change-feed-{self.collection}")
        logger.info(f"Change feed started for {self.collection}")

    async def stop(self) -> None:
        self._running = False
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"Change feed stopped for {self.collection}")

    # -------------------- internals --------------------

    async def _run(self) -> None:
        backoff = self.initial_backoff
        while self._running:
            if self._stream is None:
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.max_backoff)
                if not self._running:
                    return
                try:
                    self._stream = self.store.subscribe(self.collection)
                except Exception as e:
                    logger.warning(f"Resubscribe to {self.collection} failed: {e}")
                    continue
                self.reconnects += 1
                backoff = self.initial_backoff
                self._set_connected()
                self._resync_all()

            stream = self._stream
            try:
                async for event in stream:
                    self.dispatch(event)
                if not self._running:
                    return
                logger.warning(f"Change stream for {self.collection} ended")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Change stream for {self.collection} lost: {e}")
            self._stream = None
            self._set_degraded()

    def dispatch(self, event: ChangeEvent) -> None:
        """Route one event to interested subscribers"""
        for subscription in list(self._subscriptions.values()):
            if event.before is None and event.after is None:
                interested = True
            else:
                interested = self._matches(subscription.predicate, event.before) or self._matches(
                    subscription.predicate, event.after
                )
            if interested:
                self._invoke(subscription.on_change, event)

    def _resync_all(self) -> None:
        logger.info(f"Change feed for {self.collection} reconnected; resyncing {len(self._subscriptions)} subscriber(s)")
        for subscription in list(self._subscriptions.values()):
            self._invoke(subscription.on_change, None)

    @staticmethod
    def _matches(predicate: Predicate, record: Optional[Mapping[str, Any]]) -> bool:
        if record is None:
            return False
        try:
            return bool(predicate(record))
        except Exception as e:
            logger.error(f"Change feed predicate failed: {e}")
            return False

    def _invoke(self, callback: Callable, *args) -> None:
        try:
            result = callback(*args)
        except Exception as e:
            logger.error(f"Change feed callback failed: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Change feed callback failed: {error}")

    def _set_degraded(self) -> None:
        if self._degraded_since is not None:
            return
        self._degraded_since = self._clock()
        self._notify_connection(False)

    def _set_connected(self) -> None:
        if self._degraded_since is None:
            return
        self._degraded_since = None
        self._notify_connection(True)

    def _notify_connection(self, connected: bool) -> None:
        for listener in list(self._connection_listeners):
            self._invoke(listener, connected)
