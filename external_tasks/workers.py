import asyncio
import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional

import httpx

from external_tasks.client.engine import EngineClient
from external_tasks.client.interceptors import RequestPipeline, as_callables
from external_tasks.config import WorkerSettings
from external_tasks.errors import ConfigurationError
from external_tasks.worker.scheduler import PollScheduler
from external_tasks.worker.subscriptions import Subscription, SubscriptionHandle, SubscriptionRegistry

logger = logging.getLogger(__name__)


class Workers:
    """
    Subscribes handlers to external task topics and polls the engine for them.

    Options are validated into `WorkerSettings` once, at construction. `use`
    middleware gets the instance before any polling happens, which is where
    listeners for the lifecycle events belong (see `external_tasks.logger`).

    With `auto_poll` the scheduler starts right away if an event loop is running,
    otherwise on `start()`, `run_forever()` or `async with`.
    """
    def __init__(
        self,
        settings: Optional[WorkerSettings] = None,
        *,
        interceptors=None,
        use=None,
        http_client: Optional[httpx.AsyncClient] = None,
        **options,
    ):
        if settings is None:
            settings = WorkerSettings.load(**options)
        elif options:
            raise ConfigurationError("Pass either a WorkerSettings instance or keyword options, not both")
        self.settings = settings

        self._listeners: Dict[str, List[Callable]] = defaultdict(list)
        self.pipeline = RequestPipeline(interceptors)
        self.registry = SubscriptionRegistry(settings.lock_duration)
        self.engine = EngineClient(
            settings.base_url,
            settings.worker_id,
            pipeline=self.pipeline,
            http_client=http_client,
            timeout_ms=settings.http_timeout,
        )
        self.scheduler = PollScheduler(self.registry, self.engine, settings, emit=self.emit)

        for middleware in as_callables(use, "use"):
            middleware(self)

        if settings.auto_poll:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                logger.debug({"event": "auto_poll_deferred", "reason": "no running event loop"})
            else:
                self.start()

    # --- Events ---
    def on(self, event: str, listener: Callable):
        self._listeners[event].append(listener)
        return self

    def off(self, event: str, listener: Callable):
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)
        return self

    def emit(self, event: str, *args):
        """Calls every listener of `event`. A failing listener is logged and never reaches the caller."""
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(*args)
            except Exception:
                logger.exception(f"Listener {listener!r} for event {event!r} raised")

    # --- Subscriptions ---
    def subscribe(self, topic: str, handler: Callable = None, **options) -> SubscriptionHandle:
        """
        Binds `handler` to `topic`. The handler is called as
        ``handler(task=..., task_service=...)`` and may be a coroutine function.
        Keyword options: `lock_duration` and the engine's fetch filters.
        """
        subscription = self.registry.subscribe(topic, handler, **options)
        handle = SubscriptionHandle(subscription, self._unsubscribe)
        self.emit("subscribe", topic, handle)
        return handle

    def _unsubscribe(self, subscription: Subscription) -> bool:
        removed = self.registry.unsubscribe(subscription)
        if removed:
            self.emit("unsubscribe", subscription.topic, subscription)
        return removed

    # --- Lifecycle ---
    @property
    def is_polling(self) -> bool:
        return self.scheduler.is_polling

    def start(self):
        self.scheduler.start()

    def stop(self):
        self.scheduler.stop()

    async def run_forever(self):
        """Polls until `stop()` is called."""
        self.start()
        await self.scheduler.wait_stopped()

    async def close(self):
        """Stops polling, lets the in-flight cycle and running handlers finish, then releases the HTTP client."""
        self.stop()
        try:
            await self.scheduler.wait_stopped()
        finally:
            await self.scheduler.drain()
            await self.engine.aclose()

    async def __aenter__(self):
        if self.settings.auto_poll:
            self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
