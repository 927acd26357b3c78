import asyncio
import inspect
import json
import logging
from typing import Callable, Iterable, List, Optional, Sequence, Set

from pydantic import ValidationError

from external_tasks.client.engine import EngineClient
from external_tasks.config import WorkerSettings
from external_tasks.errors import EngineProtocolError, TransportError
from external_tasks.worker.models import ExternalTask
from external_tasks.worker.schemas import FetchAndLockRequest, TopicRequest
from external_tasks.worker.subscriptions import Subscription, SubscriptionRegistry
from external_tasks.worker.task_service import TaskService

logger = logging.getLogger(__name__)


def _noop_emit(event, *args):
    pass


class PollScheduler:
    """
    Drives the fetch-and-lock cycle.

    At most one cycle is in flight at a time. The next cycle is scheduled
    `interval` ms after the previous one finished dispatching, so a slow engine
    stretches the period instead of stacking requests. Handlers are started as
    tasks and never awaited by the cycle.
    """
    def __init__(
        self,
        registry: SubscriptionRegistry,
        engine: EngineClient,
        settings: WorkerSettings,
        emit: Optional[Callable] = None,
    ):
        self.registry = registry
        self.engine = engine
        self.settings = settings
        self._emit = emit or _noop_emit

        self._stopped: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._in_flight = False
        self._handler_tasks: Set[asyncio.Task] = set()

        self.metrics = {
            "total_cycles": 0,
            "total_fetch_errors": 0,
            "total_dispatched": 0,
            "total_unmatched": 0,
        }

    @property
    def is_polling(self) -> bool:
        return self._stopped is not None and not self._stopped.is_set()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def pending_handlers(self) -> int:
        return len(self._handler_tasks)

    def start(self):
        """Stopped -> Polling. Must be called with a running event loop."""
        if self.is_polling:
            return
        loop = asyncio.get_running_loop()
        previous = self._loop_task
        self._stopped = asyncio.Event()
        self._loop_task = loop.create_task(self._poll_loop(self._stopped, previous))
        logger.info({"event": "polling_started", "worker_id": self.engine.worker_id})

    def stop(self):
        """Polling -> Stopped. A cycle already in flight still finishes and dispatches."""
        if not self.is_polling:
            return
        self._stopped.set()
        logger.info({"event": "polling_stopped", "worker_id": self.engine.worker_id})
        self._emit("poll:stop")

    async def wait_stopped(self):
        """Waits for the poll loop to exit. Re-raises whatever made it exit abnormally."""
        task = self._loop_task
        if task is None:
            return
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()

    async def drain(self):
        """Waits for every handler started so far, including ones started while waiting."""
        while self._handler_tasks:
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

    async def _poll_loop(self, stopped: asyncio.Event, previous: Optional[asyncio.Task]):
        if previous is not None and not previous.done():
            # a restart must not overlap the old loop's last cycle
            await asyncio.wait({previous})

        interval = self.settings.interval / 1000.0
        try:
            while not stopped.is_set():
                await self.poll_once()
                if stopped.is_set():
                    break
                if interval > 0:
                    try:
                        await asyncio.wait_for(stopped.wait(), timeout=interval)
                    except asyncio.TimeoutError:
                        pass
                else:
                    await asyncio.sleep(0)
        except Exception:
            # is_polling must not report a dead loop as alive
            stopped.set()
            logger.exception(f"Poll loop for {self.engine.worker_id} exited with an error")
            raise

    def build_request(self, subscriptions: Sequence[Subscription]) -> FetchAndLockRequest:
        topics = {}
        for sub in subscriptions:
            current = topics.get(sub.topic)
            lock_duration = sub.lock_duration
            if current is not None:
                lock_duration = max(current.lock_duration, lock_duration)
            # filters come from the latest-registered subscription of the topic
            topics[sub.topic] = TopicRequest(
                topic_name=sub.topic,
                lock_duration=lock_duration,
                **sub.options.fetch_filters(),
            )

        return FetchAndLockRequest(
            worker_id=self.engine.worker_id,
            max_tasks=self.settings.max_tasks,
            use_priority=self.settings.use_priority,
            async_response_timeout=self.settings.async_response_timeout,
            topics=list(topics.values()),
        )

    async def poll_once(self) -> int:
        """Runs one fetch-and-lock cycle and returns how many tasks were dispatched."""
        if self._in_flight:
            raise RuntimeError("A fetch-and-lock cycle is already in flight")

        subscriptions = self.registry.list_active()
        if not subscriptions:
            return 0

        self._in_flight = True
        try:
            self.metrics["total_cycles"] += 1
            self._emit("poll:start")
            request = self.build_request(subscriptions)
            try:
                raw_tasks = await self.engine.fetch_and_lock(request, timeout=self.settings.fetch_timeout)
            except (TransportError, EngineProtocolError) as e:
                self.metrics["total_fetch_errors"] += 1
                logger.warning(f"Fetch and lock failed, skipping cycle: {e}")
                self._emit("poll:error", e)
                return 0
            except Exception as e:
                self.metrics["total_fetch_errors"] += 1
                logger.exception(f"Unexpected error during fetch and lock, skipping cycle: {e!r}")
                self._emit("poll:error", e)
                return 0

            tasks = self._parse_tasks(raw_tasks)
            self._emit("poll:success", tasks)
            return self.dispatch(tasks, subscriptions)
        finally:
            self._in_flight = False

    def _parse_tasks(self, raw_tasks: Iterable[dict]) -> List[ExternalTask]:
        tasks = []
        for raw in raw_tasks:
            try:
                tasks.append(ExternalTask.model_validate(raw))
            except ValidationError as e:
                # left alone, the lock expires at the engine
                logger.error(f"Skipping malformed task in fetch and lock response: {e}")
        return tasks

    def dispatch(self, tasks: Sequence[ExternalTask], subscriptions: Sequence[Subscription]) -> int:
        latest = {}
        for sub in subscriptions:
            latest[sub.topic] = sub

        dispatched = 0
        for task in tasks:
            sub = latest.get(task.topic_name)
            if sub is None:
                self.metrics["total_unmatched"] += 1
                logger.warning(json.dumps({
                    "event": "unmatched_task",
                    "task_id": task.id,
                    "topic": task.topic_name,
                }))
                continue

            service = TaskService(self.engine, task, self._emit)
            self._start_handler(sub, task, service)
            dispatched += 1

        self.metrics["total_dispatched"] += dispatched
        return dispatched

    def _start_handler(self, sub: Subscription, task: ExternalTask, service: TaskService):
        async def invoke():
            result = sub.handler(task=task, task_service=service)
            if inspect.isawaitable(result):
                await result

        handler_task = asyncio.get_running_loop().create_task(invoke())
        self._handler_tasks.add(handler_task)
        handler_task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, handler_task: asyncio.Task):
        self._handler_tasks.discard(handler_task)
        if handler_task.cancelled():
            return
        exc = handler_task.exception()
        if exc is not None:
            handler_task.get_loop().call_exception_handler({
                "message": "Unhandled exception in external task handler",
                "exception": exc,
                "task": handler_task,
            })
