import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from external_tasks.errors import InvalidSubscriptionError


class SubscriptionOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    lock_duration: Optional[int] = Field(default=None, gt=0)
    variables: Optional[List[str]] = None
    local_variables: Optional[bool] = None
    business_key: Optional[str] = None
    process_definition_id: Optional[str] = None
    process_definition_id_in: Optional[List[str]] = None
    process_definition_key: Optional[str] = None
    process_definition_key_in: Optional[List[str]] = None
    process_definition_version_tag: Optional[str] = None
    process_variables: Optional[Dict[str, Any]] = None
    tenant_id_in: Optional[List[str]] = None
    without_tenant_id: Optional[bool] = None
    deserialize_values: Optional[bool] = None
    include_extension_properties: Optional[bool] = None

    def fetch_filters(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"lock_duration"}, exclude_none=True)


class Subscription:
    __slots__ = ("id", "topic", "handler", "lock_duration", "options")

    def __init__(self, topic: str, handler: Callable, lock_duration: int, options: SubscriptionOptions):
        self.id = str(uuid.uuid4())
        self.topic = topic
        self.handler = handler
        self.lock_duration = lock_duration
        self.options = options

    def __repr__(self):
        return f"Subscription(topic={self.topic!r}, lock_duration={self.lock_duration}, id={self.id!r})"


class SubscriptionHandle:
    """What `subscribe` hands back to callers."""
    def __init__(self, subscription: Subscription, unsubscribe: Callable[[Subscription], bool]):
        self._subscription = subscription
        self._unsubscribe = unsubscribe

    @property
    def worker(self) -> Callable:
        return self._subscription.handler

    @property
    def topic(self) -> str:
        return self._subscription.topic

    @property
    def lock_duration(self) -> int:
        return self._subscription.lock_duration

    @property
    def subscription(self) -> Subscription:
        return self._subscription

    def unsubscribe(self) -> bool:
        return self._unsubscribe(self._subscription)


class SubscriptionRegistry:
    """
    Live set of topic -> handler bindings, keyed by subscription id.

    Callers that poll take a `list_active()` snapshot once per cycle, so
    subscribe/unsubscribe calls made mid-cycle only show up in the next one.
    """
    def __init__(self, default_lock_duration: int):
        self.default_lock_duration = default_lock_duration
        # dicts keep insertion order, which is registration order
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._subscriptions)

    def subscribe(self, topic: str, handler: Callable, **options) -> Subscription:
        if not isinstance(topic, str) or not topic.strip():
            raise InvalidSubscriptionError("Couldn't subscribe: topic is missing")
        if handler is None or not callable(handler):
            raise InvalidSubscriptionError(f"Couldn't subscribe to {topic!r}: handler must be callable")
        try:
            opts = SubscriptionOptions(**options)
        except ValidationError as e:
            raise InvalidSubscriptionError(f"Couldn't subscribe to {topic!r}: {e}") from e

        subscription = Subscription(
            topic=topic,
            handler=handler,
            lock_duration=opts.lock_duration or self.default_lock_duration,
            options=opts,
        )
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription.id, None) is not None

    def list_active(self) -> Tuple[Subscription, ...]:
        with self._lock:
            return tuple(self._subscriptions.values())
