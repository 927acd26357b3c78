import asyncio
import logging

import httpx
import pytest

from external_tasks.client.interceptors import KeycloakAuthInterceptor
from external_tasks.config import WorkerSettings
from external_tasks.errors import ConfigurationError, EngineProtocolError, InvalidSubscriptionError
from external_tasks.logger import logger, make_logger
from external_tasks.workers import Workers


def fetched_topics(store):
    return [[t["topicName"] for t in body["topics"]] for _, _, body in store.calls_for("fetchAndLock")]


async def test_end_to_end_single_task_is_fetched_dispatched_and_completed(store, make_workers, eventually):
    task_id = store.push("topicName", {"amount": 10})
    dispatched = []

    async def handler(task, task_service):
        dispatched.append(task)
        await task_service.complete(task)

    workers = make_workers(interval=60000)
    workers.subscribe("topicName", handler)

    async with workers:
        workers.start()
        await eventually(lambda: store.calls_for("complete"))

    assert len(store.calls_for("fetchAndLock")) == 1
    assert [t.id for t in dispatched] == [task_id]
    assert dispatched[0].variables.get("amount") == 10
    assert [c[1] for c in store.calls_for("complete")] == [task_id]
    assert store.find(task_id)["state"] == "completed"


async def test_latest_subscription_on_a_topic_wins(store, make_workers):
    older, newer = [], []

    async def older_handler(task, task_service):
        older.append(task.id)

    async def newer_handler(task, task_service):
        newer.append(task.id)

    workers = make_workers()
    workers.subscribe("topicName", older_handler)
    workers.subscribe("topicName", newer_handler)

    first = store.push("topicName")
    await workers.scheduler.poll_once()
    second = store.push("topicName")
    await workers.scheduler.poll_once()
    await workers.close()

    assert older == []
    assert newer == [first, second]


async def test_subscription_changes_apply_from_the_next_cycle(store, make_workers):
    late_calls, b_calls = [], []
    handles = {}

    async def late(task, task_service):
        late_calls.append(task.id)

    async def handle_a(task, task_service):
        workers.subscribe("late", late)
        handles["b"].unsubscribe()
        handles["a"].unsubscribe()

    async def handle_b(task, task_service):
        b_calls.append(task.id)

    workers = make_workers()
    handles["a"] = workers.subscribe("a", handle_a)
    handles["b"] = workers.subscribe("b", handle_b)
    store.push("a")
    b_task = store.push("b")
    store.push("late")

    await workers.scheduler.poll_once()
    await workers.scheduler.drain()
    # b was in the snapshot for this cycle, so it still ran
    assert b_calls == [b_task]
    assert late_calls == []

    await workers.scheduler.poll_once()
    await workers.close()

    assert fetched_topics(store) == [["a", "b"], ["late"]]
    assert len(late_calls) == 1


async def test_auto_poll_starts_inside_a_running_loop(store, make_workers, eventually):
    store.push("invoice")
    seen = []

    workers = make_workers(auto_poll=True)
    assert workers.is_polling
    workers.subscribe("invoice", lambda task, task_service: seen.append(task.id))

    await eventually(lambda: seen)
    await workers.close()
    assert not workers.is_polling


def test_auto_poll_waits_for_a_loop(make_workers):
    workers = make_workers(auto_poll=True)
    assert not workers.is_polling


async def test_stop_then_waiting_an_interval_issues_no_more_fetches(store, make_workers, eventually):
    workers = make_workers(interval=10)
    workers.subscribe("invoice", lambda task, task_service: None)

    workers.start()
    await eventually(lambda: len(store.calls_for("fetchAndLock")) >= 2)
    workers.stop()
    await workers.scheduler.wait_stopped()
    count = len(store.calls_for("fetchAndLock"))

    await asyncio.sleep(0.05)
    assert len(store.calls_for("fetchAndLock")) == count
    await workers.close()


def test_use_middleware_runs_before_polling(make_workers):
    seen = []

    def middleware(workers):
        seen.append((workers, workers.is_polling))

    workers = make_workers(use=[middleware])
    assert seen == [(workers, False)]


def test_use_must_be_callable(make_workers):
    with pytest.raises(ConfigurationError):
        make_workers(use=["nope"])


def test_missing_base_url_fails_at_construction(make_workers, monkeypatch):
    monkeypatch.delenv("EXTERNAL_TASK_BASE_URL", raising=False)
    with pytest.raises(ConfigurationError):
        make_workers(base_url=None)


def test_settings_and_options_are_exclusive(http_client):
    settings = WorkerSettings.load(base_url="http://engine.test", auto_poll=False)
    with pytest.raises(ConfigurationError):
        Workers(settings, http_client=http_client, max_tasks=3)


def test_subscribe_handle(make_workers):
    events = []
    workers = make_workers(lock_duration=20000)
    workers.on("subscribe", lambda topic, handle: events.append(("subscribe", topic)))
    workers.on("unsubscribe", lambda topic, sub: events.append(("unsubscribe", topic)))

    def handler(task, task_service):
        pass

    handle = workers.subscribe("invoice", handler)
    assert handle.worker is handler
    assert handle.topic == "invoice"
    assert handle.lock_duration == 20000

    assert handle.unsubscribe() is True
    assert handle.unsubscribe() is False
    assert events == [("subscribe", "invoice"), ("unsubscribe", "invoice")]


def test_subscribe_without_handler(make_workers):
    workers = make_workers()
    with pytest.raises(InvalidSubscriptionError):
        workers.subscribe("invoice")


def test_off_removes_listener(make_workers):
    calls = []
    workers = make_workers()
    listener = lambda *args: calls.append(args)
    workers.on("poll:start", listener).off("poll:start", listener)
    workers.emit("poll:start")
    assert calls == []


async def test_poll_events_are_emitted(store, make_workers):
    events = []
    workers = make_workers()
    for name in ("poll:start", "poll:success", "complete:success"):
        workers.on(name, lambda *args, name=name: events.append(name))

    store.push("invoice")
    workers.subscribe("invoice", lambda task, task_service: task_service.complete(task))
    await workers.scheduler.poll_once()
    await workers.close()

    assert events == ["poll:start", "poll:success", "complete:success"]


async def test_fetch_error_is_reported_to_listeners(store, make_workers):
    errors = []
    workers = make_workers()
    workers.on("poll:error", errors.append)
    workers.subscribe("invoice", lambda task, task_service: None)
    store.fetch_error = (500, "ProcessEngineException", "database unavailable")

    assert await workers.scheduler.poll_once() == 0
    assert errors[0].message == "database unavailable"
    assert errors[0].error_type == "ProcessEngineException"

    await workers.scheduler.poll_once()
    await workers.close()
    assert len(store.calls_for("fetchAndLock")) == 2


def test_logger_middleware_logs_subscriptions(make_workers, caplog):
    caplog.set_level(logging.INFO, logger="external_tasks")
    workers = make_workers(use=logger)
    workers.subscribe("invoice", lambda task, task_service: None)
    assert "subscribed to topic invoice" in caplog.text


async def test_logger_middleware_logs_failures(store, make_workers, caplog):
    caplog.set_level(logging.DEBUG, logger="external_tasks")
    workers = make_workers(use=make_logger(logging.DEBUG))
    task_id = store.push("invoice")

    async def handler(task, task_service):
        store.expire_lock(task.id)
        try:
            await task_service.complete(task)
        except Exception:
            pass

    workers.subscribe("invoice", handler)
    await workers.scheduler.poll_once()
    await workers.close()

    assert "polled 1 tasks" in caplog.text
    assert f"complete failed for task {task_id}" in caplog.text


async def test_failing_listener_is_logged_and_polling_continues(store, make_workers, eventually, caplog):
    workers = make_workers()

    def broken(*args):
        raise RuntimeError("listener bug")

    workers.on("poll:start", broken)
    workers.subscribe("invoice", lambda task, task_service: None)

    workers.start()
    await eventually(lambda: len(store.calls_for("fetchAndLock")) >= 2)
    assert workers.is_polling
    await workers.close()

    assert "listener bug" in caplog.text
    assert "'poll:start'" in caplog.text


async def test_failing_success_listener_does_not_fail_the_action(store, make_workers, caplog):
    outcome = []
    workers = make_workers()
    workers.on("complete:success", lambda task: 1 / 0)
    task_id = store.push("invoice")

    async def handler(task, task_service):
        try:
            await task_service.complete(task)
        except Exception as e:
            outcome.append(e)
        else:
            outcome.append("completed")

    workers.subscribe("invoice", handler)
    await workers.scheduler.poll_once()
    await workers.close()

    assert outcome == ["completed"]
    assert store.find(task_id)["state"] == "completed"
    assert "ZeroDivisionError" in caplog.text


async def test_keycloak_failure_does_not_stop_polling(store, make_workers, eventually):
    token_client = httpx.AsyncClient(transport=httpx.MockTransport(
        lambda r: httpx.Response(200, json={"error": "invalid_client"})
    ))
    keycloak = KeycloakAuthInterceptor("http://kc/token", "id", "secret", http_client=token_client)
    errors = []
    workers = make_workers(interceptors=keycloak)
    workers.on("poll:error", errors.append)
    workers.subscribe("invoice", lambda task, task_service: None)

    workers.start()
    await eventually(lambda: len(errors) >= 2)
    assert workers.is_polling
    await workers.close()
    await token_client.aclose()

    assert all(isinstance(e, EngineProtocolError) for e in errors)
    assert store.calls_for("fetchAndLock") == []
