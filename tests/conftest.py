"""Shared fixtures: an in-memory engine served over httpx's ASGI transport."""

import asyncio

import httpx
import pytest

from external_tasks.client.engine import EngineClient
from external_tasks.testing.engine import ExternalTaskStore
from external_tasks.testing.router import create_app
from external_tasks.workers import Workers

BASE_URL = "http://engine.test"


@pytest.fixture()
def store():
    return ExternalTaskStore()


@pytest.fixture()
def http_client(store):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=create_app(store)))


@pytest.fixture()
def engine(http_client):
    return EngineClient(BASE_URL, "worker-test", http_client=http_client)


@pytest.fixture()
def make_workers(http_client):
    def _make(**options):
        options.setdefault("base_url", BASE_URL)
        options.setdefault("worker_id", "worker-test")
        options.setdefault("interval", 10)
        options.setdefault("auto_poll", False)
        options.setdefault("http_client", http_client)
        return Workers(**options)
    return _make


@pytest.fixture()
def eventually():
    async def _wait(predicate, timeout=2.0, step=0.01):
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(step)
    return _wait


@pytest.fixture()
def loop_errors():
    """Collects contexts passed to the running loop's exception handler."""
    contexts = []

    def _install():
        loop = asyncio.get_running_loop()
        previous = loop.get_exception_handler()
        loop.set_exception_handler(lambda _loop, context: contexts.append(context))
        return lambda: loop.set_exception_handler(previous)

    return contexts, _install
