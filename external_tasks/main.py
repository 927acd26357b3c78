import argparse
import asyncio
import importlib
import logging
import signal
from typing import Callable, List, Tuple

from external_tasks.client.interceptors import BasicAuthInterceptor
from external_tasks.config import WorkerSettings
from external_tasks.errors import ConfigurationError
from external_tasks.logger import make_logger
from external_tasks.workers import Workers

logger = logging.getLogger("external_tasks.main")


def load_handler(target: str) -> Callable:
    """Resolves ``package.module:callable``."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Handler must look like 'module:callable', got {target!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import handler module {module_name!r}: {e}") from e
    handler = getattr(module, attr, None)
    if handler is None or not callable(handler):
        raise ConfigurationError(f"{target!r} is not a callable")
    return handler


def parse_topics(values: List[str]) -> List[Tuple[str, str]]:
    topics = []
    for value in values:
        topic, sep, target = value.partition("=")
        if not sep or not topic or not target:
            raise ConfigurationError(f"--topic must look like 'NAME=module:callable', got {value!r}")
        topics.append((topic, target))
    return topics


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run external task handlers against a workflow engine.")
    parser.add_argument("--topic", action="append", default=[], required=True,
                        help="NAME=module:callable, may be repeated")
    parser.add_argument("--base-url", help="engine REST base URL (or EXTERNAL_TASK_BASE_URL)")
    parser.add_argument("--worker-id")
    parser.add_argument("--max-tasks", type=int)
    parser.add_argument("--interval", type=int, help="milliseconds between polls")
    parser.add_argument("--lock-duration", type=int, help="default lock duration in milliseconds")
    parser.add_argument("--async-response-timeout", type=int, help="enable long polling (milliseconds)")
    parser.add_argument("--username", help="basic auth user")
    parser.add_argument("--password", help="basic auth password")
    parser.add_argument("--log-level", default="INFO")
    return parser


async def run(args: argparse.Namespace):
    overrides = {
        key: value
        for key, value in {
            "base_url": args.base_url,
            "worker_id": args.worker_id,
            "max_tasks": args.max_tasks,
            "interval": args.interval,
            "lock_duration": args.lock_duration,
            "async_response_timeout": args.async_response_timeout,
        }.items()
        if value is not None
    }
    settings = WorkerSettings.load(auto_poll=False, **overrides)

    interceptors = []
    if args.username:
        interceptors.append(BasicAuthInterceptor(args.username, args.password or ""))

    workers = Workers(
        settings,
        interceptors=interceptors,
        use=make_logger(getattr(logging, args.log_level.upper(), logging.INFO)),
    )
    for topic, target in parse_topics(args.topic):
        workers.subscribe(topic, load_handler(target))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, workers.stop)
        except NotImplementedError:
            pass

    logger.info({"event": "worker_startup", "url": settings.base_url, "worker_id": settings.worker_id})
    try:
        await workers.run_forever()
    finally:
        await workers.close()
        logger.info({"event": "worker_shutdown", "worker_id": settings.worker_id})


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format='[%(process)d] %(message)s')
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
