import logging

log = logging.getLogger("external_tasks")

ACTIONS = ("complete", "handle_failure", "handle_bpmn_error", "extend_lock", "unlock")


def make_logger(level: int = logging.INFO, target: logging.Logger = None):
    """
    Builds a `use` middleware that logs every worker event.
    Success events are INFO, failures ERROR, poll chatter DEBUG.
    """
    target = target or log

    def emit(event_level, message):
        if event_level >= level:
            target.log(event_level, message)

    def middleware(workers):
        worker_id = workers.settings.worker_id

        workers.on("subscribe", lambda topic, handle: emit(
            logging.INFO, f"subscribed to topic {topic}"))
        workers.on("unsubscribe", lambda topic, subscription: emit(
            logging.INFO, f"unsubscribed from topic {topic}"))
        workers.on("poll:start", lambda: emit(
            logging.DEBUG, f"{worker_id} polling"))
        workers.on("poll:stop", lambda: emit(
            logging.INFO, f"{worker_id} polling stopped"))
        workers.on("poll:success", lambda tasks: emit(
            logging.DEBUG if not tasks else logging.INFO, f"{worker_id} polled {len(tasks)} tasks"))
        workers.on("poll:error", lambda error: emit(
            logging.ERROR, f"{worker_id} polling failed with {error}"))

        for action in ACTIONS:
            label = action.replace("_", " ")
            workers.on(f"{action}:success", lambda task, label=label: emit(
                logging.INFO, f"{label} succeeded for task {task.id}"))
            workers.on(f"{action}:error", lambda task, error, label=label: emit(
                logging.ERROR, f"{label} failed for task {task.id}: {error}"))
        return workers

    return middleware


logger = make_logger()
