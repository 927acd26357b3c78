import logging
from typing import Callable, Optional

from external_tasks.client.engine import EngineClient
from external_tasks.errors import EngineProtocolError, InvalidTaskError, TaskOperationError
from external_tasks.worker.models import ExternalTask, Variables

logger = logging.getLogger(__name__)


def _noop_emit(event, *args):
    pass


class TaskService:
    """
    Task-lifecycle calls for one fetched task.

    Each method issues exactly one REST call and never retries. Engine rejections
    (expired lock, unknown task, wrong worker) surface as `TaskOperationError`;
    network problems surface as `TransportError`.
    """
    def __init__(self, engine: EngineClient, task: Optional[ExternalTask] = None, emit: Callable = None):
        self.engine = engine
        self.task = task
        self._emit = emit or _noop_emit

    def _resolve(self, task, operation: str) -> ExternalTask:
        task = task if task is not None else self.task
        if task is None or not getattr(task, "id", None):
            raise InvalidTaskError(f"Couldn't {operation} task: task id is missing")
        return task

    async def _run(self, event: str, operation: str, task: ExternalTask, call):
        try:
            result = await call
        except EngineProtocolError as e:
            error = TaskOperationError(operation, task.id, e)
            logger.warning(f"{error}")
            self._emit(f"{event}:error", task, error)
            raise error from e
        except Exception as e:
            self._emit(f"{event}:error", task, e)
            raise
        self._emit(f"{event}:success", task)
        return result

    async def complete(self, task: ExternalTask = None, variables=None, local_variables=None):
        task = self._resolve(task, "complete")
        variables = Variables.coerce(variables)
        local_variables = Variables.coerce(local_variables)
        return await self._run("complete", "complete", task, self.engine.complete(
            task.id,
            variables=variables.to_payload() if variables is not None else None,
            local_variables=local_variables.to_payload() if local_variables is not None else None,
        ))

    async def handle_failure(self, task: ExternalTask = None, error_message: str = None, error_details: str = None,
                             retries: int = None, retry_timeout: int = None):
        task = self._resolve(task, "handle failure of")
        return await self._run("handle_failure", "handle failure of", task, self.engine.handle_failure(
            task.id,
            error_message=error_message,
            error_details=error_details,
            retries=retries,
            retry_timeout=retry_timeout,
        ))

    async def handle_bpmn_error(self, task: ExternalTask = None, error_code: str = None, error_message: str = None,
                                variables=None):
        task = self._resolve(task, "handle BPMN error of")
        if not error_code:
            raise InvalidTaskError(f"Couldn't handle BPMN error of task {task.id}: error_code is missing")
        variables = Variables.coerce(variables)
        return await self._run("handle_bpmn_error", "handle BPMN error of", task, self.engine.handle_bpmn_error(
            task.id,
            error_code,
            error_message=error_message,
            variables=variables.to_payload() if variables is not None else None,
        ))

    async def extend_lock(self, task: ExternalTask = None, new_duration: int = None):
        task = self._resolve(task, "extend lock of")
        if new_duration is None or new_duration <= 0:
            raise InvalidTaskError(f"Couldn't extend lock of task {task.id}: new_duration must be positive")
        return await self._run("extend_lock", "extend lock of", task, self.engine.extend_lock(task.id, new_duration))

    async def unlock(self, task: ExternalTask = None):
        task = self._resolve(task, "unlock")
        return await self._run("unlock", "unlock", task, self.engine.unlock(task.id))
