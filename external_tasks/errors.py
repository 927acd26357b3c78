from typing import Any, Dict, Optional


class ExternalTaskError(Exception):
    pass


class ConfigurationError(ExternalTaskError):
    pass


class InvalidSubscriptionError(ConfigurationError):
    pass


class InvalidTaskError(ExternalTaskError, ValueError):
    pass


class TransportError(ExternalTaskError):
    """Network failure or timeout while talking to the engine."""


class EngineProtocolError(ExternalTaskError):
    """The engine answered with a 4xx/5xx status."""

    def __init__(self, status_code: int, message: str, error_type: Optional[str] = None):
        super().__init__(f"{status_code} {error_type or 'EngineError'}: {message}")
        self.status_code = status_code
        self.error_type = error_type
        self.message = message

    @staticmethod
    def parse_body(body: Any, fallback: str) -> Dict[str, Optional[str]]:
        if isinstance(body, dict):
            return {
                "type": body.get("type"),
                "message": body.get("message") or fallback,
            }
        return {"type": None, "message": fallback}


class TaskOperationError(EngineProtocolError):
    def __init__(self, operation: str, task_id: str, cause: EngineProtocolError):
        super().__init__(cause.status_code, cause.message, cause.error_type)
        self.args = (f"Couldn't {operation} task {task_id}: {cause}",)
        self.operation = operation
        self.task_id = task_id
