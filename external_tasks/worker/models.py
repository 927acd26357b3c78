import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic.alias_generators import to_camel

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

DATE_FORMAT = "%Y-%m-%dT%H:%M:%S.%f%z"


def format_date(value: datetime) -> str:
    """Renders a datetime the way the engine expects: millisecond precision, numeric offset."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.strftime(DATE_FORMAT)
    # strftime gives microseconds, the engine wants milliseconds
    return text[:23] + text[26:]


def parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, DATE_FORMAT)
    except ValueError:
        return datetime.fromisoformat(value)


def infer_type(value: Any) -> str:
    if value is None:
        return "Null"
    if isinstance(value, bool):
        return "Boolean"
    if isinstance(value, int):
        return "Integer" if INT32_MIN <= value <= INT32_MAX else "Long"
    if isinstance(value, float):
        return "Double"
    if isinstance(value, str):
        return "String"
    if isinstance(value, datetime):
        return "Date"
    if isinstance(value, (dict, list)):
        return "Json"
    raise TypeError(f"Cannot infer an engine variable type for {type(value).__name__}")


class Variables:
    """
    Typed process variables as exchanged with the engine:
    ``{"name": {"value": ..., "type": "String", "valueInfo": {}}}``.
    """
    def __init__(self, typed: Optional[Dict[str, Dict[str, Any]]] = None):
        self._typed: Dict[str, Dict[str, Any]] = {}
        for name, typed_value in (typed or {}).items():
            self._typed[name] = dict(typed_value)

    @classmethod
    def coerce(cls, value) -> Optional["Variables"]:
        if value is None or isinstance(value, Variables):
            return value
        if isinstance(value, dict):
            return cls().set_all(value)
        raise TypeError("variables must be a Variables instance or a dict")

    def __len__(self):
        return len(self._typed)

    def __contains__(self, name):
        return name in self._typed

    def get_typed(self, name: str) -> Optional[Dict[str, Any]]:
        typed = self._typed.get(name)
        if typed is None:
            return None
        result = dict(typed)
        result["value"] = self._deserialize(typed)
        return result

    def get(self, name: str, default: Any = None) -> Any:
        if name not in self._typed:
            return default
        return self._deserialize(self._typed[name])

    def get_all(self) -> Dict[str, Any]:
        return {name: self._deserialize(typed) for name, typed in self._typed.items()}

    def get_all_typed(self) -> Dict[str, Dict[str, Any]]:
        return {name: self.get_typed(name) for name in self._typed}

    def set_typed(self, name: str, value: Any, type: str, value_info: Optional[Dict[str, Any]] = None) -> "Variables":
        self._typed[name] = {"value": value, "type": type, "valueInfo": dict(value_info or {})}
        return self

    def set(self, name: str, value: Any) -> "Variables":
        return self.set_typed(name, value, infer_type(value))

    def set_all(self, values: Dict[str, Any]) -> "Variables":
        for name, value in values.items():
            self.set(name, value)
        return self

    def to_payload(self) -> Dict[str, Dict[str, Any]]:
        """Serializes every variable for a request body."""
        return {name: self._serialize(typed) for name, typed in self._typed.items()}

    @staticmethod
    def _serialize(typed: Dict[str, Any]) -> Dict[str, Any]:
        value = typed.get("value")
        kind = (typed.get("type") or "").lower()
        if kind == "json" and not isinstance(value, str):
            value = json.dumps(value)
        elif kind == "date" and isinstance(value, datetime):
            value = format_date(value)
        return {"value": value, "type": typed.get("type"), "valueInfo": typed.get("valueInfo") or {}}

    @staticmethod
    def _deserialize(typed: Dict[str, Any]) -> Any:
        value = typed.get("value")
        kind = (typed.get("type") or "").lower()
        if isinstance(value, str):
            if kind == "json":
                return json.loads(value)
            if kind == "date":
                return parse_date(value)
        return value


class ExternalTask(BaseModel):
    """Read-only view of one locked work item from a fetch-and-lock response."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    topic_name: str
    worker_id: Optional[str] = None
    lock_expiration_time: Optional[str] = None
    activity_id: Optional[str] = None
    activity_instance_id: Optional[str] = None
    execution_id: Optional[str] = None
    process_instance_id: Optional[str] = None
    process_definition_id: Optional[str] = None
    process_definition_key: Optional[str] = None
    business_key: Optional[str] = None
    tenant_id: Optional[str] = None
    retries: Optional[int] = None
    priority: Optional[int] = None
    error_message: Optional[str] = None
    raw_variables: Dict[str, Any] = Field(default_factory=dict, alias="variables")

    _variables: Variables = PrivateAttr()

    def model_post_init(self, __context):
        self._variables = Variables(self.raw_variables)

    @property
    def variables(self) -> Variables:
        return self._variables
