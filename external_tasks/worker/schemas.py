from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class EngineRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class TopicRequest(EngineRequest):
    topic_name: str
    lock_duration: int
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


class FetchAndLockRequest(EngineRequest):
    worker_id: str
    max_tasks: int
    use_priority: Optional[bool] = None
    async_response_timeout: Optional[int] = None
    topics: List[TopicRequest]


class CompleteRequest(EngineRequest):
    worker_id: str
    variables: Optional[Dict[str, Any]] = None
    local_variables: Optional[Dict[str, Any]] = None


class FailureRequest(EngineRequest):
    worker_id: str
    error_message: Optional[str] = None
    error_details: Optional[str] = None
    retries: Optional[int] = None
    retry_timeout: Optional[int] = None


class BpmnErrorRequest(EngineRequest):
    worker_id: str
    error_code: str
    error_message: Optional[str] = None
    variables: Optional[Dict[str, Any]] = None


class ExtendLockRequest(EngineRequest):
    worker_id: str
    new_duration: int
