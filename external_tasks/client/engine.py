import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from external_tasks.client.interceptors import RequestPipeline
from external_tasks.errors import EngineProtocolError, ExternalTaskError, TransportError
from external_tasks.worker.schemas import (
    BpmnErrorRequest,
    CompleteRequest,
    ExtendLockRequest,
    FailureRequest,
    FetchAndLockRequest,
)

logger = logging.getLogger(__name__)


class EngineClient:
    """
    Thin async wrapper around the engine's external-task REST resource.
    Every call goes through the request pipeline and is sent exactly once.
    """
    def __init__(
        self,
        base_url: str,
        worker_id: str,
        pipeline: Optional[RequestPipeline] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_ms: int = 10000,
    ):
        self.base_url = base_url.rstrip("/")
        self.worker_id = worker_id
        self.pipeline = pipeline or RequestPipeline()
        self.timeout = timeout_ms / 1000.0
        self.owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient()

    async def _make_request(self, method: str, endpoint: str, json_data: dict = None, timeout: float = None):
        timeout = timeout or self.timeout
        url = f"{self.base_url}{endpoint}"

        try:
            # A hung interceptor is bounded by the same timeout as the transport call
            config = await asyncio.wait_for(
                self.pipeline.build({"headers": {"Accept": "application/json"}, "timeout": timeout}),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Request pipeline timed out for {method} {endpoint}") from e
        except ExternalTaskError:
            raise
        except Exception as e:
            raise TransportError(f"Request pipeline failed for {method} {endpoint}: {e!r}") from e

        kwargs = {"json": json_data, "headers": config.get("headers"), "timeout": config.get("timeout", timeout)}
        if "auth" in config:
            kwargs["auth"] = config["auth"]

        try:
            resp = await self.http_client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timed out calling {method} {endpoint}: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"Failed to reach engine at {url}: {e}") from e

        if resp.is_error:
            try:
                body = resp.json()
            except ValueError:
                body = None
            details = EngineProtocolError.parse_body(body, resp.text or resp.reason_phrase)
            raise EngineProtocolError(resp.status_code, details["message"], details["type"])

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise EngineProtocolError(
                resp.status_code, f"Engine returned a body that is not JSON for {method} {endpoint}", "InvalidResponse",
            ) from e

    # --- External Task API ---
    async def fetch_and_lock(self, request: FetchAndLockRequest, timeout: float = None) -> List[Dict[str, Any]]:
        body = request.to_body()
        logger.debug(json.dumps({
            "event": "fetch_and_lock",
            "worker_id": self.worker_id,
            "topics": [t["topicName"] for t in body["topics"]],
        }))
        tasks = await self._make_request("POST", "/external-task/fetchAndLock", body, timeout=timeout)
        if tasks is None:
            return []
        if not isinstance(tasks, list):
            raise EngineProtocolError(200, "Fetch and lock response is not a list of tasks", "InvalidResponse")
        return tasks

    async def complete(self, task_id: str, variables: dict = None, local_variables: dict = None):
        req = CompleteRequest(worker_id=self.worker_id, variables=variables, local_variables=local_variables)
        return await self._make_request("POST", f"/external-task/{task_id}/complete", req.to_body())

    async def handle_failure(self, task_id: str, error_message: str = None, error_details: str = None,
                             retries: int = None, retry_timeout: int = None):
        req = FailureRequest(
            worker_id=self.worker_id,
            error_message=error_message,
            error_details=error_details,
            retries=retries,
            retry_timeout=retry_timeout,
        )
        return await self._make_request("POST", f"/external-task/{task_id}/failure", req.to_body())

    async def handle_bpmn_error(self, task_id: str, error_code: str, error_message: str = None, variables: dict = None):
        req = BpmnErrorRequest(
            worker_id=self.worker_id,
            error_code=error_code,
            error_message=error_message,
            variables=variables,
        )
        return await self._make_request("POST", f"/external-task/{task_id}/bpmnError", req.to_body())

    async def extend_lock(self, task_id: str, new_duration: int):
        req = ExtendLockRequest(worker_id=self.worker_id, new_duration=new_duration)
        return await self._make_request("POST", f"/external-task/{task_id}/extendLock", req.to_body())

    async def unlock(self, task_id: str):
        return await self._make_request("POST", f"/external-task/{task_id}/unlock")

    async def aclose(self):
        if self.owns_http_client:
            await self.http_client.aclose()
