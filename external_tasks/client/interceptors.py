import asyncio
import base64
import inspect
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from external_tasks.errors import ConfigurationError, EngineProtocolError, TransportError

logger = logging.getLogger(__name__)

RequestConfig = Dict[str, Any]
Interceptor = Callable[[RequestConfig], Any]


def as_callables(value, name: str) -> List[Callable]:
    """Normalizes `None`, a single callable or a sequence of callables into a list."""
    if value is None:
        return []
    if callable(value):
        return [value]
    try:
        items = list(value)
    except TypeError:
        raise ConfigurationError(f"{name} must be a callable or a sequence of callables") from None
    for item in items:
        if not callable(item):
            raise ConfigurationError(f"{name} must contain only callables, got {item!r}")
    return items


class RequestPipeline:
    """
    Ordered chain of `config -> config` transforms applied to every outbound request.
    Each interceptor gets a fresh copy of the base config, so nothing leaks between requests.
    """
    def __init__(self, interceptors=None):
        self.interceptors: List[Interceptor] = as_callables(interceptors, "interceptors")

    async def build(self, base: RequestConfig) -> RequestConfig:
        config = dict(base)
        config["headers"] = dict(base.get("headers") or {})

        for interceptor in self.interceptors:
            result = interceptor(config)
            if inspect.isawaitable(result):
                result = await result
            if result is None:
                raise ConfigurationError(f"Interceptor {interceptor!r} returned no request config")
            config = result
        return config


class BasicAuthInterceptor:
    def __init__(self, username: str, password: str):
        if not username or password is None:
            raise ConfigurationError("BasicAuthInterceptor needs a username and a password")
        token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        self._header = f"Basic {token}"

    def __call__(self, config: RequestConfig) -> RequestConfig:
        config["headers"]["Authorization"] = self._header
        return config


class KeycloakAuthInterceptor:
    """
    Fetches an OAuth2 client-credentials token and injects it as a bearer header.
    The token is cached until `expires_in - cache_offset` seconds have passed.
    """
    def __init__(
        self,
        token_endpoint: str,
        client_id: str,
        client_secret: str,
        cache_offset: int = 10,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        if not token_endpoint or not client_id or not client_secret:
            raise ConfigurationError(
                "KeycloakAuthInterceptor needs token_endpoint, client_id and client_secret"
            )
        self.token_endpoint = token_endpoint
        self.client_id = client_id
        self.client_secret = client_secret
        self.cache_offset = cache_offset
        self.owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def _get_token(self) -> str:
        async with self._lock:
            if self._token and time.monotonic() < self._expires_at:
                return self._token

            try:
                resp = await self.http_client.post(
                    self.token_endpoint,
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                )
            except httpx.RequestError as e:
                raise TransportError(f"Keycloak token request failed: {e}") from e

            if resp.is_error:
                raise EngineProtocolError(
                    resp.status_code,
                    f"Keycloak token request rejected: {resp.text}",
                    "KeycloakError",
                )

            try:
                body = resp.json()
                token = body["access_token"]
                expires_in = float(body.get("expires_in", 0))
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                raise EngineProtocolError(
                    resp.status_code,
                    f"Keycloak token response has no usable access_token: {e!r}",
                    "KeycloakError",
                ) from e
            if not isinstance(token, str) or not token:
                raise EngineProtocolError(resp.status_code, "Keycloak returned an empty access_token", "KeycloakError")

            self._token = token
            self._expires_at = time.monotonic() + max(0.0, expires_in - self.cache_offset)
            logger.debug({"event": "keycloak_token_refreshed", "expires_in": expires_in})
            return self._token

    async def __call__(self, config: RequestConfig) -> RequestConfig:
        token = await self._get_token()
        config["headers"]["Authorization"] = f"Bearer {token}"
        return config

    async def aclose(self):
        if self.owns_http_client:
            await self.http_client.aclose()
