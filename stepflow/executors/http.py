"""HTTP step executor."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..constants import DEFAULT_HTTP_TIMEOUT, HTTP_METHODS
from ..contracts import Step, StepType
from ..errors import ConfigError, ProviderError, StepTimeoutError, TransportError
from .base import StepExecutor

logger = logging.getLogger(__name__)


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class HttpExecutor(StepExecutor):
    """Issue an HTTP request described by the step config.

    Recognised config keys: ``url``, ``method``, ``headers``, ``params``,
    ``body`` (sent as JSON when it is a mapping or list) and ``timeout``.
    The output is ``{"status_code", "headers", "body"}``.
    """

    step_type = StepType.HTTP

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        follow_redirects: bool = True,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._follow_redirects = follow_redirects

    def _build_request(self, step: Step) -> Dict[str, Any]:
        config = step.config
        method = str(config["method"]).upper()
        if method not in HTTP_METHODS:
            raise ConfigError(f"Step {step.id}: unsupported http method {method}")
        request: Dict[str, Any] = {
            "method": method,
            "url": str(config["url"]),
            "headers": {k: str(v) for k, v in (config.get("headers") or {}).items()},
            "params": config.get("params") or None,
        }
        body = config.get("body")
        if isinstance(body, (dict, list)):
            request["json"] = body
        elif body is not None:
            request["content"] = str(body)
        return request

    async def _send(self, client: httpx.AsyncClient, step: Step) -> httpx.Response:
        request = self._build_request(step)
        timeout = step.config.get("timeout", self._timeout)
        try:
            return await client.request(timeout=timeout, **request)
        except httpx.TimeoutException as exc:
            raise StepTimeoutError(
                f"{request['method']} {request['url']} timed out: {exc}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(
                f"{request['method']} {request['url']} failed: {type(exc).__name__}: {exc}"
            ) from exc

    async def execute(self, step: Step, context: Mapping[str, Any]) -> Any:
        if self._client is not None:
            response = await self._send(self._client, step)
        else:
            async with httpx.AsyncClient(follow_redirects=self._follow_redirects) as client:
                response = await self._send(client, step)

        body = _decode_body(response)
        logger.debug(
            f"Step {step.id}: {response.request.method} {response.request.url} -> {response.status_code}"
        )
        if response.status_code >= 400:
            raise ProviderError(
                f"{response.request.method} {response.request.url} returned {response.status_code}",
                status_code=response.status_code,
                response=body,
            )
        return {
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": body,
        }
