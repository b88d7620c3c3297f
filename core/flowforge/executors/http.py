"""
HTTP Tool Executor - Calls external HTTP APIs for "tool" and "webhook" nodes.

Node config:
    url: Target URL (required)
    method: HTTP method, default GET ("webhook" nodes default to POST)
    headers: Mapping of extra headers
    params: Query parameters
    body: JSON body (any JSON value)
    timeout: Request timeout in seconds, default 30

Any string in the config may reference run variables as ``{{name}}`` or
``{{node_output.field}}``. A string that is exactly one placeholder is
replaced by the raw value (keeping its type).

Failures raise NodeExecutionError with messages that the default retry
policy classifies: 401 -> "authentication", 403 -> "authorization",
404 -> "not_found", other 4xx -> "validation", 429 -> "rate_limit",
5xx and transport errors -> "network", timeouts -> "timeout".
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

import httpx

from flowforge.errors import ConditionEvaluationError, NodeExecutionError
from flowforge.graph.conditions import resolve_path

if TYPE_CHECKING:
    from collections.abc import Mapping

    from flowforge.graph.node import NodeSpec
    from flowforge.runtime.context import ExecutionContext

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def render_template(value: Any, variables: Mapping[str, Any]) -> Any:
    """
    Substitute ``{{path}}`` placeholders, recursing into lists and dicts.

    Raises:
        ConditionEvaluationError: if a placeholder names a missing variable
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole:
            return resolve_path(variables, whole.group(1))
        return _PLACEHOLDER.sub(lambda m: str(resolve_path(variables, m.group(1))), value)
    if isinstance(value, dict):
        return {k: render_template(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [render_template(v, variables) for v in value]
    return value


class HttpToolExecutor:
    """
    Executes HTTP requests described by a node's config.

    Example:
        async with httpx.AsyncClient() as client:
            registry.register("tool", HttpToolExecutor(client=client))
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = DEFAULT_TIMEOUT):
        """
        Args:
            client: Shared client; a short-lived one is created per call if None
            timeout: Default request timeout in seconds
        """
        self._client = client
        self._timeout = timeout

    async def execute(self, node: NodeSpec, context: ExecutionContext) -> dict[str, Any]:
        try:
            config = render_template(node.config, context.variables)
        except ConditionEvaluationError as e:
            raise NodeExecutionError(node.id, f"Template validation failed: {e}") from e

        url = config.get("url")
        if not url:
            raise NodeExecutionError(node.id, f"Node '{node.id}' validation failed: no url")

        default_method = "POST" if node.type == "webhook" else "GET"
        method = str(config.get("method") or default_method).upper()
        timeout = float(config.get("timeout") or self._timeout)

        request_kwargs: dict[str, Any] = {
            "headers": {"Accept": "application/json", **(config.get("headers") or {})},
            "params": config.get("params") or None,
            "timeout": timeout,
        }
        if config.get("body") is not None and method not in ("GET", "HEAD"):
            request_kwargs["json"] = config["body"]

        logger.info(f"   → {method} {url}")
        try:
            if self._client is not None:
                response = await self._client.request(method, url, **request_kwargs)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.request(method, url, **request_kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"   ✗ {method} {url} timed out")
            raise NodeExecutionError(node.id, "HTTP request timeout") from e
        except httpx.TransportError as e:
            raise NodeExecutionError(node.id, f"HTTP network error: {e}") from e

        self._raise_for_status(node, response)
        return {"status": response.status_code, "response": self._parse_body(response)}

    def _raise_for_status(self, node: NodeSpec, response: httpx.Response) -> None:
        """Map HTTP error codes onto retry-policy vocabulary."""
        code = response.status_code
        if code < 400:
            return
        if code == 401:
            message = "authentication failed"
        elif code == 403:
            message = "authorization denied"
        elif code == 404:
            message = "not_found"
        elif code == 429:
            message = "rate_limit exceeded"
        elif code >= 500:
            message = "network error (server)"
        else:
            message = "validation error (request rejected)"
        # The URL stays out of the message: retry patterns match on it
        logger.warning(f"   ✗ HTTP {code} from {response.request.url}")
        raise NodeExecutionError(node.id, f"HTTP {code} {message}")

    def _parse_body(self, response: httpx.Response) -> Any:
        if not response.content:
            return None
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return response.json()
            except ValueError:
                logger.warning(f"Unparseable JSON body ({len(response.content)} bytes)")
        return response.text
