"""HTTP bundle: generic outbound HTTP calls via httpx."""

import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from core.context import ExecutionContext
from llm.models import ActionResult
from services.action_registry import ActionSpec

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]
MAX_RESPONSE_CHARS = 20000

HTTP_REQUEST_PARAMETERS = {
    "type": "object",
    "properties": {
        "method": {"type": "string", "enum": ALLOWED_METHODS},
        "url": {"type": "string", "description": "Absolute http(s) URL"},
        "headers": {"type": "object", "description": "Request headers"},
        "query": {"type": "object", "description": "Query string parameters"},
        "body": {"description": "JSON body for POST/PUT/PATCH"},
    },
    "required": ["method", "url"],
}


class HttpRequestAction:
    """Issue one HTTP request and return status, headers and a decoded body."""

    def __init__(
        self,
        timeout: float = 30.0,
        network_allowlist: Optional[List[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.network_allowlist = network_allowlist or []
        self._transport = transport

    def _check_url(self, url: str) -> Optional[str]:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return f"Unsupported URL: {url}"
        if self.network_allowlist and parsed.hostname not in self.network_allowlist:
            return f"Host '{parsed.hostname}' not in network allowlist"
        return None

    async def __call__(self, arguments: Dict[str, Any], context: ExecutionContext) -> ActionResult:
        method = arguments["method"].upper()
        url = arguments["url"]
        problem = self._check_url(url)
        if problem:
            return ActionResult.fail(problem)

        start_time = time.time()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=True
            ) as client:
                response = await client.request(
                    method,
                    url,
                    headers=arguments.get("headers") or None,
                    params=arguments.get("query") or None,
                    json=arguments.get("body") if method in ("POST", "PUT", "PATCH") else None,
                )
        except httpx.TimeoutException:
            return ActionResult.fail("Request timed out", {"url": url})
        except httpx.HTTPError as e:
            logger.error(f"HTTP request to {url} failed for tenant {context.tenant_id}: {e}")
            return ActionResult.fail(f"Request failed: {e}", {"url": url})

        duration_ms = round((time.time() - start_time) * 1000, 2)
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text[:MAX_RESPONSE_CHARS]

        if response.status_code >= 400:
            return ActionResult.fail(
                f"HTTP {response.status_code}: {response.text[:500]}",
                {"status_code": response.status_code, "url": url},
            )
        return ActionResult.ok({
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": body,
            "duration_ms": duration_ms,
        })


def http_bundle_factory(transport: Optional[httpx.AsyncBaseTransport] = None, network_allowlist: Optional[List[str]] = None):
    action = HttpRequestAction(network_allowlist=network_allowlist, transport=transport)

    def factory(context: ExecutionContext) -> Dict[str, ActionSpec]:
        return {
            "http_request": ActionSpec(
                handler=action,
                description="Send an HTTP request and return the response status, headers and body.",
                parameters=HTTP_REQUEST_PARAMETERS,
                title="HTTP Request",
                icon="globe",
            ),
        }

    return factory
