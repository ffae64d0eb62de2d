from __future__ import annotations
import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

import aiohttp
from opentelemetry import trace

from apiforge.definitions.models import ProviderDefinition

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("apiforge.connector")


class UpstreamError(RuntimeError):
    """A provider call failed: non-2xx, network error, timeout or bad JSON."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class HttpProviderClient:
    """
    Issues the outbound request described by a ProviderDefinition.

    - Shared aiohttp.ClientSession (connection pooling), created lazily
    - One attempt per call: no retries, no caching
    - GET sends provider.params as the query string, POST sends provider.body
      as JSON
    - Provider headers override the default User-Agent / Accept headers
    - OpenTelemetry span per call
    """

    DEFAULT_TIMEOUT_S = 30.0
    DEFAULT_HEADERS = {"User-Agent": "apiforge/1.0", "Accept": "*/*"}
    PREVIEW_CHARS = 500

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._session = session
        self._own_session = session is None
        self._timeout_s = timeout_s

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_s)
            )
        return self._session

    async def close(self) -> None:
        if self._own_session and self._session and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def call(self, provider: ProviderDefinition) -> Any:
        """
        Perform the provider call and return the parsed JSON body.

        Raises:
            UpstreamError: non-2xx status, transport failure, timeout, or a
                body that is not JSON.
        """
        with tracer.start_as_current_span(
            "provider.call",
            attributes={
                "provider.id": provider.id,
                "provider.method": provider.method,
                "provider.url": provider.url,
            },
        ) as span:
            session = await self._get_session()
            logger.info("Calling provider %s: %s %s", provider.id, provider.method, provider.url)
            try:
                async with session.request(provider.method, provider.url, **self._request_kwargs(provider)) as resp:
                    span.set_attribute("provider.status", resp.status)
                    if not 200 <= resp.status < 300:
                        text = await resp.text()
                        logger.error(
                            "Provider %s returned %d: %s",
                            provider.id, resp.status, text[:200],
                        )
                        raise UpstreamError(
                            f"External API failed: HTTP {resp.status}: {resp.reason}",
                            status=resp.status,
                        )
                    return await resp.json(content_type=None)
            except UpstreamError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                logger.error("Provider %s call failed: %r", provider.id, exc)
                raise UpstreamError(f"External API failed: {exc!r}") from exc

    async def probe(self, provider: ProviderDefinition) -> Dict[str, Any]:
        """
        Test a provider the way an API client would: never raises on status.

        Returns {success, status, statusText, duration, request, dataPreview};
        transport failures return success=False, status=0 and an error.
        """
        request = {
            "method": provider.method,
            "url": provider.url,
            "headers": dict(provider.headers),
            "params": dict(provider.params) if provider.method == "GET" else {},
        }
        if provider.method == "POST":
            request["body"] = provider.body if provider.body is not None else {}

        session = await self._get_session()
        start = time.time()
        try:
            async with session.request(provider.method, provider.url, **self._request_kwargs(provider)) as resp:
                text = await resp.text()
                duration = int((time.time() - start) * 1000)
                return {
                    "success": 200 <= resp.status < 300,
                    "status": resp.status,
                    "statusText": resp.reason,
                    "duration": duration,
                    "request": request,
                    "dataPreview": _preview(text, self.PREVIEW_CHARS),
                }
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            duration = int((time.time() - start) * 1000)
            logger.warning("Provider probe %s failed: %r", provider.id, exc)
            return {
                "success": False,
                "status": 0,
                "statusText": repr(exc),
                "duration": duration,
                "error": repr(exc),
            }

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    def _request_kwargs(self, provider: ProviderDefinition) -> Dict[str, Any]:
        headers = {**self.DEFAULT_HEADERS, **_as_strings(provider.headers)}
        kwargs: Dict[str, Any] = {"headers": headers}
        if provider.method == "GET" and provider.params:
            kwargs["params"] = _as_strings(provider.params)
        if provider.method == "POST" and provider.body is not None:
            kwargs["json"] = provider.body
        return kwargs


def _as_strings(params: Dict[str, Any]) -> Dict[str, str]:
    """Render query or header values as strings; None entries are dropped."""
    out: Dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            out[key] = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            out[key] = json.dumps(value, separators=(",", ":"))
        else:
            out[key] = str(value)
    return out


def _preview(text: str, limit: int) -> str:
    try:
        return json.dumps(json.loads(text), indent=2)[:limit]
    except ValueError:
        return text[:limit]
