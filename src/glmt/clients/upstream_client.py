"""HTTP client for the upstream chat-completions API.

Uses aiohttp.ClientSession. Both modes are bounded by the same timeout:
- buffered: total request time
- streaming: connect time and the gap between chunks, so a long answer
  that keeps producing data is never cut off

There are no retries here. The proxy owns the single stream -> buffered
fallback, and anything more would turn it into a retry loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import aiohttp

from glmt import __version__
from glmt.errors import UpstreamError, UpstreamTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class UpstreamClientConfig:
    """Configuration for the upstream client."""

    url: str
    auth_token: str = ""
    timeout: float = 120.0


class UpstreamStream:
    """An open upstream SSE response.

    Iterate raw byte chunks with ``chunks()``; call ``abort()`` to drop the
    upstream connection early (for example when the downstream client left).
    """

    def __init__(self, response: aiohttp.ClientResponse, trace_id: str, timeout: float):
        self._response = response
        self._trace_id = trace_id
        self._timeout = timeout
        self.bytes_received = 0

    @property
    def status(self) -> int:
        return self._response.status

    async def chunks(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.content.iter_any():
                self.bytes_received += len(chunk)
                yield chunk
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError(
                f"Upstream stream stalled for more than {self._timeout:.0f}s"
            ) from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Upstream stream failed: {e}", 502) from e

    def abort(self) -> None:
        if not self._response.closed:
            logger.debug("[%s] Aborting upstream stream", self._trace_id)
        self._response.close()


@dataclass
class UpstreamClient:
    """HTTP client for the upstream API.

    Example:
        >>> client = UpstreamClient(UpstreamClientConfig(url=..., auth_token=...))
        >>> await client.connect()
        >>> data = await client.send(request, trace_id)
        >>> async with client.stream(request, trace_id) as upstream:
        ...     async for chunk in upstream.chunks():
        ...         ...
    """

    config: UpstreamClientConfig
    _session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        """Initialize the HTTP session."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"glmt-proxy/{__version__}",
        }
        if self.config.auth_token:
            token = self.config.auth_token
            headers["Authorization"] = token if token.startswith("Bearer ") else f"Bearer {token}"
        else:
            logger.warning("No upstream credential configured; requests will be unauthenticated")

        self._session = aiohttp.ClientSession(headers=headers)

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("Client not connected. Call connect() first.")
        return self._session

    async def send(
        self,
        request_body: dict[str, Any],
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Non-streaming request.

        Args:
            request_body: Upstream request body (stream is forced to False)
            trace_id: Optional trace ID for correlation

        Returns:
            Decoded upstream JSON response

        Raises:
            UpstreamTimeoutError: If the upstream does not answer in time
            UpstreamError: If the upstream fails or returns an error
        """
        trace_id = trace_id or f"req_{int(time.time() * 1000)}"
        session = self._require_session()
        request_body = {**request_body, "stream": False}
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)

        start_time = time.time()
        try:
            async with session.post(
                self.config.url, json=request_body, timeout=timeout
            ) as response:
                text = await response.text()
                if response.status != 200:
                    logger.error(
                        "[%s] Upstream error %d: %s", trace_id, response.status, text[:500]
                    )
                    raise UpstreamError(
                        f"Upstream returned {response.status}: {text[:500]}",
                        response.status,
                        text,
                    )
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError(
                f"Upstream request timed out after {self.config.timeout:.0f}s"
            ) from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Upstream connection failed: {e}", 502) from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise UpstreamError(f"Upstream returned invalid JSON: {e}", 502, text) from e
        if not isinstance(data, dict):
            raise UpstreamError("Upstream returned a non-object JSON body", 502, text)

        logger.debug(
            "[%s] Upstream responded in %.2fs (%d bytes)",
            trace_id,
            time.time() - start_time,
            len(text),
        )
        return data

    @asynccontextmanager
    async def stream(
        self,
        request_body: dict[str, Any],
        trace_id: str | None = None,
    ) -> AsyncIterator[UpstreamStream]:
        """Streaming request.

        The context is entered only once the upstream has answered 200 with
        headers, so a failure to establish the stream surfaces here and not
        halfway through a downstream response.

        Raises:
            UpstreamTimeoutError: If connecting or reading times out
            UpstreamError: If the upstream fails or returns an error
        """
        trace_id = trace_id or f"req_{int(time.time() * 1000)}"
        session = self._require_session()
        request_body = {**request_body, "stream": True}
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.config.timeout,
            sock_read=self.config.timeout,
        )

        try:
            response = await session.post(self.config.url, json=request_body, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError(
                f"Upstream stream did not start within {self.config.timeout:.0f}s"
            ) from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Upstream connection failed: {e}", 502) from e

        try:
            if response.status != 200:
                try:
                    error_body = await response.text()
                except (aiohttp.ClientError, asyncio.TimeoutError):
                    error_body = ""
                logger.error(
                    "[%s] Upstream error %d: %s", trace_id, response.status, error_body[:500]
                )
                raise UpstreamError(
                    f"Upstream returned {response.status}: {error_body[:500]}",
                    response.status,
                    error_body,
                )

            logger.debug("[%s] Starting to receive SSE stream", trace_id)
            yield UpstreamStream(response, trace_id, self.config.timeout)
        finally:
            response.close()
