"""GLMT proxy server.

Binds a loopback HTTP listener that accepts Messages API requests and
forwards them to the upstream chat-completions API:

1. Reads and validates the inbound request (POST only, bounded body, JSON)
2. Transforms it to the upstream format
3. Streams the upstream response, translating each SSE event into the
   block-lifecycle events the client expects, or forwards a buffered call
4. Falls back once from streaming to buffered if the stream cannot be
   established

Error envelope for every failure:
    {"type": "error", "error": {"type": ..., "message": ...}}

Once an SSE response has started, failures are reported as a single
``event: error`` frame followed by end-of-stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Any

from aiohttp import web

from glmt.clients.upstream_client import UpstreamClient, UpstreamClientConfig, UpstreamStream
from glmt.config import GlmtProxyConfig
from glmt.errors import (
    GlmtError,
    RequestTooLargeError,
    UpstreamError,
)
from glmt.streaming.accumulator import DeltaAccumulator
from glmt.streaming.sse_parser import SSEParser
from glmt.tracing import RequestTracer
from glmt.transforms.transformer import GlmtTransformer
from glmt.transforms.types import DownstreamEvent
from glmt.transforms.validation import validate_request

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


@dataclass
class GlmtProxyServer:
    """Loopback proxy translating Messages API traffic to an upstream GLM API.

    Example:
        >>> config = GlmtProxyConfig.from_env()
        >>> server = GlmtProxyServer(config=config)
        >>> port = await server.start()
        >>> print(f"PROXY_READY:{port}")
        >>> await server.serve()
    """

    config: GlmtProxyConfig
    port: int | None = None
    _app: web.Application | None = None
    _runner: web.AppRunner | None = None
    _client: UpstreamClient | None = None
    _shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    _tracer: RequestTracer = field(init=False)
    _transformer: GlmtTransformer = field(init=False)

    def __post_init__(self) -> None:
        self._tracer = RequestTracer(debug_dir=self.config.debug_dir)
        self._transformer = GlmtTransformer(
            upstream_model=self.config.upstream_model,
            default_thinking=self.config.default_thinking,
            explicit_reasoning=self.config.explicit_reasoning,
            verbose=self.config.verbose,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> int:
        """Bind the listener and return the OS-assigned port."""
        self._client = UpstreamClient(
            config=UpstreamClientConfig(
                url=self.config.upstream_url,
                auth_token=self.config.auth_token,
                timeout=self.config.timeout,
            )
        )
        await self._client.connect()

        self._app = web.Application(client_max_size=self.config.max_body_size)
        self._app.router.add_route("*", "/{tail:.*}", self._handle_request)

        # Cancel the handler when the client disconnects so the upstream
        # response is closed instead of read to completion
        self._runner = web.AppRunner(self._app, handler_cancellation=True)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        self.port = self._runner.addresses[0][1]

        if self._tracer.enabled:
            logger.warning(
                "Debug logging enabled: full request/response payloads are written to %s. "
                "These files contain complete chat content and may contain sensitive data.",
                self._tracer.debug_dir,
            )
        logger.info(
            "GLMT proxy listening on %s:%d -> %s (%s)",
            self.config.host,
            self.port,
            self.config.upstream_url,
            self.config.upstream_model,
        )
        return self.port

    async def serve(self) -> None:
        """Run until request_shutdown() is called, then stop."""
        if self._runner is None:
            await self.start()
        try:
            await self._shutdown_event.wait()
            logger.info("GLMT proxy shutdown requested")
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop the proxy server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        if self._client:
            await self._client.close()
            self._client = None

    # =========================================================================
    # Request handling
    # =========================================================================

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        """Single entry point for every method and path."""
        if request.method != "POST":
            return self._error_response(
                "invalid_request_error",
                f"Method {request.method} not allowed; only POST is accepted",
                405,
                headers={"Allow": "POST"},
            )

        try:
            raw = await self._read_body(request)
        except RequestTooLargeError as e:
            logger.warning("Rejected oversized request: %s", e)
            return self._error_response("request_too_large", str(e), 413)

        try:
            body = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return self._error_response("invalid_request_error", f"Invalid JSON: {e}", 400)
        if not isinstance(body, dict):
            return self._error_response(
                "invalid_request_error", "Request body must be a JSON object", 400
            )

        trace_id = self._tracer.generate_trace_id(body)
        start_time = time.time()
        self._tracer.log_request(
            trace_id,
            request.method,
            request.path,
            len(raw),
            len(body.get("messages") or []),
        )

        validation_errors = validate_request(body)
        if validation_errors:
            message = "; ".join(validation_errors)
            self._tracer.log_response(trace_id, 400, time.time() - start_time, error=message)
            return self._error_response("invalid_request_error", message, 400)

        self._tracer.save_debug(trace_id, "1_anthropic_request.json", body)

        try:
            return await self._dispatch(request, body, trace_id, start_time)
        except Exception as e:
            logger.exception("[%s] Unexpected error handling request", trace_id)
            self._tracer.log_response(trace_id, 500, time.time() - start_time, error=str(e))
            return self._error_response("proxy_error", f"Internal error: {e}", 500)

    async def _read_body(self, request: web.Request) -> bytes:
        """Read the body incrementally, stopping as soon as it exceeds the cap."""
        limit = self.config.max_body_size
        if request.content_length is not None and request.content_length > limit:
            raise RequestTooLargeError(
                f"Request body of {request.content_length} bytes exceeds the {limit} byte limit"
            )

        buffer = bytearray()
        async for chunk in request.content.iter_chunked(READ_CHUNK_SIZE):
            buffer.extend(chunk)
            if len(buffer) > limit:
                raise RequestTooLargeError(f"Request body exceeds the {limit} byte limit")
        return bytes(buffer)

    async def _dispatch(
        self,
        request: web.Request,
        body: dict[str, Any],
        trace_id: str,
        start_time: float,
    ) -> web.StreamResponse:
        upstream_request, directive = self._transformer.transform_request(body)
        self._tracer.save_debug(trace_id, "2_upstream_request.json", upstream_request)

        logger.info(
            "[%s] Request: model=%s, messages=%d, stream=%s, thinking=%s/%s (%s), tools=%d",
            trace_id,
            body.get("model", "unknown"),
            len(body.get("messages") or []),
            upstream_request["stream"],
            "on" if directive.enabled else "off",
            directive.effort.value,
            directive.source,
            len(body.get("tools") or []),
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[%s] Upstream request: %s",
                trace_id,
                json.dumps(upstream_request, indent=2, default=str),
            )

        if body.get("stream") is False:
            return await self._handle_buffered(upstream_request, trace_id, start_time)
        return await self._handle_streaming(request, upstream_request, trace_id, start_time)

    async def _handle_buffered(
        self,
        upstream_request: dict[str, Any],
        trace_id: str,
        start_time: float,
        stream_error: UpstreamError | None = None,
    ) -> web.Response:
        """Forward one buffered call.

        When this runs as the fallback for a failed stream, a failure here
        surfaces the original stream error, not this one.
        """
        if not self._client:
            return self._error_response("api_error", "Upstream client not initialized", 503)

        try:
            data = await self._client.send(upstream_request, trace_id)
            self._tracer.save_debug(trace_id, "3_upstream_response.json", data)
            result = self._transformer.transform_response(data)
        except UpstreamError as e:
            if stream_error is not None:
                logger.error("[%s] Buffered fallback also failed: %s", trace_id, e)
                e = stream_error
            else:
                logger.error("[%s] Upstream error: %s", trace_id, e)
            self._tracer.log_response(
                trace_id, self._status_for(e), time.time() - start_time, error=str(e)
            )
            return self._error_response(e.error_type, str(e), self._status_for(e))

        self._tracer.save_debug(trace_id, "4_anthropic_response.json", result)
        usage = result["usage"]
        self._tracer.log_response(
            trace_id,
            200,
            time.time() - start_time,
            mode="buffered",
            tokens_in=usage["input_tokens"],
            tokens_out=usage["output_tokens"],
        )
        return web.json_response(result)

    async def _handle_streaming(
        self,
        request: web.Request,
        upstream_request: dict[str, Any],
        trace_id: str,
        start_time: float,
    ) -> web.StreamResponse:
        """Stream the upstream response, falling back to buffered if it never starts."""
        if not self._client:
            return self._error_response("api_error", "Upstream client not initialized", 503)

        response: web.StreamResponse | None = None
        acc = DeltaAccumulator(
            max_blocks=self.config.max_blocks,
            max_buffer_size=self.config.max_block_buffer,
            loop_detection_threshold=self.config.loop_detection_threshold,
        )

        try:
            async with self._client.stream(upstream_request, trace_id) as upstream:
                # Headers go out only after the upstream has answered 200
                response = await self._prepare_sse(request, trace_id)
                await self._pump(response, upstream, acc, trace_id)
        except UpstreamError as e:
            if response is None:
                logger.warning(
                    "[%s] Streaming failed (%s); falling back to buffered request",
                    trace_id,
                    e,
                )
                return await self._handle_buffered(
                    upstream_request, trace_id, start_time, stream_error=e
                )
            logger.error("[%s] Upstream error during streaming: %s", trace_id, e)
            self._tracer.log_response(
                trace_id, 200, time.time() - start_time, mode="streaming", error=str(e)
            )
            await self._write_error_frame(response, e.error_type, str(e), trace_id)
        except ConnectionResetError:
            if response is None:
                raise
            logger.info("[%s] Client disconnected during streaming", trace_id)
            return response
        except GlmtError as e:
            if response is None:
                raise
            logger.error("[%s] Stream aborted: %s", trace_id, e)
            self._tracer.log_response(
                trace_id, 200, time.time() - start_time, mode="streaming", error=str(e)
            )
            await self._write_error_frame(response, "proxy_error", str(e), trace_id)
        except asyncio.CancelledError:
            logger.info("[%s] Request cancelled; upstream stream closed", trace_id)
            raise
        except Exception as e:
            if response is None:
                raise
            logger.exception("[%s] Unexpected error during streaming", trace_id)
            await self._write_error_frame(response, "proxy_error", f"Internal error: {e}", trace_id)
        else:
            self._tracer.log_response(
                trace_id,
                200,
                time.time() - start_time,
                mode="streaming",
                tokens_in=acc.input_tokens,
                tokens_out=acc.output_tokens,
            )

        try:
            await response.write_eof()
        except ConnectionResetError:
            logger.debug("[%s] Client disconnected before end of stream", trace_id)
        return response

    async def _prepare_sse(self, request: web.Request, trace_id: str) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
                "X-Trace-Id": trace_id,
            },
        )
        self._disable_nagle(request, trace_id)
        await response.prepare(request)
        return response

    @staticmethod
    def _disable_nagle(request: web.Request, trace_id: str) -> None:
        transport = request.transport
        sock = transport.get_extra_info("socket") if transport is not None else None
        if sock is None:
            return
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError as e:
            logger.debug("[%s] Could not set TCP_NODELAY: %s", trace_id, e)

    async def _pump(
        self,
        response: web.StreamResponse,
        upstream: UpstreamStream,
        acc: DeltaAccumulator,
        trace_id: str,
    ) -> None:
        """Translate upstream chunks into downstream events until finalized."""
        parser = SSEParser(max_buffer_size=self.config.max_sse_buffer)
        debug = self._tracer.enabled
        upstream_log: list[Any] = []
        event_log: list[dict[str, Any]] = []

        try:
            async for chunk in upstream.chunks():
                for sse_event in parser.parse(chunk):
                    if debug:
                        upstream_log.append("[DONE]" if sse_event.is_done else sse_event.data)
                    for event in self._transformer.transform_delta(sse_event, acc):
                        await self._write_event(response, event)
                        if debug:
                            event_log.append({"event": event.event, "data": event.data})
                if acc.is_finalized:
                    break

            if not acc.is_finalized:
                logger.warning(
                    "[%s] Upstream stream ended without finalization; closing message", trace_id
                )
                for event in self._transformer.finalize_delta(acc):
                    await self._write_event(response, event)
                    if debug:
                        event_log.append({"event": event.event, "data": event.data})
        except ConnectionResetError:
            upstream.abort()
            raise
        finally:
            logger.debug("[%s] Stream state: %s", trace_id, acc.summary())
            if debug:
                self._tracer.save_debug(trace_id, "3_upstream_chunks.json", upstream_log)
                self._tracer.save_debug(trace_id, "4_anthropic_events.json", event_log)

    @staticmethod
    async def _write_event(response: web.StreamResponse, event: DownstreamEvent) -> None:
        # write() drains the transport, so each event is flushed on its own
        await response.write(event.to_sse())

    async def _write_error_frame(
        self,
        response: web.StreamResponse,
        error_type: str,
        message: str,
        trace_id: str,
    ) -> None:
        try:
            await response.write(self._format_error_sse(error_type, message))
        except ConnectionResetError:
            logger.debug("[%s] Client disconnected before error frame", trace_id)

    # =========================================================================
    # Error formatting
    # =========================================================================

    @staticmethod
    def _status_for(error: UpstreamError) -> int:
        return error.status_code if 400 <= error.status_code <= 599 else 502

    @staticmethod
    def _error_body(error_type: str, message: str) -> dict[str, Any]:
        return {"type": "error", "error": {"type": error_type, "message": message}}

    def _error_response(
        self,
        error_type: str,
        message: str,
        status: int,
        headers: dict[str, str] | None = None,
    ) -> web.Response:
        """Return an error envelope response."""
        return web.json_response(
            self._error_body(error_type, message), status=status, headers=headers
        )

    def _format_error_sse(self, error_type: str, message: str) -> bytes:
        """Format an error as an SSE event."""
        data = json.dumps(self._error_body(error_type, message))
        return f"event: error\ndata: {data}\n\n".encode()
