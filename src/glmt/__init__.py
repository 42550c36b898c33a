"""GLMT - thinking-aware translation proxy for GLM models.

Embedded reverse proxy that lets a Messages API client talk to an
OpenAI-style chat-completions upstream (Z.AI GLM) while keeping reasoning
content as thinking blocks and tool calls working in both directions.

Components:
- streaming: SSE framing and per-request block state
- transforms: request/response/delta translation, directives, enforcers
- clients: upstream HTTP client
- proxy: loopback aiohttp server with stream -> buffered fallback

Usage (direct):
    from glmt.config import GlmtProxyConfig
    from glmt.proxy import GlmtProxyServer
    import asyncio

    async def main():
        server = GlmtProxyServer(config=GlmtProxyConfig.from_env())
        port = await server.start()
        print(f"PROXY_READY:{port}")
        await server.serve()

    asyncio.run(main())
"""

__version__ = "0.1.0"

from glmt.errors import ERROR_TYPE_MAP, GlmtError, UpstreamError

__all__ = [
    "__version__",
    "ERROR_TYPE_MAP",
    "GlmtError",
    "UpstreamError",
]
