"""CLI entry point for the GLMT proxy.

The host process spawns ``glmt-proxy``, waits for ``PROXY_READY:<port>``
on stdout, points its client at ``http://127.0.0.1:<port>`` and sends
SIGTERM when done. Everything else the proxy prints goes to stderr.
"""

from __future__ import annotations

import asyncio
import signal as sig
import sys

import rich_click as click

from glmt import __version__
from glmt.config import GlmtProxyConfig
from glmt.logging_config import configure_logging
from glmt.proxy import GlmtProxyServer

click.rich_click.USE_RICH_MARKUP = True
click.rich_click.USE_MARKDOWN = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = "Try running '--help' for more information."
click.rich_click.ERRORS_EPILOGUE = ""
click.rich_click.MAX_WIDTH = 100

READY_PREFIX = "PROXY_READY:"


@click.command()
@click.version_option(__version__, prog_name="glmt-proxy")
@click.option("--verbose", "-v", is_flag=True, help="Log requests and payloads to stderr")
@click.option(
    "--debug",
    is_flag=True,
    help="Write full request/response payloads to the debug log directory",
)
@click.option("--timeout", type=float, default=None, help="Upstream timeout in seconds")
@click.option("--model", default=None, help="Upstream model identifier (e.g. GLM-4.6)")
@click.option(
    "--env-file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Dotenv file to load before reading the environment",
)
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default=None,
    help="Log output format",
)
def cli(
    verbose: bool,
    debug: bool,
    timeout: float | None,
    model: str | None,
    env_file: str | None,
    log_format: str | None,
) -> None:
    """GLMT - thinking-aware proxy between a Messages API client and GLM.

    Listens on an OS-assigned loopback port and prints the port on stdout
    once ready. The upstream endpoint and credential come from
    **ANTHROPIC_BASE_URL** and **ANTHROPIC_AUTH_TOKEN**.

    **Examples:**

        glmt-proxy

        glmt-proxy --verbose --model GLM-4.5

        glmt-proxy --debug --env-file .env.local
    """
    try:
        config = GlmtProxyConfig.from_env(
            env_file=env_file,
            verbose=verbose,
            debug_log=debug or None,
            timeout=timeout,
            upstream_model=model,
        )
    except (ValueError, TypeError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    configure_logging(format=log_format, verbose=verbose)  # type: ignore[arg-type]
    server = GlmtProxyServer(config=config)

    async def run() -> None:
        loop = asyncio.get_running_loop()

        def handle_shutdown(sig_name: str) -> None:
            if verbose:
                click.echo(f"Received {sig_name}, shutting down...", err=True)
            server.request_shutdown()

        loop.add_signal_handler(sig.SIGTERM, lambda: handle_shutdown("SIGTERM"))
        loop.add_signal_handler(sig.SIGINT, lambda: handle_shutdown("SIGINT"))

        try:
            try:
                port = await server.start()
            except OSError as e:
                await server.stop()
                click.echo(f"Error: failed to start proxy: {e}", err=True)
                sys.exit(1)

            click.echo(f"{READY_PREFIX}{port}")
            sys.stdout.flush()
            await server.serve()
        finally:
            loop.remove_signal_handler(sig.SIGTERM)
            loop.remove_signal_handler(sig.SIGINT)

    asyncio.run(run())


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
