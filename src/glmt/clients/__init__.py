"""HTTP clients for the upstream API."""

from .upstream_client import UpstreamClient, UpstreamClientConfig, UpstreamStream

__all__ = [
    "UpstreamClient",
    "UpstreamClientConfig",
    "UpstreamStream",
]
