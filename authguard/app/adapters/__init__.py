"""
Adapters package for AuthGuard.

Contains the mutual-TLS HTTP client for the credentials endpoint. Adapters
map transport failures onto shared errors and leave retries and circuit
breaking to the fetcher.
"""

from .iot_client import IotCredentialsClient, TransportResponse, create_ssl_context

__all__ = [
    "IotCredentialsClient",
    "TransportResponse",
    "create_ssl_context",
]
