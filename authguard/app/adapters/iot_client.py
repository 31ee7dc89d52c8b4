"""
AWS IoT credentials provider client.

One authenticated GET per call over mutual TLS; the client certificate and
key identify the device, the configured CA pins the endpoint.
"""

import asyncio
import os
import ssl
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import httpx

from authguard.shared.config import EnvironmentProfile
from authguard.shared.errors import ConfigurationError, TransportError
from authguard.shared.logging import get_logger

DEFAULT_TIMEOUT_SECONDS = 15.0
THING_NAME_HEADER = "x-amzn-iot-thingname"

logger = get_logger("authguard.iot_client")


@dataclass(frozen=True)
class TransportResponse:
    """Status and body of one credentials request."""
    status_code: int
    body: str

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


def validate_file_permissions(path: Path) -> None:
    """Reject private keys readable by anyone but the owner."""
    try:
        info = path.stat()
    except OSError as e:
        raise ConfigurationError(f"Cannot stat {path}: {e}", details={"file": str(path)}) from e

    if not stat.S_ISREG(info.st_mode):
        raise ConfigurationError(f"Path is not a file: {path}", details={"file": str(path)})

    mode = stat.S_IMODE(info.st_mode)
    if mode != 0o600:
        raise ConfigurationError(
            f"Insecure permissions for {path}: {mode:o}",
            details={"file": str(path), "mode": f"{mode:o}"}
        )


def create_ssl_context(profile: EnvironmentProfile, strict_key_permissions: bool = False) -> ssl.SSLContext:
    """Build the mutual-TLS context for ``profile``."""
    if strict_key_permissions and os.name == "posix":
        validate_file_permissions(profile.key_path)

    try:
        context = ssl.create_default_context(cafile=str(profile.ca_path))
    except (OSError, ssl.SSLError) as e:
        logger.error("Failed to load CA certificate", path=str(profile.ca_path), error=str(e))
        raise ConfigurationError(
            f"Failed to load CA certificate from {profile.ca_path}: {e}",
            details={"file": str(profile.ca_path)}
        ) from e

    try:
        context.load_cert_chain(certfile=str(profile.cert_path), keyfile=str(profile.key_path))
    except (OSError, ssl.SSLError) as e:
        logger.error(
            "Failed to load client identity",
            cert_path=str(profile.cert_path),
            key_path=str(profile.key_path),
            error=str(e)
        )
        raise ConfigurationError(
            f"Failed to load client certificate or private key: {e}",
            details={"cert_path": str(profile.cert_path), "key_path": str(profile.key_path)}
        ) from e

    return context


class IotCredentialsClient:
    """Client for the role-alias credentials endpoint."""

    def __init__(self,
                 profile: EnvironmentProfile,
                 timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 strict_key_permissions: bool = False,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.profile = profile
        self.timeout = timeout
        self._transport = transport
        self._ssl_context: Optional[ssl.SSLContext] = None
        if transport is None:
            self._ssl_context = create_ssl_context(profile, strict_key_permissions)

    @property
    def url(self) -> str:
        return self.profile.credentials_url

    def _headers(self) -> Dict[str, str]:
        if self.profile.thing_name:
            return {THING_NAME_HEADER: self.profile.thing_name}
        return {}

    def _client(self) -> httpx.AsyncClient:
        if self._transport is not None:
            return httpx.AsyncClient(transport=self._transport, timeout=self.timeout)
        return httpx.AsyncClient(verify=self._ssl_context, timeout=self.timeout)

    async def get(self, url: str) -> TransportResponse:
        """Perform one GET. Raises TransportError on connection, TLS or timeout failures."""
        async def _get() -> TransportResponse:
            async with self._client() as client:
                response = await client.get(url, headers=self._headers())
                return TransportResponse(status_code=response.status_code, body=response.text)

        try:
            # httpx timeouts are per phase; wait_for bounds the whole attempt.
            return await asyncio.wait_for(_get(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("Credentials request timed out", url=url, timeout=self.timeout)
            raise TransportError(
                f"Request timed out after {self.timeout}s",
                details={"url": url}
            ) from e
        except httpx.HTTPError as e:
            logger.error("Failed to send credentials request", url=url, error=str(e))
            raise TransportError(
                f"Request failed: {e}",
                details={"url": url, "error_type": type(e).__name__}
            ) from e
        except ssl.SSLError as e:
            logger.error("TLS failure", url=url, error=str(e))
            raise TransportError(f"TLS failure: {e}", details={"url": url}) from e

    async def get_credentials_response(self) -> TransportResponse:
        """Request credentials for the configured role alias."""
        return await self.get(self.url)
