"""
Credential fetcher: cache lookup, breaker gating and retried network calls.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import ValidationError

from authguard.app.adapters.iot_client import IotCredentialsClient
from authguard.app.cache.credential_cache import CredentialCache, DEFAULT_REFRESH_MARGIN, needs_refresh
from authguard.app.models import CredentialSet, CredentialsEnvelope
from authguard.shared.circuit_breaker import CircuitBreaker
from authguard.shared.errors import (
    BreakerStateError,
    CacheCorruptedError,
    CacheWriteError,
    CircuitBreakerOpenError,
    ProtocolError,
    ResponseParseError,
    TransportError,
)
from authguard.shared.logging import get_logger
from authguard.shared.retry import AttemptOutcome, RetryPolicy

# Outcomes that say something about the endpoint's health.
BREAKER_FAILURES = (TransportError, ProtocolError, ResponseParseError)


class CredentialFetcher:
    """Returns a usable credential set, calling the endpoint only when needed."""

    def __init__(self,
                 client: IotCredentialsClient,
                 breaker: CircuitBreaker,
                 cache: Optional[CredentialCache] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
                 clock: Optional[Callable[[], datetime]] = None,
                 read_cache: bool = True):
        self.client = client
        self.breaker = breaker
        self.cache = cache
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=1.0, name="credentials")
        self.refresh_margin = refresh_margin
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.read_cache = read_cache
        self.logger = get_logger("authguard.fetcher")

    async def fetch(self) -> CredentialSet:
        """Serve from cache when fresh, otherwise fetch through the breaker."""
        cached = self._read_cache()
        if cached is not None and not needs_refresh(cached, self.refresh_margin, self.clock()):
            self.logger.info("Using valid cached credentials", expiration=cached.expiration)
            return cached

        self.logger.info("No valid cache or near expiration; fetching new credentials")

        if not self._breaker_allows():
            raise CircuitBreakerOpenError(details={"state_file": str(self.breaker.state_path)})

        credentials = await self.retry_policy.run(
            self._attempt,
            on_success=self._on_attempt_success,
            on_failure=self._on_attempt_failure,
        )
        self.logger.info("Successfully retrieved credentials", expiration=credentials.expiration)

        self._write_cache(credentials)
        return credentials

    async def _attempt(self) -> CredentialSet:
        response = await self.client.get_credentials_response()
        if not response.is_success:
            self.logger.error("Request failed", status=response.status_code, url=self.client.url)
            raise ProtocolError(response.status_code, self.client.url)

        try:
            return CredentialsEnvelope.model_validate_json(response.body).credentials
        except ValidationError as e:
            raise ResponseParseError(
                details={"url": self.client.url, "error_count": e.error_count()}
            ) from e

    def _on_attempt_success(self, credentials: CredentialSet) -> None:
        self._feed_breaker(self.breaker.record_success)

    def _on_attempt_failure(self, error: BaseException, outcome: AttemptOutcome) -> None:
        if isinstance(error, BREAKER_FAILURES):
            self._feed_breaker(self.breaker.record_failure)

    def _feed_breaker(self, record: Callable[[], object]) -> None:
        try:
            record()
        except BreakerStateError as e:
            self.logger.warning("Circuit breaker feedback not persisted", error=e.message)

    def _breaker_allows(self) -> bool:
        try:
            return self.breaker.should_allow_request()
        except BreakerStateError as e:
            # Unknown state is treated like a closed breaker.
            self.logger.warning("Circuit breaker state unavailable, allowing request", error=e.message)
            return True

    def _read_cache(self) -> Optional[CredentialSet]:
        if self.cache is None or not self.read_cache:
            return None
        try:
            return self.cache.read()
        except CacheCorruptedError as e:
            self.logger.warning("Ignoring corrupt credential cache", error=e.message, **e.details)
            return None

    def _write_cache(self, credentials: CredentialSet) -> None:
        if self.cache is None:
            return
        try:
            self.cache.write(credentials)
        except CacheWriteError as e:
            self.logger.error("Failed to cache credentials", error=e.message, **e.details)
