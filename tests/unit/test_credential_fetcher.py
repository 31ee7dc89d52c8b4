"""
Unit tests for CredentialFetcher.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from authguard.app.adapters.iot_client import TransportResponse
from authguard.app.cache import CredentialCache
from authguard.app.fetcher import CredentialFetcher
from authguard.app.test_helpers import CredentialFactory, RecordingSleep
from authguard.shared.circuit_breaker import CircuitBreaker, CircuitBreakerState
from authguard.shared.errors import (
    BreakerStateError,
    CacheWriteError,
    CircuitBreakerOpenError,
    ErrorKind,
    ProtocolError,
    ResponseParseError,
    TransportError,
)
from authguard.shared.retry import RetryPolicy

URL = "https://example.credentials.iot.eu-west-1.amazonaws.com/role-aliases/device-role-alias/credentials"


def ok(expiration="2030-01-01T00:00:00Z"):
    return TransportResponse(status_code=200, body=json.dumps(CredentialFactory.payload(expiration)))


class TestCredentialFetcher:
    """Test cases for CredentialFetcher."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.url = URL
        client.get_credentials_response = AsyncMock(return_value=ok())
        return client

    @pytest.fixture
    def sleep(self):
        return RecordingSleep()

    @pytest.fixture
    def breaker(self, tmp_path):
        return CircuitBreaker(tmp_path / "cb_state.json", failure_threshold=3, recovery_timeout=60)

    @pytest.fixture
    def cache(self, tmp_path):
        return CredentialCache(tmp_path / "creds_cache.json")

    @pytest.fixture
    def fetcher(self, client, breaker, cache, sleep):
        return CredentialFetcher(
            client,
            breaker,
            cache=cache,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0, sleep=sleep),
        )

    @pytest.mark.asyncio
    async def test_fresh_cache_skips_network_and_breaker(self, fetcher, client, cache, breaker):
        cached = CredentialFactory.expiring_in(3600)
        cache.write(cached)

        result = await fetcher.fetch()

        assert result == cached
        client.get_credentials_response.assert_not_called()
        assert not breaker.state_path.exists()

    @pytest.mark.asyncio
    async def test_stale_cache_triggers_fetch_and_persist(self, fetcher, client, cache, breaker):
        cache.write(CredentialFactory.expiring_in(60))

        result = await fetcher.fetch()

        assert result.expiration == "2030-01-01T00:00:00Z"
        assert cache.read() == result
        client.get_credentials_response.assert_awaited_once()
        assert breaker.load().consecutive_successes == 1

    @pytest.mark.asyncio
    async def test_empty_cache_fetches(self, fetcher, client, cache):
        result = await fetcher.fetch()

        assert cache.read() == result
        client.get_credentials_response.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_open_breaker_fails_fast(self, fetcher, client, breaker):
        for _ in range(3):
            breaker.record_failure()

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await fetcher.fetch()

        assert exc_info.value.kind is ErrorKind.CIRCUIT_OPEN
        client.get_credentials_response.assert_not_called()
        assert breaker.load().failure_count == 3

    @pytest.mark.asyncio
    async def test_all_attempts_fail_with_status(self, fetcher, client, cache, breaker, sleep):
        stale = CredentialFactory.expiring_in(60)
        cache.write(stale)
        client.get_credentials_response = AsyncMock(return_value=TransportResponse(500, "internal error"))

        with pytest.raises(ProtocolError) as exc_info:
            await fetcher.fetch()

        assert exc_info.value.status_code == 500
        assert client.get_credentials_response.await_count == 3
        assert sleep.delays == [1.0, 2.0]
        assert cache.read() == stale
        record = breaker.load()
        assert record.failure_count == 3
        assert record.state is CircuitBreakerState.OPEN

    @pytest.mark.asyncio
    async def test_all_attempts_fail_with_transport_error(self, fetcher, client, sleep):
        client.get_credentials_response = AsyncMock(side_effect=[
            TransportError("refused 1"),
            TransportError("refused 2"),
            TransportError("refused 3"),
        ])

        with pytest.raises(TransportError, match="refused 3"):
            await fetcher.fetch()

        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_recovers_after_failure(self, fetcher, client, breaker, sleep):
        client.get_credentials_response = AsyncMock(side_effect=[
            TransportResponse(503, "busy"),
            ok(),
        ])

        result = await fetcher.fetch()

        assert result.access_key_id == "ASIAEXAMPLEKEY"
        assert sleep.delays == [1.0]
        record = breaker.load()
        assert record.state is CircuitBreakerState.CLOSED
        assert record.failure_count == 0

    @pytest.mark.asyncio
    async def test_unparsable_body_is_fatal(self, fetcher, client, cache, breaker, sleep):
        client.get_credentials_response = AsyncMock(return_value=TransportResponse(200, "<html>oops</html>"))

        with pytest.raises(ResponseParseError):
            await fetcher.fetch()

        client.get_credentials_response.assert_awaited_once()
        assert sleep.delays == []
        assert cache.read() is None
        assert breaker.load().failure_count == 1

    @pytest.mark.asyncio
    async def test_body_missing_fields_is_fatal(self, fetcher, client):
        payload = CredentialFactory.payload()
        del payload["credentials"]["secretAccessKey"]
        client.get_credentials_response = AsyncMock(return_value=TransportResponse(200, json.dumps(payload)))

        with pytest.raises(ResponseParseError):
            await fetcher.fetch()

    @pytest.mark.asyncio
    async def test_corrupt_cache_is_refetched(self, fetcher, client, cache):
        cache.path.write_text("garbage")

        result = await fetcher.fetch()

        client.get_credentials_response.assert_awaited_once()
        assert cache.read() == result

    @pytest.mark.asyncio
    async def test_non_utf8_cache_and_state_are_recovered(self, fetcher, client, cache, breaker):
        cache.path.write_bytes(b"\xff\xfe")
        breaker.state_path.write_bytes(b"\xff\xfe")

        result = await fetcher.fetch()

        client.get_credentials_response.assert_awaited_once()
        assert cache.read() == result
        assert breaker.load().state is CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_cache_write_failure_does_not_fail_fetch(self, fetcher, client, cache):
        with patch.object(cache, "write", side_effect=CacheWriteError("disk full")):
            result = await fetcher.fetch()

        assert result.access_key_id == "ASIAEXAMPLEKEY"

    @pytest.mark.asyncio
    async def test_unavailable_breaker_state_allows_request(self, fetcher, client, breaker):
        with patch.object(breaker, "should_allow_request", side_effect=BreakerStateError("unreadable")), \
                patch.object(breaker, "record_success", side_effect=BreakerStateError("unwritable")):
            result = await fetcher.fetch()

        assert result.access_key_id == "ASIAEXAMPLEKEY"
        client.get_credentials_response.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_fetch_opens_breaker_for_next_run(self, fetcher, client, sleep):
        client.get_credentials_response = AsyncMock(return_value=TransportResponse(502, "bad gateway"))

        with pytest.raises(ProtocolError):
            await fetcher.fetch()
        with pytest.raises(CircuitBreakerOpenError):
            await fetcher.fetch()

        assert client.get_credentials_response.await_count == 3

    @pytest.mark.asyncio
    async def test_read_cache_disabled_ignores_fresh_cache(self, client, breaker, cache, sleep):
        cache.write(CredentialFactory.expiring_in(3600))
        fetcher = CredentialFetcher(
            client,
            breaker,
            cache=cache,
            retry_policy=RetryPolicy(sleep=sleep),
            read_cache=False,
        )

        result = await fetcher.fetch()

        client.get_credentials_response.assert_awaited_once()
        assert cache.read() == result

    @pytest.mark.asyncio
    async def test_without_cache(self, client, breaker, sleep):
        fetcher = CredentialFetcher(client, breaker, retry_policy=RetryPolicy(sleep=sleep))

        await fetcher.fetch()
        await fetcher.fetch()

        assert client.get_credentials_response.await_count == 2
