#!/usr/bin/env python3
"""
Command-line entry point.

Intended to be configured as an SDK ``credential_process``:

    [profile device]
    credential_process = authguard

On success exactly one JSON document is written to standard output. Logs and
error reports go to standard error.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from authguard.app.adapters.iot_client import IotCredentialsClient
from authguard.app.cache.credential_cache import CredentialCache
from authguard.app.fetcher.credential_fetcher import CredentialFetcher
from authguard.app.models import CredentialSet, ProcessCredentials
from authguard.shared.circuit_breaker import CircuitBreaker
from authguard.shared.config import AuthGuardConfig, load_config
from authguard.shared.errors import AuthGuardError
from authguard.shared.logging import LOG_LEVELS, configure_logging, get_logger, set_profile, set_request_id
from authguard.shared.retry import RetryPolicy

logger = get_logger("authguard.main")


def build_breaker(config: AuthGuardConfig) -> CircuitBreaker:
    return CircuitBreaker(
        config.breaker_state_file,
        failure_threshold=config.circuit_breaker_threshold,
        recovery_timeout=config.cool_down,
    )


def build_fetcher(config: AuthGuardConfig,
                  breaker: CircuitBreaker,
                  client: Optional[IotCredentialsClient] = None,
                  read_cache: bool = True) -> CredentialFetcher:
    """Wire the fetcher's collaborators from configuration."""
    if client is None:
        client = IotCredentialsClient(
            config.active_profile(),
            timeout=config.request_timeout_seconds,
            strict_key_permissions=config.strict_key_permissions,
        )
    cache = CredentialCache(config.cache_file) if config.cache_enabled else None
    return CredentialFetcher(
        client,
        breaker,
        cache=cache,
        retry_policy=RetryPolicy(max_attempts=config.max_attempts, base_delay=1.0, name="credentials"),
        refresh_margin=config.refresh_margin,
        read_cache=read_cache,
    )


async def fetch_credentials(config: AuthGuardConfig, breaker: CircuitBreaker, read_cache: bool = True) -> CredentialSet:
    """Validate the active profile and run one fetch."""
    config.validate_paths()
    fetcher = build_fetcher(config, breaker, read_cache=read_cache)
    return await fetcher.fetch()


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="authguard",
        description="Obtain AWS credentials from the IoT credentials provider in credential_process format."
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to authguard.toml (default: /etc/authguard/authguard.toml, then ./authguard.toml)")
    parser.add_argument("--log-level", default=None, type=str.lower, choices=list(LOG_LEVELS), help="Override the configured log level")
    parser.add_argument("--no-cache", action="store_true", help="Ignore cached credentials and call the endpoint")
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--breaker-status", action="store_true", help="Print circuit breaker state and exit")
    action.add_argument("--reset-breaker", action="store_true", help="Force the circuit breaker closed and exit")
    return parser.parse_args(argv)


def _report_error(error: AuthGuardError) -> None:
    print(error.to_response().model_dump_json(), file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    set_request_id()
    configure_logging(args.log_level or "info")

    try:
        config = load_config(args.config)
        configure_logging(args.log_level or config.log_level, config.log_dir)
        set_profile(config.environment.current)
        breaker = build_breaker(config)

        if args.breaker_status:
            print(json.dumps(breaker.get_state(), indent=2))
            return 0
        if args.reset_breaker:
            breaker.reset()
            return 0

        credentials = asyncio.run(fetch_credentials(config, breaker, read_cache=not args.no_cache))
    except KeyboardInterrupt:
        return 130
    except AuthGuardError as e:
        logger.error("Failed to retrieve credentials", code=e.code, error=e.message, **e.details)
        _report_error(e)
        return 1

    print(ProcessCredentials.from_credentials(credentials).to_json())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
