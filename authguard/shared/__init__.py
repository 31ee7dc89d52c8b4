"""
Shared utilities for AuthGuard.

This package aggregates the building blocks used by the app package:

- config: Helper configuration via pydantic-settings and a TOML file
- logging: Structured logging with request correlation
- errors: Error kinds and the canonical error response
- retry: Retry policy with backoff and outcome classification
- circuit_breaker: File-backed breaker protecting the credentials endpoint
- file_lock: Shared/exclusive file locks and atomic replacement

Do not import from authguard.app into shared/.
"""
