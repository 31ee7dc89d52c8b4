"""
AuthGuard: credential_process helper for AWS IoT role-alias credentials.

Subpackages:

- shared: configuration, logging, errors, retry policy, circuit breaker
  and cross-process file locking
- app: credential models, cache, mTLS endpoint client, fetcher and the
  command-line entry point

Standard output is reserved for the credential-process JSON document.
"""

__version__ = "0.3.0"
