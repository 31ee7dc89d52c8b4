"""
Cache package for AuthGuard.

Provides the file-backed credential cache that lets repeated SDK
invocations reuse a credential set until it nears expiry.
"""

from .credential_cache import CredentialCache, needs_refresh, DEFAULT_REFRESH_MARGIN

__all__ = ["CredentialCache", "needs_refresh", "DEFAULT_REFRESH_MARGIN"]
