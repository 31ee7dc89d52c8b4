from .credential_fetcher import CredentialFetcher

__all__ = ["CredentialFetcher"]
