"""
Durable single-slot credential cache.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from authguard.app.models import CredentialSet, CredentialsEnvelope
from authguard.shared.errors import CacheCorruptedError, CacheWriteError
from authguard.shared.file_lock import locked_read, locked_write
from authguard.shared.logging import get_logger

DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)


class CredentialCache:
    """Stores the most recently issued credential set in one JSON file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.logger = get_logger("authguard.cache")

    def read(self) -> Optional[CredentialSet]:
        """Return the cached credentials, or None when nothing is cached.

        Raises CacheCorruptedError when the file exists but cannot be parsed.
        """
        try:
            data = locked_read(self.path)
        except OSError as e:
            raise CacheCorruptedError(
                f"Failed to read cache file: {e}",
                details={"path": str(self.path)}
            ) from e

        if data is None:
            self.logger.debug("No cached credentials", path=str(self.path))
            return None

        try:
            envelope = CredentialsEnvelope.model_validate_json(data.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise CacheCorruptedError(
                "Cache file is not valid UTF-8",
                details={"path": str(self.path)}
            ) from e
        except ValidationError as e:
            raise CacheCorruptedError(
                "Failed to parse cached credentials",
                details={"path": str(self.path), "error_count": e.error_count()}
            ) from e
        return envelope.credentials

    def write(self, credentials: CredentialSet) -> None:
        """Replace the cached record atomically."""
        try:
            data = CredentialsEnvelope(credentials=credentials).model_dump_json(by_alias=True)
        except ValueError as e:
            raise CacheWriteError(
                f"Failed to serialize credentials for caching: {e}",
                details={"path": str(self.path)}
            ) from e

        try:
            locked_write(self.path, data)
        except OSError as e:
            raise CacheWriteError(
                f"Failed to write to cache file: {e}",
                details={"path": str(self.path)}
            ) from e
        self.logger.info("Cached credentials", path=str(self.path), expiration=credentials.expiration)


def needs_refresh(credentials: CredentialSet,
                  margin: timedelta = DEFAULT_REFRESH_MARGIN,
                  now: Optional[datetime] = None) -> bool:
    """True if the credentials expire within ``margin`` or carry an unparsable expiration."""
    return credentials.needs_refresh(margin, now)
