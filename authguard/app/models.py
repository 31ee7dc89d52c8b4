"""
Credential data models.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CredentialSet(BaseModel):
    """Short-lived access key, secret, session token and expiration."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    access_key_id: str = Field(..., alias="accessKeyId", min_length=1)
    secret_access_key: str = Field(..., alias="secretAccessKey", min_length=1)
    session_token: str = Field(..., alias="sessionToken", min_length=1)
    # Kept as issued; parsed only when deciding whether to refresh.
    expiration: str

    def expires_at(self) -> Optional[datetime]:
        """Parsed expiration, or None when it is not a zone-aware RFC3339 instant."""
        try:
            parsed = datetime.fromisoformat(self.expiration)
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            return None
        return parsed

    def needs_refresh(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        """True when expiry is within ``margin`` of ``now`` or cannot be parsed."""
        expires_at = self.expires_at()
        if expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now >= expires_at - margin


class CredentialsEnvelope(BaseModel):
    """Wire and cache format: ``{"credentials": {...}}``."""

    credentials: CredentialSet


class ProcessCredentials(BaseModel):
    """Output consumed by an SDK's ``credential_process`` support."""

    model_config = ConfigDict(populate_by_name=True)

    version: int = Field(default=1, alias="Version")
    access_key_id: str = Field(..., alias="AccessKeyId")
    secret_access_key: str = Field(..., alias="SecretAccessKey")
    session_token: str = Field(..., alias="SessionToken")
    expiration: str = Field(..., alias="Expiration")

    @classmethod
    def from_credentials(cls, credentials: CredentialSet) -> "ProcessCredentials":
        return cls(
            access_key_id=credentials.access_key_id,
            secret_access_key=credentials.secret_access_key,
            session_token=credentials.session_token,
            expiration=credentials.expiration,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
