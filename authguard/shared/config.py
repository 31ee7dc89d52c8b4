"""
Configuration management for AuthGuard.

Settings come from a TOML file and can be overridden by ``AUTHGUARD_*``
environment variables:

    cache_dir = "/var/cache/authguard"
    circuit_breaker_threshold = 3
    cool_down_seconds = 60

    [environment]
    current = "prod"

    [environment.prod]
    aws_iot_endpoint = "xxxx.credentials.iot.eu-west-1.amazonaws.com"
    role_alias = "device-role-alias"
    cert_path = "/etc/authguard/device.pem.crt"
    key_path = "/etc/authguard/private.pem.key"
    ca_path = "/etc/authguard/AmazonRootCA1.pem"
"""

import tomllib
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from authguard.shared.errors import ConfigurationError
from authguard.shared.logging import LogLevel, get_logger

DEFAULT_CONFIG_PATHS = (
    Path("/etc/authguard/authguard.toml"),
    Path("./authguard.toml"),
)

CACHE_FILE_NAME = "creds_cache.json"
BREAKER_STATE_FILE_NAME = "cb_state.json"

logger = get_logger("authguard.config")


class EnvironmentProfile(BaseModel):
    """Connection settings for one device environment."""

    aws_iot_endpoint: str = Field(..., min_length=1)
    role_alias: str = Field(..., min_length=1)
    cert_path: Path
    key_path: Path
    ca_path: Path
    thing_name: Optional[str] = None

    @property
    def credentials_url(self) -> str:
        return f"https://{self.aws_iot_endpoint}/role-aliases/{self.role_alias}/credentials"


class EnvironmentConfig(BaseModel):
    """The ``[environment]`` table: a selector plus one sub-table per profile."""

    current: str
    profiles: Dict[str, EnvironmentProfile] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_profiles(cls, data: Any) -> Any:
        # Profiles sit beside ``current`` in the TOML table.
        if isinstance(data, dict) and "profiles" not in data:
            profiles = {k: v for k, v in data.items() if k != "current"}
            collected: Dict[str, Any] = {"profiles": profiles}
            if "current" in data:
                collected["current"] = data["current"]
            return collected
        return data


class AuthGuardConfig(BaseSettings):
    """Helper configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AUTHGUARD_",
        case_sensitive=False,
        extra="ignore",
    )

    cache_dir: Path = Path("/var/cache/authguard")
    cache_enabled: bool = True
    log_dir: Optional[Path] = Path("/var/log/authguard")
    log_level: LogLevel = "info"

    # Resilience
    circuit_breaker_threshold: int = Field(default=3, ge=1)
    cool_down_seconds: float = Field(default=60, ge=0)
    refresh_margin_seconds: float = Field(default=300, ge=0)
    request_timeout_seconds: float = Field(default=15, gt=0)
    max_attempts: int = Field(default=3, ge=1)

    # Security
    strict_key_permissions: bool = False

    environment: EnvironmentConfig

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # Environment variables win over values read from the TOML file.
        return env_settings, init_settings, file_secret_settings

    @property
    def cache_file(self) -> Path:
        return self.cache_dir / CACHE_FILE_NAME

    @property
    def breaker_state_file(self) -> Path:
        return self.cache_dir / BREAKER_STATE_FILE_NAME

    @property
    def cool_down(self) -> timedelta:
        return timedelta(seconds=self.cool_down_seconds)

    @property
    def refresh_margin(self) -> timedelta:
        return timedelta(seconds=self.refresh_margin_seconds)

    def active_profile(self) -> EnvironmentProfile:
        """Return the profile selected by ``environment.current``."""
        current = self.environment.current
        profile = self.environment.profiles.get(current)
        if profile is None:
            raise ConfigurationError(
                f"Missing environment configuration: {current}",
                details={"available": sorted(self.environment.profiles)}
            )
        return profile

    def validate_paths(self) -> None:
        """Fail fast when the active profile points at missing TLS material."""
        profile = self.active_profile()
        for path, description in (
            (profile.cert_path, "Client certificate"),
            (profile.key_path, "Private key"),
            (profile.ca_path, "CA certificate"),
        ):
            if not path.is_file():
                logger.error("File not found", path=str(path), description=description)
                raise ConfigurationError(
                    f"{description} not found at {path}",
                    details={"file": str(path), "description": description}
                )


def find_config_file(candidates: Tuple[Path, ...] = DEFAULT_CONFIG_PATHS) -> Path:
    """Return the first existing configuration file."""
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    raise ConfigurationError(
        "No configuration file found in default locations",
        details={"searched": [str(c) for c in candidates]}
    )


def _format_validation_errors(error: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in error.errors()
    ]


def load_config(path: Optional[Union[str, Path]] = None) -> AuthGuardConfig:
    """Load configuration from ``path`` or the default locations."""
    config_path = Path(path) if path else find_config_file()

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            details={"file": str(config_path)}
        ) from e
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(
            f"Failed to read configuration: {e}",
            details={"file": str(config_path)}
        ) from e

    try:
        config = AuthGuardConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(
            "Failed to deserialize configuration",
            details={"file": str(config_path), "errors": _format_validation_errors(e)}
        ) from e

    logger.debug("Configuration loaded", path=str(config_path))
    return config
