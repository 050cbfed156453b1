"""
Shared configuration management for the Institutional Trust Bridge.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_PROVISIONING_TOKEN_TTL = 300
DEFAULT_PROVISIONING_TOKEN_MAX_TTL = 900
DEFAULT_CALLBACK_TOKEN_TTL = 20 * 60
DEFAULT_CALLBACK_HMAC_MAX_AGE = 5 * 60
DEFAULT_RESULT_TTL = 10 * 60

MIN_SECRET_LENGTH = 32


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="BRIDGE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Marketplace identity (issuer of provisioning tokens)
    marketplace_base_url: Optional[str] = Field(default=None)

    # Provisioning tokens
    provisioning_secret: Optional[str] = Field(default=None)
    provisioning_token_ttl_seconds: int = Field(default=DEFAULT_PROVISIONING_TOKEN_TTL)
    provisioning_token_max_ttl_seconds: int = Field(default=DEFAULT_PROVISIONING_TOKEN_MAX_TTL)
    institutional_services_api_key: Optional[str] = Field(default=None)

    # Onboarding callbacks
    callback_secret: Optional[str] = Field(default=None)
    session_secret: Optional[str] = Field(default=None)
    callback_require_signature: bool = Field(default=False)
    callback_require_token: bool = Field(default=False)
    callback_require_hmac: bool = Field(default=False)
    callback_token_ttl_seconds: int = Field(default=DEFAULT_CALLBACK_TOKEN_TTL)
    callback_hmac_max_age_seconds: int = Field(default=DEFAULT_CALLBACK_HMAC_MAX_AGE)

    # Institutional backends
    sp_api_key: Optional[str] = Field(default=None)
    require_sp_api_key: bool = Field(default=False)
    backend_timeout_seconds: float = Field(default=10.0)
    onboarding_poll_interval_seconds: float = Field(default=2.0)
    onboarding_poll_timeout_seconds: float = Field(default=120.0)
    onboarding_result_ttl_seconds: float = Field(default=float(DEFAULT_RESULT_TTL))

    # On-chain institution registry
    rpc_url: Optional[str] = Field(default=None)
    registry_address: Optional[str] = Field(default=None)
    registry_signer_key: Optional[str] = Field(default=None)

    # Marketplace verification key
    public_key_pem: Optional[str] = Field(default=None)
    public_key_path: str = Field(default="certificates/jwt/marketplace-public-key.pem")

    @field_validator("provisioning_token_ttl_seconds", mode="before")
    @classmethod
    def _provisioning_ttl(cls, value):
        return _positive_or_default(value, DEFAULT_PROVISIONING_TOKEN_TTL)

    @field_validator("provisioning_token_max_ttl_seconds", mode="before")
    @classmethod
    def _provisioning_max_ttl(cls, value):
        return _positive_or_default(value, DEFAULT_PROVISIONING_TOKEN_MAX_TTL)

    @field_validator("callback_token_ttl_seconds", mode="before")
    @classmethod
    def _callback_ttl(cls, value):
        return _positive_or_default(value, DEFAULT_CALLBACK_TOKEN_TTL)

    @field_validator("callback_hmac_max_age_seconds", mode="before")
    @classmethod
    def _hmac_max_age(cls, value):
        return _positive_or_default(value, DEFAULT_CALLBACK_HMAC_MAX_AGE)

    @field_validator("onboarding_result_ttl_seconds", mode="before")
    @classmethod
    def _result_ttl(cls, value):
        return _positive_or_default(value, DEFAULT_RESULT_TTL)

    @property
    def is_production(self) -> bool:
        return self.env.lower() in ("prod", "production")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def _positive_or_default(value, default):
    """Coerce a numeric setting, falling back to the default when it is not positive."""
    if value is None or value == "":
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if parsed <= 0:
        return default
    return int(parsed) if isinstance(default, int) else parsed


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
