"""Client configuration using pydantic and pydantic-settings."""

from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ferresdb.exceptions import ClientConfigurationError

# 10 MB, matches the server's WebSocket frame limit
DEFAULT_MAX_MESSAGE_BYTES = 10 * 1024 * 1024


class ClientConfig(BaseModel):
    """Validated, immutable configuration shared by the HTTP and streaming clients."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    api_key: SecretStr | None = None
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=1.0, gt=0)

    # Circuit breaker (disabled when fail_max is None)
    circuit_breaker_fail_max: int | None = Field(default=None, ge=1)
    circuit_breaker_timeout_seconds: float = Field(default=60.0, gt=0)

    # Streaming
    ack_timeout_seconds: float = Field(default=30.0, gt=0)
    ping_timeout_seconds: float = Field(default=10.0, gt=0)
    max_message_bytes: int = Field(default=DEFAULT_MAX_MESSAGE_BYTES, gt=0)

    @field_validator("base_url")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return value

    @field_validator("api_key")
    @classmethod
    def _reject_empty_key(cls, value: SecretStr | None) -> SecretStr | None:
        if value is not None and not value.get_secret_value():
            raise ValueError("api_key cannot be empty")
        return value

    @classmethod
    def build(cls, **values: object) -> "ClientConfig":
        """Validate values into a config.

        Raises:
            ClientConfigurationError: If any value is invalid.
        """
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ClientConfigurationError(str(e)) from e


class Settings(BaseSettings):
    """Client settings loaded from ``FERRESDB_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FERRESDB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    base_url: str = "http://localhost:8080"
    api_key: SecretStr | None = None
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.0

    circuit_breaker_fail_max: int | None = None
    circuit_breaker_timeout_seconds: float = 60.0

    ack_timeout_seconds: float = 30.0
    ping_timeout_seconds: float = 10.0
    max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES

    # Logging and tracing, applied by observability.init_observability()
    log_level: str = "INFO"
    log_json: bool = True
    otel_enabled: bool = False
    otel_endpoint: str | None = None
    otel_console_export: bool = False
    otel_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)

    def to_client_config(self) -> ClientConfig:
        """Convert settings into a validated ``ClientConfig``."""
        return ClientConfig.build(**self.model_dump(include=set(ClientConfig.model_fields)))


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
