from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the API access layer loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Components never read these directly; the host builds them through
    ``apilayer.factory.build_client``.
    """

    # Remote API
    api_base_url: str = ""
    api_scopes: list[str] = []

    # Credential authority (OAuth2 client credentials); a static token wins
    # when set
    auth_static_token: str = ""
    auth_static_token_lifetime: float = 3600.0
    auth_token_url: str = ""
    auth_client_id: str = ""
    auth_client_secret: str = ""
    token_safety_margin: float = 60.0  # Seconds of lifetime a token must keep

    # Rate limiting settings (sliding window)
    rate_limit_max_calls: int = 60
    rate_limit_window_seconds: float = 60.0
    rate_limit_max_retry_after: float = 300.0  # Longest server pause honoured

    # Tiered cache settings
    cache_enabled: bool = True
    cache_memory_ttl: float = 60.0
    cache_memory_capacity: int = 1024
    cache_local_enabled: bool = True
    cache_local_dir: Path = Path(".apilayer-cache")
    cache_local_ttl: float = 300.0
    cache_remote_ttl: float = 3600.0
    cache_remote_prefix: str = "apilayer:v1"

    # Redis settings (remote cache tier, optional)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Retry / deadline settings
    client_max_retries: int = 5  # Maximum dispatch attempts per call
    client_base_backoff: float = 0.5
    client_backoff_cap: float = 30.0
    client_backoff_jitter: float = 0.1  # Fraction of the delay added at random
    client_timeout: float = 30.0  # Overall deadline per logical call

    # HTTP Client connection pool settings
    httpx_connect_timeout: float = 10.0  # Time to establish connection
    httpx_read_timeout: float = 30.0  # Time to read response data
    httpx_write_timeout: float = 10.0  # Time to send request data
    httpx_pool_timeout: float = 5.0  # Time to acquire connection from pool
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 100
    httpx_max_keepalive_connections: int = 20

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("rate_limit_max_calls", "cache_memory_capacity", "client_max_retries")
    @classmethod
    def validate_count_positive(cls, v: int) -> int:
        """Validate counts are at least one."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator(
        "rate_limit_window_seconds",
        "rate_limit_max_retry_after",
        "cache_memory_ttl",
        "cache_local_ttl",
        "cache_remote_ttl",
        "client_base_backoff",
        "client_backoff_cap",
        "client_timeout",
        "auth_static_token_lifetime",
        "httpx_connect_timeout",
        "httpx_read_timeout",
        "httpx_write_timeout",
        "httpx_pool_timeout",
    )
    @classmethod
    def validate_seconds_positive(cls, v: float) -> float:
        """Validate durations are positive."""
        if v <= 0:
            raise ValueError("durations must be positive")
        return v

    @field_validator("token_safety_margin", "client_backoff_jitter")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    model_config = SettingsConfigDict(
        env_prefix="APILAYER_", env_file=".env", extra="ignore"
    )


# Global settings instance
settings = Settings()
