# clickhouse_http/config.py
from functools import lru_cache

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .types import Origin, ReuseStrategy

DEFAULT_CONNECTION_REQUEST_TIMEOUT = 1.0


class ClientSettings(BaseSettings):
    """
    Client-wide configuration, loaded from keyword arguments, environment
    variables prefixed with ``CLICKHOUSE_`` or a .env file.

    Durations are expressed in seconds. ``None`` for ``connection_ttl`` or
    ``keep_alive_timeout`` means the corresponding limit is not enforced.
    The settings are read-only once a client has been built from them.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "secrets.env"),
        env_file_encoding="utf-8",
        env_prefix="CLICKHOUSE_",
        extra="ignore",
        case_sensitive=False,
    )

    # --- Endpoints and credentials ---
    endpoints: list[str] = Field(
        default_factory=list,
        description="Base URLs of the servers, tried in order by query()",
    )
    username: str = Field(default="default", description="Database user name")
    password: SecretStr | None = Field(default=None, description="Database password")
    access_token: SecretStr | None = Field(
        default=None, description="Bearer token used instead of user/password"
    )
    user_agent: str = Field(
        default="clickhouse-http/0.1.0", description="User-Agent header for requests"
    )

    # --- Connection pool ---
    max_connections: int = Field(
        default=10, ge=1, description="Maximum number of pooled connections"
    )
    connection_ttl: float | None = Field(
        default=None,
        ge=0,
        description="Maximum lifetime of a connection from its creation, in seconds",
    )
    keep_alive_timeout: float | None = Field(
        default=None,
        ge=0,
        description="Maximum idle time before a pooled connection is evicted, in seconds",
    )
    connection_reuse_strategy: ReuseStrategy = Field(
        default=ReuseStrategy.FIFO,
        description="Which idle connection to reuse first: FIFO or LIFO",
    )

    # --- Timeouts ---
    connect_timeout: float | None = Field(
        default=10.0, ge=0, description="TCP + TLS handshake timeout in seconds"
    )
    socket_timeout: float | None = Field(
        default=300.0, ge=0, description="Maximum gap between received bytes, in seconds"
    )
    connection_request_timeout: float | None = Field(
        default=DEFAULT_CONNECTION_REQUEST_TIMEOUT,
        ge=0,
        description="Time to wait for a free pooled connection, in seconds",
    )

    # --- Dispatch ---
    async_enabled: bool = Field(
        default=True,
        description="Run requests on the worker pool; when False they run on the caller thread",
    )
    max_workers: int = Field(
        default=256, ge=1, description="Upper bound of the request worker pool"
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        description="Retries per endpoint after a soft connection failure in query()",
    )
    backoff_factor: float = Field(
        default=0.5, ge=0, description="Backoff factor between soft-failure retries (seconds)"
    )

    # --- Error extraction ---
    error_buffer_size: int = Field(
        default=8192, ge=1, description="Initial buffer size when reading an error body"
    )
    max_error_body_size: int | None = Field(
        default=None,
        ge=1,
        description="Truncate server error messages to this many bytes; None reads it all",
    )

    # --- Proxy ---
    proxy_host: str | None = Field(default=None, description="HTTP proxy host")
    proxy_port: int | None = Field(
        default=None, ge=1, le=65535, description="HTTP proxy port"
    )

    # --- Server options ---
    server_options: dict[str, str] = Field(
        default_factory=dict,
        description="Option key -> value applied to every request (see options.py)",
    )

    @model_validator(mode="after")
    def _check_proxy(self) -> "ClientSettings":
        if self.proxy_host and self.proxy_port is None:
            raise ValueError("proxy_port is required when proxy_host is set")
        return self

    @property
    def proxy_url(self) -> str | None:
        """The proxy URL, or None when no proxy is configured."""
        if not self.proxy_host:
            return None
        return f"http://{self.proxy_host}:{self.proxy_port}"

    @property
    def proxy_origin(self) -> Origin | None:
        """The (scheme, host, port) of the proxy, or None when no proxy is configured."""
        if not self.proxy_host or self.proxy_port is None:
            return None
        return ("http", self.proxy_host, self.proxy_port)


@lru_cache
def get_settings() -> ClientSettings:
    """
    Provides access to the client settings.

    Settings are loaded from environment variables or .env/secrets.env files.
    The instance is cached for performance.

    Returns:
        ClientSettings: The client settings instance.
    """
    return ClientSettings()
