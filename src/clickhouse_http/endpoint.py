# clickhouse_http/endpoint.py
"""Endpoint descriptor for a ClickHouse HTTP listener."""

import urllib.parse
from typing import Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import ConfigurationError
from .types import Origin

DEFAULT_PORTS: dict[str, int] = {"http": 8123, "https": 8443}


class Endpoint(BaseModel):
    """An immutable (scheme, host, port, base path) description of a server.

    Attributes:
        scheme: Either "http" or "https".
        host: Host name or IP address.
        port: TCP port in the range 1-65535.
        base_path: Path queries are POSTed to, "/" by default.
    """

    scheme: Literal["http", "https"] = "http"
    host: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    base_path: str = "/"

    model_config = ConfigDict(frozen=True)

    @field_validator("base_path")
    @classmethod
    def _normalize_path(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @classmethod
    def from_url(cls, url: str) -> "Endpoint":
        """Parses an endpoint from a URL such as ``https://db.example.com:8443``.

        The ClickHouse default port for the scheme is used when the URL has
        none. An explicit port is always kept, even 80 or 443.

        Raises:
            ConfigurationError: If the URL cannot be parsed or uses an
                unsupported scheme.
        """
        try:
            parsed = urllib.parse.urlsplit(url)
            port = parsed.port
        except ValueError as e:
            raise ConfigurationError(f"Invalid endpoint URL '{url}': {e}") from e
        if parsed.scheme not in DEFAULT_PORTS:
            raise ConfigurationError(
                f"Unsupported endpoint scheme '{parsed.scheme}' in '{url}'"
            )
        if not parsed.hostname:
            raise ConfigurationError(f"Endpoint URL '{url}' has no host")
        return cls(
            scheme=parsed.scheme,
            host=parsed.hostname,
            port=port or DEFAULT_PORTS[parsed.scheme],
            base_path=parsed.path or "/",
        )

    @property
    def base_uri(self) -> str:
        """The RFC 3986 base URI requests are sent to."""
        return str(
            httpx.URL(
                scheme=self.scheme, host=self.host, port=self.port, path=self.base_path
            )
        )

    @property
    def origin(self) -> Origin:
        """The (scheme, host, port) triple used to match pooled connections."""
        return (self.scheme, self.host, self.port)

    def __str__(self) -> str:
        return self.base_uri
