from typing import Protocol

import httpx

from .config import ClientSettings
from .exceptions import ConfigurationError
from .log_config import logger


class AuthStrategy(Protocol):
    """Protocol defining the interface for authentication strategies.

    Strategies add their own headers to an already assembled request. They
    must not touch any other header.
    """

    def authenticate(self, request: httpx.Request) -> None:
        """
        Modifies the request to add authentication information.

        Args:
            request: The httpx.Request object to modify.
        """
        ...

    def close(self) -> None:
        """
        Closes any resources held by the strategy. This method should be
        idempotent.
        """
        ...


class NoAuth:
    """Implements the AuthStrategy protocol for servers without authentication."""

    def authenticate(self, request: httpx.Request) -> None:
        """Does nothing as no authentication is needed."""
        logger.trace("Using NoAuth strategy, no authentication applied.")

    def close(self) -> None:
        """No resources to close for NoAuth, this method is a no-op."""


class PasswordAuth:
    """Implements AuthStrategy using ClickHouse user/password headers.

    The credentials are sent in ``X-ClickHouse-User`` and ``X-ClickHouse-Key``
    rather than in the URI, so they never show up in logged URLs.
    """

    def __init__(self, username: str | None, password: str | None = None):
        if not username:
            raise ConfigurationError("PasswordAuth requires a non-empty 'username'.")
        self._username: str = username
        self._password: str = password or ""
        logger.debug(f"PasswordAuth initialized for user '{username}'.")

    def authenticate(self, request: httpx.Request) -> None:
        """Adds the user and key headers to the request."""
        logger.trace("Authenticating request using PasswordAuth.")
        request.headers["X-ClickHouse-User"] = self._username
        request.headers["X-ClickHouse-Key"] = self._password

    def close(self) -> None:
        """No resources to close for PasswordAuth, this method is a no-op."""


class AccessTokenAuth:
    """Implements AuthStrategy using a static Bearer token."""

    def __init__(self, token: str | None):
        if not token:
            raise ConfigurationError("AccessTokenAuth requires a non-empty 'token'.")
        self._token: str = token
        logger.debug("AccessTokenAuth initialized.")

    def authenticate(self, request: httpx.Request) -> None:
        """Adds the 'Authorization: Bearer <token>' header to the request."""
        logger.trace("Authenticating request using AccessTokenAuth.")
        request.headers["Authorization"] = f"Bearer {self._token}"

    def close(self) -> None:
        """No resources to close for AccessTokenAuth, this method is a no-op."""


def auth_from_settings(settings: ClientSettings) -> AuthStrategy:
    """Picks the authentication strategy matching the configured credentials.

    An access token wins over user/password; a configured user without a
    password still authenticates as that user.
    """
    if settings.access_token is not None:
        return AccessTokenAuth(settings.access_token.get_secret_value())
    if settings.username:
        password = settings.password.get_secret_value() if settings.password else None
        return PasswordAuth(settings.username, password)
    return NoAuth()
