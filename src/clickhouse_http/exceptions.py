"""Exception classes for the clickhouse_http client.

Errors come in two layers. ``ServerError`` is reported by the database itself
(a 4xx response with a message body). Everything else is raised on the client
side: failing to get a usable connection (``ConnectionInitiationError``) or
any other local failure (``ClientError``). Raw httpx errors are always wrapped
in one of these before they reach the caller.
"""

import httpx


class ClickHouseHttpError(Exception):
    """Base exception class for all clickhouse_http errors."""

    def __init__(
        self,
        message: str,
        *,
        response: httpx.Response | None = None,
        request: httpx.Request | None = None,
    ):
        """Initializes the base exception.

        Args:
            message: The error message.
            response: Optional httpx.Response associated with the error.
            request: Optional httpx.Request associated with the error.
        """
        super().__init__(message)
        self.message = message
        self.response = response
        self.request = request

    def __str__(self) -> str:
        if self.response is not None:
            url_info = self.request.url if self.request is not None else "N/A"
            return f"{self.message} (Status: {self.response.status_code}, URL: {url_info})"
        if isinstance(self.request, httpx.Request):
            return f"{self.message} (URL: {self.request.url})"
        return self.message


class ServerError(ClickHouseHttpError):
    """An error reported by the server in a 4xx response.

    Attributes:
        code: The value of the ``X-ClickHouse-Exception-Code`` header, or 0
            when the header is absent.
        message: The response body decoded as UTF-8.
    """

    def __init__(
        self,
        code: int,
        message: str,
        *,
        status_code: int | None = None,
        request: httpx.Request | None = None,
    ):
        super().__init__(message, request=request)
        self.code = code
        self.status_code = status_code

    def __str__(self) -> str:
        status = f", HTTP {self.status_code}" if self.status_code is not None else ""
        return f"Code: {self.code}{status}. {self.message}"

    def __repr__(self) -> str:
        return f"ServerError(code={self.code!r}, message={self.message!r})"


class ClientError(ClickHouseHttpError):
    """An unexpected failure on the client side.

    Covers body read failures, redirects, malformed URIs, read timeouts and
    anything else that is neither a server error nor a connection problem.
    The underlying exception, when there is one, is available as ``cause``.
    """

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        *,
        response: httpx.Response | None = None,
        request: httpx.Request | None = None,
    ):
        super().__init__(message, response=response, request=request)
        self.cause = cause


class ConfigurationError(ClientError):
    """Represents an inconsistent or invalid client configuration."""

    def __init__(self, message: str):
        super().__init__(message)


class ConnectionInitiationError(ClickHouseHttpError):
    """Failed to obtain a usable connection to the server.

    ``cause`` is the underlying failure, e.g. ``ConnectionRequestTimeout``
    when the pool stayed saturated, ``httpx.ConnectTimeout`` or a TLS
    handshake error.
    """

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        *,
        request: httpx.Request | None = None,
    ):
        super().__init__(message, request=request)
        self.cause = cause


class ConnectionRequestTimeout(httpx.PoolTimeout):
    """No pooled connection became available within the connection-request timeout."""
