"""Query dispatcher for the clickhouse_http package.

This module provides ``HttpApiClient``, which turns a query (SQL text plus
per-request options) into an HTTP POST against an endpoint and returns a
``concurrent.futures.Future``. The future resolves with:

- the streaming ``httpx.Response`` for 2xx and 5xx statuses (5xx responses
  are already closed; their status and headers can still be inspected),
- ``None`` when the endpoint could not be reached at all (unknown host,
  connection refused, no route), so a higher layer can try another endpoint,

or fails with ``ServerError``, ``ConnectionInitiationError`` or
``ClientError``.
"""

import asyncio
import errno
import socket
import ssl
from collections.abc import Mapping, Sequence
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Self

import httpx
import tenacity
from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_exponential

from .auth import AuthStrategy, auth_from_settings
from .config import ClientSettings, get_settings
from .endpoint import Endpoint
from .exceptions import (
    ClickHouseHttpError,
    ClientError,
    ConfigurationError,
    ConnectionInitiationError,
    ConnectionRequestTimeout,
    ServerError,
)
from .log_config import logger
from .pool import ConnectionPool
from .request import RequestAssembler
from .response import Outcome, classify, read_error
from .transport import PooledTransport
from .types import RequestBody, RequestState

SENSITIVE_HEADERS = frozenset({"authorization", "proxy-authorization", "x-clickhouse-key"})
NO_ROUTE_ERRNOS = frozenset({errno.EHOSTUNREACH, errno.ENETUNREACH})


def _causes(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def _is_tls_failure(exc: BaseException) -> bool:
    return any(isinstance(cause, ssl.SSLError) for cause in _causes(exc))


def _soft_failure_reason(exc: BaseException) -> str:
    """Describes a connect failure: unknown host, refused, no route, or the message."""
    for cause in _causes(exc):
        if isinstance(cause, socket.gaierror):
            return "unknown host"
        if isinstance(cause, ConnectionRefusedError):
            return "connection refused"
        if isinstance(cause, OSError) and cause.errno in NO_ROUTE_ERRNOS:
            return "no route to host"
    return str(exc) or type(exc).__name__


def _redact(headers: httpx.Headers) -> dict[str, str]:
    return {
        key: "[secure]" if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


class RequestContext:
    """Tracks one request through its state machine.

    States only move forward; httpcore trace events advance the request
    through ``SENDING`` and ``RECEIVING_HEADERS`` when the transport emits
    them.
    """

    def __init__(self, endpoint: Endpoint, query_id: str | None = None):
        self.endpoint = endpoint
        self.query_id = query_id
        self.state = RequestState.SUBMITTED
        self.history: list[RequestState] = [RequestState.SUBMITTED]

    def advance(self, state: RequestState) -> None:
        if state == self.state:
            return
        if self.state.is_terminal or state < self.state:
            raise ClientError(
                f"Illegal request state transition {self.state.name} -> {state.name}"
            )
        self.state = state
        self.history.append(state)
        logger.trace(f"Query {self.query_id or '-'} on {self.endpoint}: {state.name}")

    def finish(self, state: RequestState) -> None:
        """Moves to a terminal state unless one was already reached."""
        if not self.state.is_terminal:
            self.advance(state)

    def trace(self, event_name: str, info: dict[str, Any]) -> None:
        """httpcore ``trace`` extension callback."""
        if event_name == "pool.lease.started":
            state = RequestState.LEASING
        elif event_name.endswith("send_request_headers.started"):
            state = RequestState.SENDING
        elif event_name.endswith("receive_response_headers.started"):
            state = RequestState.RECEIVING_HEADERS
        else:
            return
        if state > self.state and not self.state.is_terminal:
            self.advance(state)


class HttpApiClient:
    """Executes queries against ClickHouse HTTP endpoints.

    Requests run on a worker pool and complete through futures. Each request
    occupies one worker while it is assembled, leases a connection, is sent
    and has its status classified; the response body is left for the caller
    to stream.

    The owned worker pool is a ``ThreadPoolExecutor`` bounded by
    ``settings.max_workers``. Threads are started on demand but idle workers
    are not retired until ``close()``.

    Attributes:
        _settings: Client-wide configuration, read-only after construction.
        _endpoints: Endpoints used by ``query`` failover, in order.
        _assembler: Builds requests from settings and per-request options.
        _auth_strategy: Adds authentication headers to assembled requests.
        _http_client: The ``httpx.Client`` used to send requests.
        _pool: The connection pool behind the default transport, if any.
        _executor: Worker pool; None when async dispatch is disabled.
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        *,
        endpoints: Sequence[Endpoint | str] | None = None,
        auth_strategy: AuthStrategy | None = None,
        http_client: httpx.Client | None = None,
        executor: Executor | None = None,
    ):
        """Initialize the HttpApiClient.

        Args:
            settings: Client configuration; defaults to ``get_settings()``.
            endpoints: Endpoints for ``query``; defaults to ``settings.endpoints``.
            auth_strategy: Authentication strategy; derived from the settings'
                credentials when omitted.
            http_client: Optional pre-configured httpx.Client. When omitted a
                client backed by ``ConnectionPool`` is created and owned.
            executor: Optional worker pool. When omitted a thread pool is
                created and owned (only if ``settings.async_enabled``).

        Raises:
            ConfigurationError: If an endpoint URL is invalid.
        """
        self._settings = settings or get_settings()
        configured = endpoints if endpoints is not None else self._settings.endpoints
        self._endpoints: list[Endpoint] = [self._resolve(e) for e in configured]
        self._assembler = RequestAssembler(self._settings)

        self._auth_strategy: AuthStrategy = auth_strategy or auth_from_settings(self._settings)
        logger.info(f"Using authentication strategy: {type(self._auth_strategy).__name__}")

        self._pool: ConnectionPool | None = None
        self._should_close_client = http_client is None
        self._http_client = http_client or self._create_default_http_client()

        self._should_shutdown_executor = executor is None
        self._executor: Executor | None = executor
        if self._executor is None and self._settings.async_enabled:
            self._executor = ThreadPoolExecutor(
                max_workers=self._settings.max_workers,
                thread_name_prefix="clickhouse-client",
            )
        self._closed = False

        logger.debug(
            f"HttpApiClient initialized with {len(self._endpoints)} endpoint(s), "
            f"async={'on' if self._settings.async_enabled else 'off'}."
        )

    def _create_default_http_client(self) -> httpx.Client:
        """Create the default httpx.Client.

        Returns:
            httpx.Client: A client sending through our ``ConnectionPool``.
                A configured proxy is applied by the pool's connection
                factory, so TTL, keep-alive and reuse order hold for proxied
                connections too.
        """
        self._pool = ConnectionPool.from_settings(self._settings)
        return httpx.Client(transport=PooledTransport(self._pool), follow_redirects=False)

    @staticmethod
    def _resolve(endpoint: Endpoint | str) -> Endpoint:
        if isinstance(endpoint, Endpoint):
            return endpoint
        return Endpoint.from_url(endpoint)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def endpoints(self) -> list[Endpoint]:
        return list(self._endpoints)

    @property
    def pool(self) -> ConnectionPool | None:
        """The pool behind the default transport; None for an injected client."""
        return self._pool

    def execute(
        self,
        endpoint: Endpoint | str,
        body: RequestBody | None,
        options: Mapping[str, Any] | None = None,
    ) -> "Future[httpx.Response | None]":
        """Submit a query request.

        Args:
            endpoint: Target endpoint (or its URL).
            body: SQL text or an encoded body, attached without copying.
            options: Per-request options overriding the client-wide ones.

        Returns:
            Future[httpx.Response | None]: See the module docstring. Cancelling
                the future only prevents a request that has not started yet.

        Raises:
            ClientError: If the client is already closed.
            ConfigurationError: If ``endpoint`` is an invalid URL.
        """
        if self._closed:
            raise ClientError("HttpApiClient is closed")
        target = self._resolve(endpoint)
        if self._executor is not None:
            return self._executor.submit(self._execute, target, body, options)

        future: Future[httpx.Response | None] = Future()
        future.set_running_or_notify_cancel()
        try:
            result = self._execute(target, body, options)
        except ClickHouseHttpError as e:
            future.set_exception(e)
        else:
            future.set_result(result)
        return future

    async def aexecute(
        self,
        endpoint: Endpoint | str,
        body: RequestBody | None,
        options: Mapping[str, Any] | None = None,
    ) -> httpx.Response | None:
        """Awaitable variant of ``execute`` for asyncio callers."""
        return await asyncio.wrap_future(self.execute(endpoint, body, options))

    def _execute(
        self,
        endpoint: Endpoint,
        body: RequestBody | None,
        options: Mapping[str, Any] | None,
    ) -> httpx.Response | None:
        """Run the synchronous pipeline: assemble, send, classify."""
        query_id = (options or {}).get("query_id")
        context = RequestContext(endpoint, str(query_id) if query_id is not None else None)
        request: httpx.Request | None = None
        try:
            descriptor = self._assembler.assemble(endpoint, body, options)
            context.advance(RequestState.ASSEMBLED)

            request = descriptor.build_request(extensions={"trace": context.trace})
            self._auth_strategy.authenticate(request)
            if not request.headers.get("User-Agent"):
                request.headers["User-Agent"] = self._settings.user_agent

            logger.debug(f"Sending request: {request.method} {request.url}")
            logger.trace(f"Request Headers: {_redact(request.headers)}")

            response = self._send(context, request)
            if response is None:
                return None
            return self._handle_response(context, response)
        except ClickHouseHttpError:
            context.finish(RequestState.CLIENT_FAIL)
            raise
        except Exception as e:
            context.finish(RequestState.CLIENT_FAIL)
            logger.exception(f"Unexpected error while executing request to {endpoint}: {e}")
            raise ClientError("Failed to execute request", e, request=request) from e

    def _send(
        self, context: RequestContext, request: httpx.Request
    ) -> httpx.Response | None:
        """Send the request and translate transport errors.

        Returns:
            httpx.Response | None: The streaming response, or None for a soft
                connection failure.
        """
        try:
            return self._http_client.send(request, stream=True, follow_redirects=False)
        except httpx.PoolTimeout as e:
            context.finish(RequestState.TRANSPORT_FAIL)
            cause = e
            if not isinstance(e, ConnectionRequestTimeout):
                cause = ConnectionRequestTimeout(str(e), request=request)
                cause.__cause__ = e
            logger.error(f"No connection available for {request.url}: {e}")
            raise ConnectionInitiationError(
                "Timeout waiting for a connection from the pool", cause, request=request
            ) from cause
        except httpx.ConnectTimeout as e:
            context.finish(RequestState.TRANSPORT_FAIL)
            logger.error(f"Timed out connecting to {context.endpoint}: {e}")
            raise ConnectionInitiationError(
                f"Timed out connecting to {context.endpoint}", e, request=request
            ) from e
        except httpx.ConnectError as e:
            context.finish(RequestState.TRANSPORT_FAIL)
            if _is_tls_failure(e):
                logger.error(f"TLS handshake with {context.endpoint} failed: {e}")
                raise ConnectionInitiationError(
                    f"TLS handshake with {context.endpoint} failed", e, request=request
                ) from e
            logger.warning(
                f"Failed to connect to '{context.endpoint}': {_soft_failure_reason(e)}"
            )
            return None
        except httpx.TimeoutException as e:
            context.finish(RequestState.TRANSPORT_FAIL)
            logger.error(f"Request timed out: {request.url}")
            raise ClientError("Request timed out", e, request=request) from e
        except httpx.HTTPError as e:
            context.finish(RequestState.TRANSPORT_FAIL)
            logger.error(f"HTTP request error for {request.url}: {e}")
            raise ClientError("Failed to execute request", e, request=request) from e

    def _handle_response(
        self, context: RequestContext, response: httpx.Response
    ) -> httpx.Response:
        if context.state < RequestState.RECEIVING_HEADERS:
            context.advance(RequestState.RECEIVING_HEADERS)
        status = response.status_code
        outcome = classify(status)
        logger.debug(f"Received response: {status} for {response.request.url}")
        logger.trace(f"Response Headers: {response.headers}")

        if outcome is Outcome.SUCCESS:
            context.advance(RequestState.SUCCESS)
            return response
        if outcome is Outcome.SERVER_ERROR:
            response.close()
            context.advance(RequestState.SERVER_FAIL)
            logger.warning(f"Server returned {status} for {response.request.url}")
            return response

        try:
            if outcome is Outcome.CLIENT_ERROR:
                error = read_error(
                    response,
                    buffer_size=self._settings.error_buffer_size,
                    max_size=self._settings.max_error_body_size,
                )
                context.advance(RequestState.SERVER_FAIL)
                logger.error(f"Server rejected query: {error}")
                raise error
            context.advance(RequestState.CLIENT_FAIL)
            location = response.headers.get("Location", "")
            raise ClientError(
                f"Unexpected HTTP status {status} {location}".rstrip(),
                response=response,
                request=response.request,
            )
        finally:
            response.close()

    def read_error(self, response: httpx.Response) -> ServerError:
        """Read a 4xx response body into a ``ServerError`` using the client settings."""
        return read_error(
            response,
            buffer_size=self._settings.error_buffer_size,
            max_size=self._settings.max_error_body_size,
        )

    def query(
        self,
        sql: RequestBody,
        options: Mapping[str, Any] | None = None,
        *,
        endpoints: Sequence[Endpoint | str] | None = None,
    ) -> httpx.Response:
        """Execute a query with failover over the configured endpoints.

        Each endpoint is retried with exponential backoff while it cannot be
        reached (the request never got to the server, so nothing is sent
        twice), then the next endpoint is tried. Server and client errors are
        raised immediately.

        Args:
            sql: SQL text or an encoded body.
            options: Per-request options.
            endpoints: Overrides the configured endpoints for this call.

        Returns:
            httpx.Response: The response from the first reachable endpoint.

        Raises:
            ConfigurationError: If there is no endpoint to try.
            ConnectionInitiationError: If no endpoint could be reached.
            ServerError: For 4xx responses.
            ClientError: For other failures.
        """
        candidates = (
            [self._resolve(e) for e in endpoints] if endpoints is not None else self._endpoints
        )
        if not candidates:
            raise ConfigurationError("No endpoints configured")

        for endpoint in candidates:
            retrying = Retrying(
                stop=stop_after_attempt(self._settings.max_retries + 1),
                wait=wait_exponential(multiplier=self._settings.backoff_factor),
                retry=retry_if_result(lambda response: response is None),
                retry_error_callback=lambda retry_state: None,
                before_sleep=self._before_retry_sleep,
            )
            response = retrying(self._execute_blocking, endpoint, sql, options)
            if response is not None:
                return response
            logger.warning(f"Endpoint {endpoint} is unreachable, trying the next one.")

        raise ConnectionInitiationError(
            f"None of the {len(candidates)} endpoint(s) could be reached"
        )

    def _execute_blocking(
        self,
        endpoint: Endpoint,
        sql: RequestBody,
        options: Mapping[str, Any] | None,
    ) -> httpx.Response | None:
        return self.execute(endpoint, sql, options).result()

    def _before_retry_sleep(self, retry_state: tenacity.RetryCallState) -> None:
        """Log details before tenacity sleeps between retries."""
        endpoint = retry_state.args[0] if retry_state.args else "N/A"
        sleep_time = (
            getattr(retry_state.next_action, "sleep", 0) if retry_state.next_action else 0
        )
        logger.info(
            f"Retrying {endpoint} in {sleep_time:.2f} seconds after "
            f"{retry_state.attempt_number} unreachable attempt(s)"
        )

    def close(self) -> None:
        """Shut down the worker pool, the HTTP client and the auth strategy.

        Only resources created by this client are closed. Responses already
        handed out stay readable; their connections are closed on release.
        """
        if self._closed:
            return
        self._closed = True
        if self._executor is not None and self._should_shutdown_executor:
            self._executor.shutdown(wait=True)
        if self._should_close_client and not self._http_client.is_closed:
            self._http_client.close()
            logger.info(f"HttpApiClient internal HTTP client closed. Client ID: {id(self)}.")
        self._auth_strategy.close()

    async def aclose(self) -> None:
        """Close the client without blocking the event loop."""
        await asyncio.to_thread(self.close)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        self.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        await self.aclose()
