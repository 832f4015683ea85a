# clickhouse_http/transport.py
"""An httpx transport that sends requests through ``ConnectionPool``.

httpx's default transport manages its own pool, which knows neither a
connection TTL nor a reuse order. ``PooledTransport`` plugs our pool in
underneath ``httpx.Client``: it leases a connection per request, hands the
request to it, and releases the lease when the response stream is closed.
"""

import contextlib
from collections.abc import Iterable, Iterator
from typing import Any

import httpcore
import httpx

from .exceptions import ConnectionRequestTimeout
from .log_config import logger
from .pool import ConnectionPool, PooledConnection
from .types import Origin

STANDARD_PORTS: dict[str, int] = {"http": 80, "https": 443}

HTTPCORE_EXC_MAP: dict[type[Exception], type[httpx.TransportError]] = {
    httpcore.TimeoutException: httpx.TimeoutException,
    httpcore.ConnectTimeout: httpx.ConnectTimeout,
    httpcore.ReadTimeout: httpx.ReadTimeout,
    httpcore.WriteTimeout: httpx.WriteTimeout,
    httpcore.PoolTimeout: httpx.PoolTimeout,
    httpcore.NetworkError: httpx.NetworkError,
    httpcore.ConnectError: httpx.ConnectError,
    httpcore.ReadError: httpx.ReadError,
    httpcore.WriteError: httpx.WriteError,
    httpcore.ProxyError: httpx.ProxyError,
    httpcore.UnsupportedProtocol: httpx.UnsupportedProtocol,
    httpcore.ProtocolError: httpx.ProtocolError,
    httpcore.LocalProtocolError: httpx.LocalProtocolError,
    httpcore.RemoteProtocolError: httpx.RemoteProtocolError,
}


@contextlib.contextmanager
def map_httpcore_exceptions(request: httpx.Request | None = None) -> Iterator[None]:
    """Re-raises httpcore exceptions as the matching httpx exception.

    Mirrors the mapping in httpx._transports.default; keep the two in sync.

    The most specific httpx class wins. The httpcore exception (and through
    it the original socket error) stays reachable via ``__cause__``.
    """
    try:
        yield
    except Exception as exc:
        mapped_exc = None
        for from_exc, to_exc in HTTPCORE_EXC_MAP.items():
            if not isinstance(exc, from_exc):
                continue
            if mapped_exc is None or issubclass(to_exc, mapped_exc):
                mapped_exc = to_exc
        if mapped_exc is None:
            raise
        raise mapped_exc(str(exc), request=request) from exc


def origin_of(url: httpx.URL) -> Origin:
    """The (scheme, host, port) triple a request URL connects to."""
    return (url.scheme, url.raw_host.decode("ascii"), url.port or STANDARD_PORTS[url.scheme])


def _emit(trace: Any, event_name: str, info: dict[str, Any]) -> None:
    if trace is not None:
        trace(event_name, info)


class PooledResponseStream(httpx.SyncByteStream):
    """Response body stream that gives the connection back on close.

    The connection is returned as reusable only if it is back in the idle
    state, i.e. the response was fully read and the server did not ask to
    close it. Closing more than once is a no-op.
    """

    def __init__(
        self,
        stream: Iterable[bytes],
        lease: PooledConnection,
        pool: ConnectionPool,
        request: httpx.Request,
    ):
        self._stream = stream
        self._lease = lease
        self._pool = pool
        self._request = request
        self._released = False

    def __iter__(self) -> Iterator[bytes]:
        with map_httpcore_exceptions(self._request):
            for part in self._stream:
                yield part

    def close(self) -> None:
        if self._released:
            return
        self._released = True
        reusable = False
        try:
            if hasattr(self._stream, "close"):
                with map_httpcore_exceptions(self._request):
                    self._stream.close()
            connection = self._lease.connection
            reusable = connection.is_idle() and not connection.is_closed()
        finally:
            self._pool.release(self._lease, reusable=reusable)


class PooledTransport(httpx.BaseTransport):
    """httpx transport backed by a ``ConnectionPool``.

    The ``pool`` entry of the request's timeout extension bounds the wait for
    a lease; ``connect``, ``read`` and ``write`` are applied by httpcore. If
    the request carries a ``trace`` extension it receives
    ``pool.lease.started`` and ``pool.lease.complete`` events in addition to
    httpcore's own.
    """

    def __init__(self, pool: ConnectionPool):
        self._pool = pool

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        origin = origin_of(request.url)
        timeouts = request.extensions.get("timeout", {})
        trace = request.extensions.get("trace")

        _emit(trace, "pool.lease.started", {"origin": origin})
        try:
            lease = self._pool.lease(origin, timeout=timeouts.get("pool"))
        except ConnectionRequestTimeout as e:
            e.request = request
            raise
        _emit(trace, "pool.lease.complete", {"connection_id": lease.id})

        core_request = httpcore.Request(
            method=request.method,
            url=httpcore.URL(
                scheme=request.url.raw_scheme,
                host=request.url.raw_host,
                port=request.url.port,
                target=request.url.raw_path,
            ),
            headers=request.headers.raw,
            content=request.stream,
            extensions=request.extensions,
        )
        try:
            with map_httpcore_exceptions(request):
                core_response = lease.connection.handle_request(core_request)
        except BaseException:
            self._pool.release(lease, reusable=False)
            raise

        logger.trace(f"{lease!r} received status {core_response.status}")
        return httpx.Response(
            status_code=core_response.status,
            headers=core_response.headers,
            stream=PooledResponseStream(core_response.stream, lease, self._pool, request),
            extensions=core_response.extensions,
        )

    def close(self) -> None:
        self._pool.close()
