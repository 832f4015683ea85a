# tests/conftest.py
from collections.abc import Callable

import httpcore
import httpx
import pytest

from clickhouse_http.config import ClientSettings
from clickhouse_http.endpoint import Endpoint
from clickhouse_http.pool import ConnectionPool
from clickhouse_http.transport import PooledTransport
from clickhouse_http.types import ReuseStrategy

Responder = Callable[[httpcore.Request], tuple[int, list[tuple[bytes, bytes]], bytes]]


def ok_responder(request: httpcore.Request) -> tuple[int, list[tuple[bytes, bytes]], bytes]:
    return 200, [(b"Content-Type", b"text/plain")], b"1\n"


class FakeStream:
    """Response body of a FakeConnection.

    Mirrors httpcore: closing a fully read body puts the connection back to
    idle, closing an unread body closes the connection.
    """

    def __init__(self, connection: "FakeConnection", body: bytes):
        self._connection = connection
        self._body = body
        self._consumed = not body

    def __iter__(self):
        if self._body:
            yield self._body
        self._consumed = True

    def close(self) -> None:
        self._connection.active = False
        if not self._consumed:
            self._connection.closed = True


class FakeConnection:
    """Stands in for httpcore.HTTPConnection without opening sockets."""

    def __init__(self, origin, responder: Responder):
        self.origin = origin
        self.responder = responder
        self.requests: list[httpcore.Request] = []
        self.bodies: list[bytes] = []
        self.active = False
        self.closed = False
        self.expired = False

    def handle_request(self, request: httpcore.Request) -> httpcore.Response:
        self.active = True
        self.requests.append(request)
        self.bodies.append(b"".join(request.stream))
        trace = request.extensions.get("trace")
        if trace is not None:
            trace("http11.send_request_headers.started", {})
            trace("http11.receive_response_headers.started", {})
        try:
            status, headers, body = self.responder(request)
        except BaseException:
            self.active = False
            self.closed = True
            raise
        return httpcore.Response(status, headers=headers, content=FakeStream(self, body))

    def is_idle(self) -> bool:
        return not self.active and not self.closed

    def is_closed(self) -> bool:
        return self.closed

    def has_expired(self) -> bool:
        return self.expired

    def close(self) -> None:
        self.closed = True


class FakeConnectionFactory:
    """Connection factory recording every connection it opens."""

    def __init__(self, responder: Responder = ok_responder):
        self.responder = responder
        self.connections: list[FakeConnection] = []

    def __call__(self, origin) -> FakeConnection:
        connection = FakeConnection(origin, self.responder)
        self.connections.append(connection)
        return connection


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint(host="localhost", port=8123)


@pytest.fixture
def settings() -> ClientSettings:
    """Settings with fast retries and explicit credentials."""
    return ClientSettings(
        username="default",
        password="secret",
        max_retries=1,
        backoff_factor=0,
        endpoints=[],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def connection_factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()


@pytest.fixture
def make_pool(connection_factory, clock):
    """Builds a ConnectionPool over fake connections and a fake clock."""

    def _make(
        max_connections: int = 10,
        *,
        connection_ttl: float | None = None,
        keep_alive_timeout: float | None = None,
        reuse_strategy: ReuseStrategy = ReuseStrategy.FIFO,
        use_clock: bool = True,
    ) -> ConnectionPool:
        kwargs = {"clock": clock} if use_clock else {}
        return ConnectionPool(
            max_connections,
            connection_ttl=connection_ttl,
            keep_alive_timeout=keep_alive_timeout,
            reuse_strategy=reuse_strategy,
            connection_factory=connection_factory,
            **kwargs,
        )

    return _make


@pytest.fixture
def pooled_http_client(make_pool):
    """Builds an httpx.Client over a fake-connection pool, closed after the test."""
    clients: list[httpx.Client] = []

    def _make(pool: ConnectionPool | None = None, **pool_kwargs) -> httpx.Client:
        client = httpx.Client(transport=PooledTransport(pool or make_pool(**pool_kwargs)))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


@pytest.fixture
def http_client():
    """A plain httpx.Client, intercepted by pytest-httpx."""
    with httpx.Client() as client:
        yield client
