"""End-to-end connection management through HttpApiClient and the pooled transport."""

import http.server
import socket
import ssl
import threading
import time

import httpcore
import httpx
import pytest

from clickhouse_http.client import HttpApiClient
from clickhouse_http.endpoint import Endpoint
from clickhouse_http.exceptions import ConnectionInitiationError, ConnectionRequestTimeout
from clickhouse_http.log_config import logger
from clickhouse_http.pool import ConnectionPool
from clickhouse_http.transport import PooledTransport
from clickhouse_http.types import ReuseStrategy


@pytest.fixture
def warnings_log():
    """Collects WARNING and above log messages emitted during the test."""
    messages: list[str] = []
    handler_id = logger.add(messages.append, level="WARNING", format="{message}")
    yield messages
    logger.remove(handler_id)


def raising(exc_type, message: str, cause: BaseException):
    """Responder raising an httpcore error chained from a socket-level cause."""

    def responder(request):
        raise exc_type(message) from cause

    return responder


def run_query(client: HttpApiClient, endpoint: Endpoint) -> bytes:
    response = client.execute(endpoint, "SELECT 1").result()
    try:
        return response.read()
    finally:
        response.close()


def test_saturated_pool_fails_fast_with_connection_request_timeout(
    settings, pooled_http_client, make_pool, endpoint
):
    """With the only connection held, a second request gives up after its lease timeout."""
    pool = make_pool(max_connections=1, use_clock=False)

    with HttpApiClient(settings, http_client=pooled_http_client(pool)) as client:
        held = client.execute(endpoint, "SELECT 1").result()
        try:
            start = time.monotonic()
            future = client.execute(
                endpoint, "SELECT 2", {"connection_request_timeout": 0.005}
            )
            with pytest.raises(ConnectionInitiationError) as exc_info:
                future.result()
            elapsed = time.monotonic() - start
        finally:
            held.close()

    assert isinstance(exc_info.value.cause, ConnectionRequestTimeout)
    assert elapsed < 0.05
    stats = pool.stats()
    assert stats.opened == 1
    assert stats.leased == 0


def test_connection_reused_across_requests(settings, pooled_http_client, make_pool, endpoint):
    pool = make_pool()

    with HttpApiClient(settings, http_client=pooled_http_client(pool)) as client:
        for _ in range(3):
            assert run_query(client, endpoint) == b"1\n"

    assert pool.stats().opened == 1


@pytest.mark.parametrize(
    "connection_ttl, keep_alive_timeout, sleep, expected_connections",
    [
        (1.0, None, 1.5, 2),
        (2.0, None, 1.0, 1),
        (None, 2.0, 1.0, 1),
        (None, 0.5, 1.0, 2),
        (1.0, 0.0, 0.5, 2),
        (1.0, 3.0, 1.0, 2),
    ],
)
def test_ttl_and_keep_alive_decide_reuse(
    settings,
    pooled_http_client,
    make_pool,
    clock,
    connection_factory,
    endpoint,
    connection_ttl,
    keep_alive_timeout,
    sleep,
    expected_connections,
):
    """Two requests separated by ``sleep`` seconds open the expected number of connections."""
    pool = make_pool(
        connection_ttl=connection_ttl,
        keep_alive_timeout=keep_alive_timeout,
        reuse_strategy=ReuseStrategy.LIFO,
    )

    with HttpApiClient(settings, http_client=pooled_http_client(pool)) as client:
        run_query(client, endpoint)
        clock.advance(sleep)
        run_query(client, endpoint)

    assert len(connection_factory.connections) == expected_connections
    assert pool.stats().leased == 0


def test_refused_connection_resolves_to_none_and_is_discarded(settings, warnings_log):
    """A real refused loopback connection is a soft failure; the connection is closed."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    pool = ConnectionPool(max_connections=2)
    transport = PooledTransport(pool)
    endpoint = Endpoint(host="127.0.0.1", port=port)

    with httpx.Client(transport=transport) as http_client:
        with HttpApiClient(settings, http_client=http_client) as client:
            assert client.execute(endpoint, "SELECT 1").result() is None

    stats = pool.stats()
    assert (stats.leased, stats.idle, stats.opened, stats.closed) == (0, 0, 1, 1)
    assert any("connection refused" in message for message in warnings_log)


def test_unknown_host_resolves_to_none(
    settings, pooled_http_client, make_pool, connection_factory, endpoint, warnings_log
):
    connection_factory.responder = raising(
        httpcore.ConnectError,
        "[Errno -2] Name or service not known",
        socket.gaierror(-2, "Name or service not known"),
    )
    pool = make_pool()

    with HttpApiClient(settings, http_client=pooled_http_client(pool)) as client:
        assert client.execute(endpoint, "SELECT 1").result() is None

    assert pool.stats().leased == 0
    assert any("unknown host" in message for message in warnings_log)


def test_tls_handshake_failure_is_connection_initiation_error(
    settings, pooled_http_client, make_pool, connection_factory, endpoint
):
    connection_factory.responder = raising(
        httpcore.ConnectError,
        "certificate verify failed",
        ssl.SSLCertVerificationError("certificate verify failed"),
    )
    pool = make_pool()

    with HttpApiClient(settings, http_client=pooled_http_client(pool)) as client:
        with pytest.raises(ConnectionInitiationError, match="TLS handshake"):
            client.execute(endpoint, "SELECT 1").result()

    stats = pool.stats()
    assert stats.leased == 0
    assert stats.closed == 1


def test_connect_timeout_is_connection_initiation_error(
    settings, pooled_http_client, make_pool, connection_factory, endpoint
):
    connection_factory.responder = raising(
        httpcore.ConnectTimeout, "timed out", TimeoutError("timed out")
    )

    with HttpApiClient(settings, http_client=pooled_http_client(make_pool())) as client:
        with pytest.raises(ConnectionInitiationError, match="Timed out connecting"):
            client.execute(endpoint, "SELECT 1").result()


def test_close_with_response_in_flight(settings, pooled_http_client, make_pool, endpoint):
    """A response handed out before close stays readable; its connection is then closed."""
    pool = make_pool()
    client = HttpApiClient(settings, http_client=pooled_http_client(pool))
    response = client.execute(endpoint, "SELECT 1").result()

    client.close()
    pool.close()

    assert response.read() == b"1\n"
    response.close()
    stats = pool.stats()
    assert stats.leased == 0
    assert stats.idle == 0
    assert stats.closed == 1


class ForwardProxyHandler(http.server.BaseHTTPRequestHandler):
    """Answers every request itself and records which TCP connection carried it."""

    protocol_version = "HTTP/1.1"

    def do_POST(self):
        self.rfile.read(int(self.headers.get("Content-Length", 0)))
        self.server.seen.append((self.client_address[1], self.path))
        body = b"1\n"
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def forward_proxy():
    """A loopback HTTP proxy; ``seen`` lists (client port, request target) per request."""
    server = http.server.ThreadingHTTPServer(("127.0.0.1", 0), ForwardProxyHandler)
    server.seen = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def proxied_settings(settings, forward_proxy):
    def _make(**overrides):
        return settings.model_copy(
            update={
                "proxy_host": "127.0.0.1",
                "proxy_port": forward_proxy.server_address[1],
                **overrides,
            }
        )

    return _make


PROXIED_ENDPOINT = Endpoint(host="clickhouse.invalid", port=8123)


@pytest.mark.parametrize("connection_ttl, expected_connections", [(None, 1), (0.2, 2)])
def test_proxied_connections_expire_after_ttl(
    proxied_settings, forward_proxy, connection_ttl, expected_connections
):
    """TTL applies to connections opened through a proxy as well."""
    settings = proxied_settings(
        connection_ttl=connection_ttl, connection_reuse_strategy=ReuseStrategy.LIFO
    )

    with HttpApiClient(settings) as client:
        run_query(client, PROXIED_ENDPOINT)
        time.sleep(0.4)
        run_query(client, PROXIED_ENDPOINT)
        opened = client.pool.stats().opened

    ports = [port for port, _ in forward_proxy.seen]
    assert len(set(ports)) == expected_connections
    assert opened == expected_connections
    assert [target for _, target in forward_proxy.seen] == [
        "http://clickhouse.invalid:8123/"
    ] * 2


@pytest.mark.parametrize(
    "strategy, reused_index", [(ReuseStrategy.FIFO, 0), (ReuseStrategy.LIFO, 1)]
)
def test_proxied_connections_follow_reuse_strategy(
    proxied_settings, forward_proxy, strategy, reused_index
):
    settings = proxied_settings(connection_reuse_strategy=strategy)

    with HttpApiClient(settings) as client:
        first = client.execute(PROXIED_ENDPOINT, "SELECT 1").result()
        second = client.execute(PROXIED_ENDPOINT, "SELECT 2").result()
        for response in (first, second):
            response.read()
            response.close()
        run_query(client, PROXIED_ENDPOINT)

    ports = [port for port, _ in forward_proxy.seen]
    assert ports[0] != ports[1]
    assert ports[2] == ports[reused_index]
