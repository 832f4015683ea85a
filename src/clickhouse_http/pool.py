# clickhouse_http/pool.py
"""Connection manager for the HTTP transport.

The pool hands out one connection per request (a *lease*) and takes it back
when the response is closed. It enforces a maximum number of connections,
a lifetime limit measured from creation (TTL) and an idle limit measured
from the last release (keep-alive). Idle connections are picked either
oldest-released first (FIFO) or most-recently-released first (LIFO).

All pool state is guarded by a single lock; a condition variable on that
lock signals releases to waiting callers. Sockets are closed outside the
lock.
"""

import itertools
import ssl
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol

import certifi
import httpcore
from httpcore._sync.http_proxy import ForwardHTTPConnection, TunnelHTTPConnection
from pydantic import BaseModel

from .config import ClientSettings
from .exceptions import ClientError, ConfigurationError, ConnectionRequestTimeout
from .log_config import logger
from .types import Origin, ReuseStrategy


class Connection(Protocol):
    """The part of ``httpcore.HTTPConnection`` the pool and transport use."""

    def handle_request(self, request: httpcore.Request) -> httpcore.Response: ...

    def close(self) -> None: ...

    def is_idle(self) -> bool: ...

    def is_closed(self) -> bool: ...

    def has_expired(self) -> bool: ...


ConnectionFactory = Callable[[Origin], Connection]


def _core_origin(origin: Origin) -> httpcore.Origin:
    scheme, host, port = origin
    return httpcore.Origin(scheme=scheme.encode("ascii"), host=host.encode("ascii"), port=port)


def create_ssl_context() -> ssl.SSLContext:
    """Create the default TLS context, trusting the certifi CA bundle.

    Returns:
        ssl.SSLContext: A context using certifi's CA bundle, or the system
            defaults when certifi cannot be loaded.
    """
    try:
        context = ssl.create_default_context(cafile=certifi.where())
        logger.debug("Using certifi SSL context.")
    except (OSError, ssl.SSLError):
        context = ssl.create_default_context()
        logger.warning(
            "certifi not found or failed to load. Using default SSL verification."
        )
    return context


def httpcore_connection_factory(
    ssl_context: ssl.SSLContext | None = None,
    proxy: Origin | None = None,
) -> ConnectionFactory:
    """Returns a factory creating unconnected httpcore connections.

    The socket is only opened when the first request is sent. Keep-alive is
    enforced by the pool, so httpcore's own expiry is left disabled.

    With a ``proxy`` origin the socket goes to the proxy instead: plain http
    targets are sent in absolute form through it, https targets are tunnelled
    with CONNECT. Either way the pool keys the connection by the target origin.
    """
    proxy_origin = _core_origin(proxy) if proxy is not None else None

    def factory(origin: Origin) -> Connection:
        remote_origin = _core_origin(origin)
        if proxy_origin is None:
            return httpcore.HTTPConnection(
                origin=remote_origin, ssl_context=ssl_context, keepalive_expiry=None
            )
        if remote_origin.scheme == b"https":
            return TunnelHTTPConnection(
                proxy_origin=proxy_origin,
                remote_origin=remote_origin,
                ssl_context=ssl_context,
                keepalive_expiry=None,
            )
        return ForwardHTTPConnection(
            proxy_origin=proxy_origin, remote_origin=remote_origin, keepalive_expiry=None
        )

    return factory


class PooledConnection:
    """A connection owned by the pool, with its bookkeeping timestamps.

    Attributes:
        id: Sequential id, useful in logs.
        connection: The underlying connection object.
        origin: The (scheme, host, port) this connection points to.
        created_at: Clock value at creation; TTL is measured from here.
        last_used_at: Clock value at the last release; keep-alive is
            measured from here.
    """

    _ids = itertools.count(1)

    def __init__(self, connection: Connection, origin: Origin, created_at: float):
        self.id = next(self._ids)
        self.connection = connection
        self.origin = origin
        self.created_at = created_at
        self.last_used_at = created_at

    def expiry_reason(
        self, now: float, ttl: float | None, keep_alive: float | None
    ) -> str | None:
        """Returns why this connection may no longer be reused, or None."""
        if ttl is not None and now - self.created_at >= ttl:
            return "ttl exceeded"
        if keep_alive is not None and now - self.last_used_at >= keep_alive:
            return "keep-alive exceeded"
        if self.connection.is_closed():
            return "closed"
        if self.connection.has_expired():
            return "dropped by peer"
        return None

    def __repr__(self) -> str:
        scheme, host, port = self.origin
        return f"<PooledConnection #{self.id} {scheme}://{host}:{port}>"


class PoolStats(BaseModel):
    """Snapshot of pool counters."""

    max_connections: int
    leased: int
    idle: int
    opened: int
    closed: int


class ConnectionPool:
    """A bounded, thread-safe pool of HTTP connections.

    Attributes:
        max_connections: Upper bound on leased plus idle connections.
        connection_ttl: Maximum connection lifetime in seconds, or None.
        keep_alive_timeout: Maximum idle time in seconds, or None.
        reuse_strategy: FIFO or LIFO selection among idle connections.
    """

    def __init__(
        self,
        max_connections: int = 10,
        *,
        connection_ttl: float | None = None,
        keep_alive_timeout: float | None = None,
        reuse_strategy: ReuseStrategy = ReuseStrategy.FIFO,
        connection_factory: ConnectionFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_connections < 1:
            raise ConfigurationError("max_connections must be at least 1")
        self.max_connections = max_connections
        self.connection_ttl = connection_ttl
        self.keep_alive_timeout = keep_alive_timeout
        self.reuse_strategy = ReuseStrategy(reuse_strategy)
        self._factory: ConnectionFactory = (
            connection_factory or httpcore_connection_factory(create_ssl_context())
        )
        self._clock = clock

        self._idle: deque[PooledConnection] = deque()
        self._leased: set[PooledConnection] = set()
        self._lock = threading.Lock()
        self._released = threading.Condition(self._lock)
        self._is_closed = False
        self._opened = 0
        self._closed = 0

        logger.debug(
            f"ConnectionPool initialized. max={max_connections}, ttl={connection_ttl}, "
            f"keep_alive={keep_alive_timeout}, strategy={self.reuse_strategy.value}"
        )

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        connection_factory: ConnectionFactory | None = None,
    ) -> "ConnectionPool":
        """Builds a pool from the client-wide settings.

        Without an explicit ``connection_factory``, connections go through
        the configured proxy, if any.
        """
        if connection_factory is None:
            connection_factory = httpcore_connection_factory(
                create_ssl_context(), proxy=settings.proxy_origin
            )
            if settings.proxy_origin is not None:
                logger.info(f"Sending requests through proxy {settings.proxy_url}")
        return cls(
            settings.max_connections,
            connection_ttl=settings.connection_ttl,
            keep_alive_timeout=settings.keep_alive_timeout,
            reuse_strategy=settings.connection_reuse_strategy,
            connection_factory=connection_factory,
        )

    @property
    def is_closed(self) -> bool:
        return self._is_closed

    def _size(self) -> int:
        return len(self._idle) + len(self._leased)

    def _discard(
        self, conn: PooledConnection, to_close: list[PooledConnection], reason: str
    ) -> None:
        self._closed += 1
        to_close.append(conn)
        logger.debug(f"Evicting {conn!r}: {reason}")

    def _take_idle(
        self, origin: Origin, now: float, to_close: list[PooledConnection]
    ) -> PooledConnection | None:
        if self.reuse_strategy is ReuseStrategy.LIFO:
            candidates = list(reversed(self._idle))
        else:
            candidates = list(self._idle)
        for conn in candidates:
            reason = conn.expiry_reason(
                now, self.connection_ttl, self.keep_alive_timeout
            )
            if reason is not None:
                self._idle.remove(conn)
                self._discard(conn, to_close, reason)
                continue
            if conn.origin == origin:
                self._idle.remove(conn)
                return conn
        return None

    def lease(self, origin: Origin, timeout: float | None = None) -> PooledConnection:
        """Leases a connection to ``origin``.

        Reuses an eligible idle connection when there is one, otherwise opens
        a new one if the pool has room, otherwise waits for a release.

        Args:
            origin: The (scheme, host, port) to connect to.
            timeout: Maximum seconds to wait for a free slot; None waits forever.

        Returns:
            PooledConnection: The leased connection.

        Raises:
            ConnectionRequestTimeout: If no connection became available in time.
            ClientError: If the pool is closed.
        """
        to_close: list[PooledConnection] = []
        try:
            with self._released:
                deadline = None if timeout is None else self._clock() + timeout
                while True:
                    if self._is_closed:
                        raise ClientError("Connection pool is closed")
                    now = self._clock()
                    conn = self._take_idle(origin, now, to_close)
                    if conn is None and self._size() >= self.max_connections and self._idle:
                        # Full, but idle connections to other origins can make room.
                        victim = self._idle.popleft()
                        self._discard(victim, to_close, "making room for another origin")
                    if conn is None and self._size() < self.max_connections:
                        conn = PooledConnection(self._factory(origin), origin, now)
                        self._opened += 1
                        logger.debug(f"Opened {conn!r} ({self._size() + 1}/{self.max_connections})")
                    if conn is not None:
                        self._leased.add(conn)
                        logger.trace(f"Leased {conn!r}")
                        return conn

                    remaining = None if deadline is None else deadline - self._clock()
                    if remaining is not None and remaining <= 0:
                        logger.warning(
                            f"Timed out after {timeout}s waiting for a pooled connection "
                            f"({len(self._leased)}/{self.max_connections} leased)"
                        )
                        raise ConnectionRequestTimeout(
                            f"Timeout waiting for connection from pool after {timeout}s"
                        )
                    self._released.wait(remaining)
        finally:
            self._close_connections(to_close)

    def release(self, conn: PooledConnection, reusable: bool = True) -> None:
        """Returns a leased connection to the pool.

        Args:
            conn: A connection previously returned by ``lease``.
            reusable: False destroys the connection instead of keeping it idle.
        """
        to_close: list[PooledConnection] = []
        with self._released:
            if conn not in self._leased:
                logger.warning(f"Ignoring release of {conn!r}: not leased from this pool")
                return
            self._leased.remove(conn)
            now = self._clock()
            if not reusable:
                self._discard(conn, to_close, "not reusable")
            elif self._is_closed:
                self._discard(conn, to_close, "pool closed")
            else:
                conn.last_used_at = now
                reason = conn.expiry_reason(
                    now, self.connection_ttl, self.keep_alive_timeout
                )
                if reason is None:
                    self._idle.append(conn)
                    logger.trace(f"Released {conn!r} to the idle set")
                else:
                    self._discard(conn, to_close, reason)
            self._released.notify()
        self._close_connections(to_close)

    def stats(self) -> PoolStats:
        """Returns a consistent snapshot of the pool counters."""
        with self._lock:
            return PoolStats(
                max_connections=self.max_connections,
                leased=len(self._leased),
                idle=len(self._idle),
                opened=self._opened,
                closed=self._closed,
            )

    def close(self) -> None:
        """Closes idle connections and refuses further leases.

        Leased connections are closed when they are released.
        """
        to_close: list[PooledConnection] = []
        with self._released:
            if self._is_closed:
                return
            self._is_closed = True
            while self._idle:
                self._discard(self._idle.popleft(), to_close, "pool closed")
            self._released.notify_all()
        self._close_connections(to_close)
        logger.debug("ConnectionPool closed.")

    @staticmethod
    def _close_connections(connections: list[PooledConnection]) -> None:
        for conn in connections:
            try:
                conn.connection.close()
            except OSError as e:
                logger.warning(f"Error closing {conn!r}: {e}")
