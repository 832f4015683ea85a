"""clickhouse_http: HTTP request execution pipeline for ClickHouse.

This package turns a query (SQL text plus per-request options) into an HTTP
POST against a ClickHouse endpoint and hands back either a streaming response,
an empty result for unreachable endpoints, or a typed error. It includes a
connection pool with TTL, keep-alive and FIFO/LIFO reuse, a declarative
option catalog, and a thread-pool based dispatcher returning futures.
"""

__version__ = "0.1.0"

from . import (
    auth,
    client,
    config,
    endpoint,
    exceptions,
    log_config,
    options,
    pool,
    request,
    response,
    transport,
    types,
)
from .client import HttpApiClient
from .config import ClientSettings
from .endpoint import Endpoint
from .exceptions import (
    ClickHouseHttpError,
    ClientError,
    ConfigurationError,
    ConnectionInitiationError,
    ConnectionRequestTimeout,
    ServerError,
)
from .types import ReuseStrategy

__all__ = [
    "__version__",
    "auth",
    "client",
    "config",
    "endpoint",
    "exceptions",
    "log_config",
    "options",
    "pool",
    "request",
    "response",
    "transport",
    "types",
    "HttpApiClient",
    "ClientSettings",
    "Endpoint",
    "ReuseStrategy",
    "ClickHouseHttpError",
    "ClientError",
    "ConfigurationError",
    "ConnectionInitiationError",
    "ConnectionRequestTimeout",
    "ServerError",
]
