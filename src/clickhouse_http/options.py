# clickhouse_http/options.py
"""Option catalog and merge policy.

Each recognized option key is declared once in ``OPTION_CATALOG`` together
with where it goes on the outgoing request (URI query parameter, header or
per-request timeout) and how its value is rendered. Keys that are not in the
catalog survive merging but never reach the request.
"""

from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from .exceptions import ConfigurationError


class Placement(str, Enum):
    """Where an option ends up on the outgoing request."""

    QUERY = "query"
    HEADER = "header"
    TIMEOUT = "timeout"


def to_flag(value: Any) -> str:
    """Renders booleans the way ClickHouse settings expect them ("1"/"0")."""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def to_seconds(value: Any) -> float | None:
    """Parses a timeout value in seconds; None disables the timeout."""
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid timeout value: {value!r}") from e
    if seconds < 0:
        raise ConfigurationError(f"Timeout must not be negative: {value!r}")
    return seconds


class OptionSpec(BaseModel):
    """Declaration of a recognized option key."""

    key: str
    placement: Placement
    targets: tuple[str, ...]
    transform: Callable[[Any], Any] = str

    model_config = ConfigDict(frozen=True)


OPTION_CATALOG: dict[str, OptionSpec] = {
    spec.key: spec
    for spec in (
        OptionSpec(
            key="wait_end_of_query",
            placement=Placement.QUERY,
            targets=("wait_end_of_query",),
            transform=to_flag,
        ),
        OptionSpec(key="query_id", placement=Placement.QUERY, targets=("query_id",)),
        OptionSpec(key="database", placement=Placement.QUERY, targets=("database",)),
        OptionSpec(key="session_id", placement=Placement.QUERY, targets=("session_id",)),
        OptionSpec(
            key="session_timeout",
            placement=Placement.QUERY,
            targets=("session_timeout",),
        ),
        OptionSpec(key="quota_key", placement=Placement.QUERY, targets=("quota_key",)),
        OptionSpec(
            key="format", placement=Placement.HEADER, targets=("x-clickhouse-format",)
        ),
        OptionSpec(
            key="connect_timeout",
            placement=Placement.TIMEOUT,
            targets=("connect",),
            transform=to_seconds,
        ),
        OptionSpec(
            key="socket_timeout",
            placement=Placement.TIMEOUT,
            targets=("read", "write"),
            transform=to_seconds,
        ),
        OptionSpec(
            key="connection_request_timeout",
            placement=Placement.TIMEOUT,
            targets=("pool",),
            transform=to_seconds,
        ),
    )
}


def options_for(placement: Placement) -> list[OptionSpec]:
    """Returns the catalog entries for a placement, in declaration order."""
    return [spec for spec in OPTION_CATALOG.values() if spec.placement is placement]


def merge_options(*layers: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merges option layers; later layers override earlier ones.

    ``None`` values never override, so a per-request ``{"format": None}``
    keeps the client-wide format. The inputs are not modified.

    Example:
        merge_options(defaults, settings.server_options, request_options)
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            if value is not None:
                merged[key] = value
    return merged
