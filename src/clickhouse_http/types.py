# clickhouse_http/types.py
"""Core type definitions shared across the request pipeline.

This module defines the enumerations used by configuration and the pool,
the request state machine, and the ``RequestDescriptor`` produced by the
request assembler.
"""

from collections.abc import Iterable, Mapping
from enum import Enum, IntEnum
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

RequestBody = str | bytes | Iterable[bytes]
"""Accepted query bodies: SQL text, raw bytes or an iterable of byte chunks."""

Origin = tuple[str, str, int]
"""A (scheme, host, port) triple identifying where a connection points to."""


class ReuseStrategy(str, Enum):
    """Ordering policy for picking among idle pooled connections.

    FIFO rotates connections so their ages stay even; LIFO prefers the most
    recently used connection, which is the most likely to still be warm.
    """

    FIFO = "FIFO"
    LIFO = "LIFO"


class RequestState(IntEnum):
    """Lifecycle of a single request. Values only ever increase."""

    SUBMITTED = 0
    ASSEMBLED = 1
    LEASING = 2
    SENDING = 3
    RECEIVING_HEADERS = 4
    SUCCESS = 5
    CLIENT_FAIL = 6
    SERVER_FAIL = 7
    TRANSPORT_FAIL = 8

    @property
    def is_terminal(self) -> bool:
        return self >= RequestState.SUCCESS


class RequestDescriptor(BaseModel):
    """Everything needed to send one query request.

    Built by the request assembler and owned by the dispatcher until the
    request is sent. ``content`` is attached to the outgoing request without
    copying.
    """

    method: str = "POST"
    url: str
    params: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    content: Any = None
    timeout: httpx.Timeout

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    @property
    def full_url(self) -> httpx.URL:
        """The target URL with query parameters applied."""
        return httpx.URL(self.url).copy_merge_params(self.params)

    def build_request(
        self, extensions: Mapping[str, Any] | None = None
    ) -> httpx.Request:
        """Builds an httpx.Request object from the stored data.

        Args:
            extensions: Extra request extensions (e.g. a ``trace`` callback).
                The ``timeout`` extension always comes from the descriptor.
        """
        return httpx.Request(
            method=self.method,
            url=self.full_url,
            headers=self.headers,
            content=self.content,
            extensions={**(extensions or {}), "timeout": self.timeout.as_dict()},
        )
