# clickhouse_http/request.py
"""Request assembler: endpoint + body + options -> ``RequestDescriptor``.

Assembly is a pure function of its inputs. Assembling twice from equal
inputs yields identical URLs, headers and body.
"""

from collections.abc import Iterable, Mapping
from typing import Any

import httpx

from .config import ClientSettings
from .endpoint import Endpoint
from .exceptions import ClientError
from .options import Placement, merge_options, options_for
from .types import RequestBody, RequestDescriptor

CONTENT_TYPE = "text/plain"


def build_query_params(options: Mapping[str, Any]) -> dict[str, str]:
    """URI query parameters for the recognized QUERY options, in catalog order."""
    params: dict[str, str] = {}
    for spec in options_for(Placement.QUERY):
        if spec.key in options:
            for target in spec.targets:
                params[target] = spec.transform(options[spec.key])
    return params


def build_headers(options: Mapping[str, Any]) -> dict[str, str]:
    """Request headers: fixed content negotiation plus HEADER options."""
    headers = {"Content-Type": CONTENT_TYPE, "Accept": CONTENT_TYPE}
    for spec in options_for(Placement.HEADER):
        if spec.key in options:
            for target in spec.targets:
                headers[target] = spec.transform(options[spec.key])
    return headers


def build_timeout(options: Mapping[str, Any]) -> httpx.Timeout:
    """Per-request timeout block from the TIMEOUT options.

    Slots without a value are left unlimited.
    """
    slots: dict[str, float | None] = {
        "connect": None,
        "read": None,
        "write": None,
        "pool": None,
    }
    for spec in options_for(Placement.TIMEOUT):
        if spec.key in options:
            value = spec.transform(options[spec.key])
            for target in spec.targets:
                slots[target] = value
    return httpx.Timeout(**slots)


def encode_body(body: RequestBody | None) -> bytes | Iterable[bytes]:
    """SQL text is sent as UTF-8; bytes and byte iterables pass through untouched."""
    if body is None:
        return b""
    if isinstance(body, str):
        return body.encode("utf-8")
    if isinstance(body, bytes | bytearray | memoryview):
        return body
    if isinstance(body, Iterable):
        return body
    raise ClientError(f"Unsupported request body type: {type(body).__name__}")


class RequestAssembler:
    """Builds query requests from client settings and per-request options.

    Option precedence is per-request value, then ``settings.server_options``,
    then the timeout defaults from the settings.
    """

    def __init__(self, settings: ClientSettings):
        self._settings = settings

    def default_options(self) -> dict[str, Any]:
        return {
            "connect_timeout": self._settings.connect_timeout,
            "socket_timeout": self._settings.socket_timeout,
            "connection_request_timeout": self._settings.connection_request_timeout,
        }

    def merge(self, options: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Merged option map for one request."""
        return merge_options(
            self.default_options(), self._settings.server_options, options
        )

    def assemble(
        self,
        endpoint: Endpoint,
        body: RequestBody | None,
        options: Mapping[str, Any] | None = None,
    ) -> RequestDescriptor:
        """Produces the POST request for one query.

        Args:
            endpoint: Target server.
            body: SQL text or an already encoded body.
            options: Per-request options; unknown keys are ignored.

        Raises:
            ClientError: If the body type is unsupported or the endpoint URI
                is malformed.
        """
        merged = self.merge(options)
        try:
            url = endpoint.base_uri
            httpx.URL(url)
        except httpx.InvalidURL as e:
            raise ClientError(f"Malformed endpoint URI for {endpoint!r}", e) from e
        return RequestDescriptor(
            method="POST",
            url=url,
            params=build_query_params(merged),
            headers=build_headers(merged),
            content=encode_body(body),
            timeout=build_timeout(merged),
        )
