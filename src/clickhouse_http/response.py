# clickhouse_http/response.py
"""Response classification and server error extraction.

2xx responses go back to the caller untouched. 4xx responses carry the
server's error message in the body, which is read here and turned into a
``ServerError``. 5xx responses are closed without reading the body and still
returned, so a higher layer can decide whether to retry. Redirects are never
followed for POSTed queries.
"""

from enum import Enum

import httpx

from .exceptions import ClientError, ServerError
from .log_config import logger

EXCEPTION_CODE_HEADER = "X-ClickHouse-Exception-Code"
DEFAULT_ERROR_BUFFER_SIZE = 8192


class Outcome(str, Enum):
    """What the pipeline does with a response, based on its status."""

    SUCCESS = "success"
    REDIRECT = "redirect"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    UNEXPECTED = "unexpected"


def classify(status_code: int) -> Outcome:
    if 200 <= status_code < 300:
        return Outcome.SUCCESS
    if 300 <= status_code < 400:
        return Outcome.REDIRECT
    if 400 <= status_code < 500:
        return Outcome.CLIENT_ERROR
    if 500 <= status_code < 600:
        return Outcome.SERVER_ERROR
    return Outcome.UNEXPECTED


def parse_exception_code(headers: httpx.Headers) -> int:
    """Reads the server exception code header; 0 when absent or malformed."""
    raw = headers.get(EXCEPTION_CODE_HEADER)
    if raw is None:
        return 0
    try:
        code = int(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring malformed {EXCEPTION_CODE_HEADER} header: {raw!r}")
        return 0
    if code < 0:
        logger.warning(f"Ignoring negative {EXCEPTION_CODE_HEADER} header: {raw!r}")
        return 0
    return code


def _request_of(response: httpx.Response) -> httpx.Request | None:
    try:
        return response.request
    except RuntimeError:
        return None


def read_error(
    response: httpx.Response,
    *,
    buffer_size: int = DEFAULT_ERROR_BUFFER_SIZE,
    max_size: int | None = None,
) -> ServerError:
    """Reads an error response body into a ``ServerError``.

    Args:
        response: A streaming response with a 4xx status. It is not closed here.
        buffer_size: Chunk size used while reading the body.
        max_size: Optional cap on the number of body bytes kept; the
            message is truncated beyond it.

    Returns:
        ServerError: Carrying the exception code header and the body decoded
            as UTF-8.

    Raises:
        ClientError: If the body could not be read. The server's exception
            code is not available in that case.
    """
    request = _request_of(response)
    buffer = bytearray()
    try:
        for chunk in response.iter_bytes(chunk_size=buffer_size):
            buffer.extend(chunk)
            if max_size is not None and len(buffer) >= max_size:
                logger.debug(f"Server error body truncated to {max_size} bytes")
                del buffer[max_size:]
                break
    except (httpx.HTTPError, httpx.StreamError, OSError) as e:
        logger.error(f"Failed to read error response body: {e}")
        raise ClientError(
            "Failed to read response body", e, response=response, request=request
        ) from e

    message = buffer.decode("utf-8", errors="replace")
    code = parse_exception_code(response.headers)
    return ServerError(
        code, message, status_code=response.status_code, request=request
    )
