import httpx
import pytest

from clickhouse_http.exceptions import ClientError, ServerError
from clickhouse_http.response import Outcome, classify, parse_exception_code, read_error


class FailingStream(httpx.SyncByteStream):
    """Yields one chunk, then fails like a connection reset mid-body."""

    def __iter__(self):
        yield b"Code: 62. "
        raise httpx.ReadError("connection reset by peer")


def error_response(status_code=400, headers=None, content=b"", stream=None):
    request = httpx.Request("POST", "http://localhost:8123/")
    if stream is not None:
        return httpx.Response(status_code, headers=headers, stream=stream, request=request)
    return httpx.Response(status_code, headers=headers, content=content, request=request)


@pytest.mark.parametrize(
    "status, outcome",
    [
        (200, Outcome.SUCCESS),
        (204, Outcome.SUCCESS),
        (301, Outcome.REDIRECT),
        (400, Outcome.CLIENT_ERROR),
        (499, Outcome.CLIENT_ERROR),
        (500, Outcome.SERVER_ERROR),
        (503, Outcome.SERVER_ERROR),
        (101, Outcome.UNEXPECTED),
        (600, Outcome.UNEXPECTED),
    ],
)
def test_classify(status, outcome):
    assert classify(status) is outcome


@pytest.mark.parametrize(
    "headers, expected",
    [
        ({}, 0),
        ({"X-ClickHouse-Exception-Code": "62"}, 62),
        ({"x-clickhouse-exception-code": " 81 "}, 81),
        ({"X-ClickHouse-Exception-Code": "abc"}, 0),
        ({"X-ClickHouse-Exception-Code": "-5"}, 0),
    ],
)
def test_parse_exception_code(headers, expected):
    assert parse_exception_code(httpx.Headers(headers)) == expected


def test_read_error():
    response = error_response(
        headers={"X-ClickHouse-Exception-Code": "62"},
        content="Syntax error: failed at position 1 ('SELEC')".encode(),
    )

    error = read_error(response, buffer_size=4)

    assert isinstance(error, ServerError)
    assert error.code == 62
    assert error.status_code == 400
    assert error.message == "Syntax error: failed at position 1 ('SELEC')"
    assert str(error).startswith("Code: 62, HTTP 400.")


def test_read_error_replaces_invalid_utf8():
    error = read_error(error_response(content=b"bad \xff byte"))
    assert error.message == "bad � byte"


def test_read_error_truncates_long_messages():
    error = read_error(error_response(content=b"x" * 100), buffer_size=16, max_size=40)
    assert error.message == "x" * 40


def test_read_error_body_failure_is_client_error():
    """If the error body cannot be read, the server code is lost and ClientError is raised."""
    response = error_response(
        headers={"X-ClickHouse-Exception-Code": "62"}, stream=FailingStream()
    )

    with pytest.raises(ClientError, match="Failed to read response body") as exc_info:
        read_error(response)

    assert isinstance(exc_info.value.cause, httpx.ReadError)
    assert exc_info.value.response is response
