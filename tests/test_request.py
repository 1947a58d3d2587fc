"""Unit tests for the resumable proxy request parser."""

import pytest

from request import (
    MalformedRequestError,
    RequestParseError,
    RequestParser,
    RequestTooLargeError,
    split_authority,
)


def _parse(raw: bytes, **limits: int):
    return RequestParser(**limits).feed(raw)


def test_parse_absolute_form_get() -> None:
    raw = (
        b"GET http://Example.COM:8080/search?q=proxy HTTP/1.1\r\n"
        b"Host: example.com:8080\r\n"
        b"User-Agent: pytest\r\n"
        b"\r\n"
    )

    request = _parse(raw)

    assert request.method == "GET"
    assert request.target.host == "example.com"
    assert request.target.port == 8080
    assert request.target.path == "/search?q=proxy"
    assert request.target.form == "absolute"
    assert request.target.url == "http://example.com:8080/search?q=proxy"
    assert request.keep_alive is True
    assert request.body == b""


def test_parse_origin_form_takes_host_header() -> None:
    request = _parse(b"GET /index.html HTTP/1.1\r\nHost: origin.test\r\n\r\n")

    assert request.target.host == "origin.test"
    assert request.target.port == 80
    assert request.target.form == "origin"
    assert request.target.url == "http://origin.test/index.html"


def test_parse_absolute_form_without_path_defaults_to_slash() -> None:
    request = _parse(b"GET http://origin.test HTTP/1.1\r\nHost: origin.test\r\n\r\n")

    assert request.target.path == "/"


def test_origin_form_without_host_is_malformed() -> None:
    with pytest.raises(MalformedRequestError, match="Host header required"):
        _parse(b"GET / HTTP/1.1\r\nAccept: */*\r\n\r\n")


def test_parse_connect_authority_form() -> None:
    request = _parse(b"CONNECT secure.test:443 HTTP/1.1\r\nHost: secure.test:443\r\n\r\n")

    assert request.is_tunnel
    assert request.target.form == "authority"
    assert request.target.host == "secure.test"
    assert request.target.port == 443
    assert request.target.url == "secure.test:443"


def test_connect_requires_port() -> None:
    with pytest.raises(MalformedRequestError, match="missing a port"):
        _parse(b"CONNECT secure.test HTTP/1.1\r\n\r\n")


def test_https_absolute_target_is_rejected() -> None:
    with pytest.raises(MalformedRequestError, match="http://"):
        _parse(b"GET https://secure.test/ HTTP/1.1\r\nHost: secure.test\r\n\r\n")


def test_parser_resumes_across_byte_sized_reads() -> None:
    raw = (
        b"POST http://origin.test/submit HTTP/1.1\r\n"
        b"Host: origin.test\r\n"
        b"Content-Length: 9\r\n"
        b"\r\n"
        b"name=test"
    )
    parser = RequestParser()

    results = [parser.feed(raw[index : index + 1]) for index in range(len(raw))]

    assert all(result is None for result in results[:-1])
    assert results[-1].body == b"name=test"
    assert not parser.has_partial


def test_pipelined_bytes_stay_buffered_for_next_request() -> None:
    raw = (
        b"GET http://origin.test/a HTTP/1.1\r\nHost: origin.test\r\n\r\n"
        b"GET http://origin.test/b HTTP/1.1\r\nHost: origin.test\r\n\r\n"
    )
    parser = RequestParser()

    first = parser.feed(raw)
    second = parser.feed()

    assert first.target.path == "/a"
    assert second.target.path == "/b"
    assert parser.feed() is None


def test_chunked_body_is_decoded() -> None:
    raw = (
        b"POST http://origin.test/upload HTTP/1.1\r\n"
        b"Host: origin.test\r\n"
        b"Transfer-Encoding: chunked\r\n"
        b"\r\n"
        b"4\r\nWiki\r\n5;ext=1\r\npedia\r\n0\r\nX-Trailer: yes\r\n\r\n"
    )

    request = _parse(raw)

    assert request.body == b"Wikipedia"


def test_content_length_with_transfer_encoding_is_rejected() -> None:
    raw = (
        b"POST http://origin.test/ HTTP/1.1\r\n"
        b"Host: origin.test\r\n"
        b"Content-Length: 4\r\n"
        b"Transfer-Encoding: chunked\r\n"
        b"\r\n"
    )

    with pytest.raises(MalformedRequestError, match="cannot be combined"):
        _parse(raw)


def test_invalid_content_length_is_rejected() -> None:
    raw = b"POST http://origin.test/ HTTP/1.1\r\nHost: origin.test\r\nContent-Length: abc\r\n\r\n"

    with pytest.raises(MalformedRequestError, match="Invalid Content-Length"):
        _parse(raw)


def test_invalid_request_line_is_rejected() -> None:
    with pytest.raises(MalformedRequestError, match="Invalid request line") as exc_info:
        _parse(b"BROKEN-LINE\r\nHost: origin.test\r\n\r\n")

    assert exc_info.value.status_code == 400


def test_unsupported_version_maps_to_505() -> None:
    with pytest.raises(RequestParseError) as exc_info:
        _parse(b"GET http://origin.test/ HTTP/2.0\r\nHost: origin.test\r\n\r\n")

    assert exc_info.value.status_code == 505


def test_oversized_header_section_is_rejected_before_completion() -> None:
    parser = RequestParser(max_header_bytes=64)

    with pytest.raises(RequestTooLargeError) as exc_info:
        parser.feed(b"GET http://origin.test/ HTTP/1.1\r\nX-Fill: " + b"a" * 100)

    assert exc_info.value.status_code == 413


def test_too_many_headers_is_rejected() -> None:
    fields = b"".join(f"X-{index}: v\r\n".encode() for index in range(5))

    with pytest.raises(RequestTooLargeError, match="Too many header fields"):
        _parse(b"GET / HTTP/1.1\r\nHost: a\r\n" + fields + b"\r\n", max_header_count=3)


def test_long_target_maps_to_414() -> None:
    raw = b"GET http://origin.test/" + b"p" * 64 + b" HTTP/1.1\r\nHost: origin.test\r\n\r\n"

    with pytest.raises(RequestTooLargeError) as exc_info:
        _parse(raw, max_target_length=32)

    assert exc_info.value.status_code == 414


def test_body_over_limit_is_rejected() -> None:
    raw = b"POST http://origin.test/ HTTP/1.1\r\nHost: origin.test\r\nContent-Length: 100\r\n\r\n"

    with pytest.raises(RequestTooLargeError, match="max_body_bytes"):
        _parse(raw, max_body_bytes=10)


def test_http10_keep_alive_requires_opt_in() -> None:
    plain = _parse(b"GET http://origin.test/ HTTP/1.0\r\n\r\n")
    opted_in = _parse(b"GET http://origin.test/ HTTP/1.0\r\nProxy-Connection: keep-alive\r\n\r\n")

    assert plain.keep_alive is False
    assert opted_in.keep_alive is True


def test_to_upstream_bytes_rewrites_target_and_hop_by_hop_headers() -> None:
    raw = (
        b"POST http://origin.test:8080/submit?x=1 HTTP/1.1\r\n"
        b"Host: wrong.test\r\n"
        b"Proxy-Connection: keep-alive\r\n"
        b"Proxy-Authorization: Basic Zm9v\r\n"
        b"Connection: X-Secret\r\n"
        b"X-Secret: 1\r\n"
        b"Transfer-Encoding: chunked\r\n"
        b"\r\n"
        b"3\r\nabc\r\n0\r\n\r\n"
    )
    request = _parse(raw)

    upstream = request.to_upstream_bytes(server_name="PyProxy/1.0", keep_alive=False)
    head, _, body = upstream.partition(b"\r\n\r\n")
    lines = head.decode().split("\r\n")

    assert lines[0] == "POST /submit?x=1 HTTP/1.1"
    assert "Host: origin.test:8080" in lines
    assert "Content-Length: 3" in lines
    assert "Via: 1.1 PyProxy/1.0" in lines
    assert "Connection: close" in lines
    assert not any(line.lower().startswith(("proxy-", "x-secret", "transfer-encoding")) for line in lines)
    assert body == b"abc"


@pytest.mark.parametrize(
    ("authority", "expected"),
    [
        ("Example.com", ("example.com", 80)),
        ("example.com:8080", ("example.com", 8080)),
        ("[::1]:8443", ("::1", 8443)),
    ],
)
def test_split_authority(authority: str, expected: tuple[str, int]) -> None:
    assert split_authority(authority, default_port=80) == expected


@pytest.mark.parametrize(
    "authority", ["example.com:0", "example.com:70000", "example.com:x", ":80", "example.com:\u00b2"]
)
def test_split_authority_rejects_bad_values(authority: str) -> None:
    with pytest.raises(MalformedRequestError):
        split_authority(authority, default_port=80)


@pytest.mark.parametrize("value", [b"\xb2", b"+5", b"5 5", b"-1"])
def test_content_length_must_be_ascii_digits(value: bytes) -> None:
    raw = b"POST http://origin.test/ HTTP/1.1\r\nHost: origin.test\r\nContent-Length: " + value + b"\r\n\r\n"

    with pytest.raises(MalformedRequestError, match="Invalid Content-Length"):
        _parse(raw)


def test_non_ascii_digit_port_in_target_is_malformed() -> None:
    raw = "GET http://origin.test:\xb2/ HTTP/1.1\r\nHost: origin.test\r\n\r\n".encode("iso-8859-1")

    with pytest.raises(MalformedRequestError, match="Invalid port"):
        _parse(raw)


def test_chunked_body_decodes_when_fed_byte_by_byte() -> None:
    raw = (
        b"POST http://origin.test/upload HTTP/1.1\r\n"
        b"Host: origin.test\r\n"
        b"Transfer-Encoding: chunked\r\n"
        b"\r\n"
        b"4\r\nWiki\r\na\r\npedia-abcd\r\n0\r\n\r\n"
        b"GET http://origin.test/next HTTP/1.1\r\nHost: origin.test\r\n\r\n"
    )
    parser = RequestParser()

    requests = []
    for index in range(len(raw)):
        request = parser.feed(raw[index : index + 1])
        if request is not None:
            requests.append(request)

    assert [request.body for request in requests] == [b"Wikipedia-abcd", b""]
    assert requests[1].target.path == "/next"
    assert parser.has_partial is False


def test_endless_chunk_size_line_is_rejected_while_streaming() -> None:
    parser = RequestParser(max_header_bytes=1024, max_body_bytes=1024)
    assert (
        parser.feed(
            b"POST http://origin.test/ HTTP/1.1\r\nHost: origin.test\r\nTransfer-Encoding: chunked\r\n\r\n"
        )
        is None
    )

    with pytest.raises(RequestTooLargeError, match="framing line too long"):
        for _ in range(100):
            parser.feed(b"1" * 100)


def test_oversized_chunked_trailer_is_rejected() -> None:
    trailer = b"".join(f"X-T{index}: {'v' * 60}\r\n".encode() for index in range(100))
    raw = (
        b"POST http://origin.test/ HTTP/1.1\r\nHost: origin.test\r\nTransfer-Encoding: chunked\r\n\r\n"
        b"0\r\n" + trailer + b"\r\n"
    )

    with pytest.raises(RequestTooLargeError, match="trailer section too long"):
        _parse(raw)


def test_decoded_chunked_body_over_limit_is_rejected() -> None:
    raw = (
        b"POST http://origin.test/ HTTP/1.1\r\nHost: origin.test\r\nTransfer-Encoding: chunked\r\n\r\n"
        b"8\r\n12345678\r\n8\r\n"
    )

    with pytest.raises(RequestTooLargeError, match="max_body_bytes"):
        _parse(raw, max_body_bytes=10)


@pytest.mark.parametrize("size_line", [b"0x5", b"+5", b"\xb2", b""])
def test_malformed_chunk_sizes_are_rejected(size_line: bytes) -> None:
    raw = (
        b"POST http://origin.test/ HTTP/1.1\r\nHost: origin.test\r\nTransfer-Encoding: chunked\r\n\r\n"
        + size_line
        + b"\r\nhello\r\n0\r\n\r\n"
    )

    with pytest.raises(MalformedRequestError, match="Malformed chunk size"):
        _parse(raw)


def test_chunk_size_line_without_carriage_return_is_rejected() -> None:
    raw = (
        b"POST http://origin.test/ HTTP/1.1\r\nHost: origin.test\r\nTransfer-Encoding: chunked\r\n\r\n"
        b"5\nhello\r\n0\r\n\r\n"
    )

    with pytest.raises(MalformedRequestError, match="CRLF"):
        _parse(raw)
