"""HTTP request model and parser."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from config import MAX_BODY_BYTES, MAX_TARGET_LENGTH

ALLOWED_HTTP_VERSIONS = {"HTTP/1.1", "HTTP/1.0"}
METHOD_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


class HTTPRequestParseError(ValueError):
    """Request parse error carrying an HTTP status code."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class HTTPRequest:
    method: str
    path: str
    http_version: str
    raw_target: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    query_string: str = ""
    authority: str | None = None
    keep_alive: bool = False

    @classmethod
    def from_bytes(cls, raw: bytes) -> "HTTPRequest":
        """Parse raw HTTP request bytes into a structured request object."""
        try:
            header_bytes, body = raw.split(b"\r\n\r\n", 1)
        except ValueError as exc:
            raise HTTPRequestParseError("Missing CRLF CRLF request separator") from exc

        lines = header_bytes.decode("iso-8859-1").split("\r\n")
        if not lines or not lines[0]:
            raise HTTPRequestParseError("Missing request line")

        first_line_parts = lines[0].split(" ")
        if len(first_line_parts) != 3:
            raise HTTPRequestParseError("Invalid request line")

        method, target, http_version = first_line_parts
        if not method or not target or not http_version:
            raise HTTPRequestParseError("Request line contains empty tokens")
        if not METHOD_TOKEN.match(method):
            raise HTTPRequestParseError("Invalid method token")
        if http_version not in ALLOWED_HTTP_VERSIONS:
            raise HTTPRequestParseError("Unsupported HTTP version", status_code=505)
        if len(target) > MAX_TARGET_LENGTH:
            raise HTTPRequestParseError("Request target too long", status_code=414)

        path, query_string, authority = _split_target(method, target)
        headers = parse_header_lines(lines[1:])

        if http_version == "HTTP/1.1" and "host" not in headers:
            raise HTTPRequestParseError("Host header required for HTTP/1.1")

        transfer_encoding = headers.get("transfer-encoding", "").lower()
        if "chunked" in transfer_encoding:
            if "content-length" in headers:
                raise HTTPRequestParseError(
                    "Content-Length cannot be combined with chunked transfer"
                )
            scanned = scan_chunked_body(body)
            if scanned is None or scanned[0] != len(body):
                raise HTTPRequestParseError("Incomplete chunked body")
            body = scanned[1]
        elif "content-length" in headers:
            if len(body) != parse_content_length(headers["content-length"]):
                raise HTTPRequestParseError("Body length does not match Content-Length")
        elif body:
            raise HTTPRequestParseError("Unexpected body without framing headers")

        if len(body) > MAX_BODY_BYTES:
            raise HTTPRequestParseError("Decoded body exceeded MAX_BODY_BYTES", status_code=413)

        return cls(
            # Method names are case-sensitive; "get" is not GET.
            method=method,
            path=path,
            raw_target=target,
            http_version=http_version,
            headers=headers,
            body=body,
            query_string=query_string,
            authority=authority,
            keep_alive=_is_keep_alive(http_version, headers.get("connection", "")),
        )


def parse_header_lines(lines: list[str]) -> dict[str, str]:
    """Parse header lines into a dict keyed by lowercase field name."""
    headers: dict[str, str] = {}
    for line in lines:
        if not line:
            continue
        if ":" not in line:
            raise HTTPRequestParseError("Malformed header line")
        name, value = line.split(":", 1)
        header_name = name.strip().lower()
        if not header_name or header_name != name.lower():
            raise HTTPRequestParseError("Invalid header name")
        headers[header_name] = value.strip()
    return headers


def parse_content_length(value: str) -> int:
    try:
        length = int(value.strip())
    except ValueError as exc:
        raise HTTPRequestParseError("Invalid Content-Length") from exc
    if length < 0:
        raise HTTPRequestParseError("Negative Content-Length is invalid")
    return length


def scan_chunked_body(encoded_body: bytes) -> tuple[int, bytes] | None:
    """Decode a chunked body prefix.

    Returns ``(consumed_bytes, decoded_body)`` once the terminating chunk and
    trailer section are present, or None while more bytes are needed.
    """
    position = 0
    decoded = bytearray()
    while True:
        line_end = encoded_body.find(b"\r\n", position)
        if line_end == -1:
            return None
        size_token = encoded_body[position:line_end].split(b";", 1)[0].strip()
        try:
            chunk_size = int(size_token, 16)
        except ValueError as exc:
            raise HTTPRequestParseError("Malformed chunk size") from exc
        if chunk_size < 0:
            raise HTTPRequestParseError("Malformed chunk size")
        position = line_end + 2

        if chunk_size == 0:
            break

        chunk_end = position + chunk_size
        if chunk_end + 2 > len(encoded_body):
            return None
        if encoded_body[chunk_end : chunk_end + 2] != b"\r\n":
            raise HTTPRequestParseError("Chunk missing CRLF terminator")
        decoded.extend(encoded_body[position:chunk_end])
        if len(decoded) > MAX_BODY_BYTES:
            raise HTTPRequestParseError("Decoded body exceeded MAX_BODY_BYTES", status_code=413)
        position = chunk_end + 2

    # Trailer fields are read and discarded.
    while True:
        trailer_end = encoded_body.find(b"\r\n", position)
        if trailer_end == -1:
            return None
        if trailer_end == position:
            return trailer_end + 2, bytes(decoded)
        if b":" not in encoded_body[position:trailer_end]:
            raise HTTPRequestParseError("Malformed trailer header")
        position = trailer_end + 2


def _split_target(method: str, target: str) -> tuple[str, str, str | None]:
    if target.startswith("/"):
        path, _, query_string = target.partition("?")
        return path, query_string, None

    if "://" in target:
        try:
            parsed = urlsplit(target)
        except ValueError as exc:
            raise HTTPRequestParseError("Invalid absolute-form request target") from exc
        if parsed.scheme.lower() not in {"http", "https"} or not parsed.netloc:
            raise HTTPRequestParseError("Invalid absolute-form request target")
        return parsed.path or "/", parsed.query, parsed.netloc

    # Asterisk form belongs to OPTIONS and authority form to CONNECT; neither
    # names a path to serve.
    if (method == "OPTIONS" and target == "*") or (method == "CONNECT" and "/" not in target):
        return target, "", None
    raise HTTPRequestParseError("Invalid request target")


def _is_keep_alive(http_version: str, connection_header: str) -> bool:
    token = connection_header.lower()
    if http_version == "HTTP/1.1":
        return "close" not in token
    if http_version == "HTTP/1.0":
        return "keep-alive" in token
    return False
