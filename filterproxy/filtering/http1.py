from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple
from urllib.parse import urlsplit


HEAD_TERMINATOR = b"\r\n\r\n"
MAX_HEAD_BYTES = 64 * 1024
MAX_CHUNKED_BODY_BYTES = 16 * 1024 * 1024

# Headers meant for the proxy itself, or describing the client-side connection.
_NOT_FORWARDED: Set[str] = {
    "proxy-connection",
    "proxy-authorization",
    "connection",
    "keep-alive",
}

_REASONS = {
    400: "Bad Request",
    403: "Forbidden",
    405: "Method Not Allowed",
    408: "Request Timeout",
    502: "Bad Gateway",
}


Headers = List[Tuple[str, str]]


@dataclass(frozen=True)
class RequestHead:
    method: str
    target: str
    version: str
    headers: Headers

    def header(self, name: str) -> str:
        return header_value(self.headers, name)


@dataclass(frozen=True)
class ResponseHead:
    version: str
    status: int
    reason: str
    headers: Headers
    raw: bytes

    def header(self, name: str) -> str:
        return header_value(self.headers, name)


def header_value(headers: Headers, name: str) -> str:
    n = name.lower()
    for k, v in headers:
        if k.lower() == n:
            return v
    return ""


def _parse_header_lines(lines: List[str]) -> Headers:
    out: Headers = []
    for line in lines:
        if not line:
            continue
        if ":" not in line:
            raise ValueError(f"Malformed header line: {line[:80]!r}")
        k, v = line.split(":", 1)
        k = k.strip()
        if not k:
            raise ValueError("Empty header name")
        out.append((k, v.strip()))
    return out


def parse_request_head(data: bytes) -> RequestHead:
    text = data.decode("iso-8859-1")
    if text.endswith("\r\n\r\n"):
        text = text[:-4]
    lines = text.split("\r\n")
    parts = lines[0].split()
    if len(parts) != 3 or not parts[2].upper().startswith("HTTP/"):
        raise ValueError(f"Malformed request line: {lines[0][:120]!r}")
    method, target, version = parts
    return RequestHead(
        method=method.upper(),
        target=target,
        version=version,
        headers=_parse_header_lines(lines[1:]),
    )


def parse_response_head(data: bytes) -> ResponseHead:
    text = data.decode("iso-8859-1")
    if text.endswith("\r\n\r\n"):
        text = text[:-4]
    lines = text.split("\r\n")
    parts = lines[0].split(" ", 2)
    if len(parts) < 2 or not parts[0].upper().startswith("HTTP/"):
        raise ValueError(f"Malformed status line: {lines[0][:120]!r}")
    try:
        status = int(parts[1])
    except ValueError:
        raise ValueError(f"Malformed status code: {parts[1][:20]!r}") from None
    return ResponseHead(
        version=parts[0],
        status=status,
        reason=parts[2] if len(parts) > 2 else "",
        headers=_parse_header_lines(lines[1:]),
        raw=data,
    )


async def read_head(reader: asyncio.StreamReader) -> Optional[bytes]:
    """Read through the blank line ending a message head.

    Returns None when the peer closed before sending anything. Raises
    ValueError when the head is truncated or larger than the reader's limit.
    """
    try:
        return await reader.readuntil(HEAD_TERMINATOR)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise ValueError("Connection closed inside message head") from None
    except asyncio.LimitOverrunError:
        raise ValueError("Message head too large") from None


def host_without_port(value: str) -> str:
    v = (value or "").strip()
    if v.startswith("["):
        end = v.find("]")
        return v[1:end] if end > 0 else v
    if v.count(":") == 1:
        return v.split(":", 1)[0]
    return v


def request_url(head: RequestHead) -> str:
    """The URL the client asked for, as used for matching and logging."""
    if "://" in head.target:
        return head.target
    host = head.header("host")
    if not host:
        raise ValueError("Request has neither an absolute URL nor a Host header")
    return f"http://{host}{head.target if head.target.startswith('/') else '/' + head.target}"


def downstream_host(head: RequestHead, url: str) -> str:
    host = host_without_port(head.header("host"))
    if host:
        return host
    return urlsplit(url).hostname or ""


def downstream_path(url: str) -> str:
    # Path plus query; the fragment never goes on the wire.
    parts = urlsplit(url)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    return path


def content_length(headers: Headers) -> Optional[int]:
    raw = header_value(headers, "content-length")
    if not raw:
        return None
    try:
        n = int(raw.split(",", 1)[0].strip())
    except ValueError:
        raise ValueError(f"Invalid Content-Length: {raw[:40]!r}") from None
    if n < 0:
        raise ValueError(f"Invalid Content-Length: {raw[:40]!r}")
    return n


def is_chunked(headers: Headers) -> bool:
    """True when the last transfer coding is "chunked"."""
    raw = header_value(headers, "transfer-encoding")
    if not raw:
        return False
    codings = [c.strip().lower() for c in raw.split(",") if c.strip()]
    return bool(codings) and codings[-1] == "chunked"


async def read_chunked_body(reader: asyncio.StreamReader, *, max_bytes: int = MAX_CHUNKED_BODY_BYTES) -> bytes:
    """Read a chunked message body and return it with its framing intact.

    The returned bytes run from the first chunk-size line through the blank
    line after the trailers, so they can be relayed as-is next to the
    original Transfer-Encoding header. Raises ValueError on bad framing.
    """
    out = bytearray()
    try:
        while True:
            line = await reader.readuntil(b"\r\n")
            out += line
            size_text = line[:-2].split(b";", 1)[0].strip()
            try:
                size = int(size_text, 16)
            except ValueError:
                raise ValueError(f"Invalid chunk size: {size_text[:20]!r}") from None
            if size < 0:
                raise ValueError(f"Invalid chunk size: {size_text[:20]!r}")
            if size == 0:
                # Trailer section, ended by an empty line.
                while True:
                    trailer = await reader.readuntil(b"\r\n")
                    out += trailer
                    if trailer == b"\r\n":
                        return bytes(out)
                    if len(out) > max_bytes:
                        raise ValueError("Chunked body too large")
            if len(out) + size > max_bytes:
                raise ValueError("Chunked body too large")
            data = await reader.readexactly(size + 2)
            if not data.endswith(b"\r\n"):
                raise ValueError("Chunk data not followed by CRLF")
            out += data
    except asyncio.IncompleteReadError:
        raise ValueError("Connection closed inside chunked body") from None
    except asyncio.LimitOverrunError:
        raise ValueError("Chunk line too long") from None


def build_downstream_request(head: RequestHead, path: str, body: bytes = b"") -> bytes:
    lines = [f"{head.method} {path} {head.version}"]
    # Transfer-Encoding framing wins over a Content-Length sent alongside it.
    chunked = is_chunked(head.headers)
    for k, v in head.headers:
        if k.lower() in _NOT_FORWARDED:
            continue
        if chunked and k.lower() == "content-length":
            continue
        lines.append(f"{k}: {v}")
    # One request per connection; end of body is signalled by the server closing.
    lines.append("Connection: close")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("iso-8859-1") + body


def simple_response(status: int, body: str, *, content_type: str = "text/plain; charset=utf-8") -> bytes:
    payload = body.encode("utf-8")
    reason = _REASONS.get(status, "")
    return (
        f"HTTP/1.1 {status} {reason}\r\n".encode("ascii")
        + f"Content-Type: {content_type}\r\n".encode("ascii")
        + f"Content-Length: {len(payload)}\r\n".encode("ascii")
        + b"Connection: close\r\n"
        b"\r\n"
        + payload
    )


def response_has_body(method: str, status: int) -> bool:
    if method == "HEAD":
        return False
    return not (100 <= status < 200 or status in (204, 304))
