from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Optional, TypeVar

from filtering import http1
from filtering.audit_log import AuditLog
from filtering.errors import (
    DownstreamConnectError,
    DownstreamError,
    DownstreamResetError,
    DownstreamTimeoutError,
)
from filtering.policy import AdmissionPolicy, ContentPolicy, Decision, Verdict
from filtering.rule_store import RuleStore


logger = logging.getLogger(__name__)


URL_BLOCKED_BODY = "A pagina que voce tentou acessar e bloqueada."
CONTENT_BLOCKED_BODY = "A pagina possui termos bloqueados."
TIMEOUT_BODY = "Timeout"
BAD_GATEWAY_BODY = "Bad gateway"
BAD_REQUEST_BODY = "Bad request"

READ_SIZE = 64 * 1024

T = TypeVar("T")


class ExchangeState(str, Enum):
    RECEIVED = "received"
    ADMISSION_CHECKED = "admission_checked"
    BLOCKED_URL = "blocked_url"
    FORWARDING = "forwarding"
    STREAMING = "streaming"
    BLOCKED_CONTENT = "blocked_content"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {
        ExchangeState.BLOCKED_URL,
        ExchangeState.BLOCKED_CONTENT,
        ExchangeState.COMPLETED,
        ExchangeState.FAILED,
    }
)

_TRANSITIONS = {
    ExchangeState.RECEIVED: {ExchangeState.ADMISSION_CHECKED},
    ExchangeState.ADMISSION_CHECKED: {ExchangeState.BLOCKED_URL, ExchangeState.FORWARDING},
    ExchangeState.FORWARDING: {ExchangeState.STREAMING, ExchangeState.FAILED},
    ExchangeState.STREAMING: {
        ExchangeState.BLOCKED_CONTENT,
        ExchangeState.COMPLETED,
        ExchangeState.FAILED,
    },
}


@dataclass
class ProxyExchange:
    """Per-request state. `blocked` only ever goes from False to True."""

    method: str
    url: str
    request: http1.RequestHead
    state: ExchangeState = ExchangeState.RECEIVED
    blocked: bool = False
    head_committed: bool = False
    bytes_relayed: int = 0
    pending_head: Optional[bytes] = field(default=None, repr=False)

    def transition(self, new: ExchangeState) -> None:
        if new not in _TRANSITIONS.get(self.state, ()):
            raise RuntimeError(f"Illegal exchange transition {self.state.value} -> {new.value}")
        self.state = new

    def mark_blocked(self) -> None:
        self.blocked = True

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


class _Downstream:
    """Outbound connection with an idle timeout on every wait."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        url: str,
        timeout: float,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.url = url
        self.timeout = timeout

    @classmethod
    async def open(cls, host: str, port: int, *, url: str, timeout: float) -> "_Downstream":
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        except asyncio.TimeoutError:
            raise DownstreamTimeoutError(url, f"connect to {host}:{port} timed out") from None
        except ConnectionResetError as e:
            raise DownstreamResetError(url, str(e)) from e
        except OSError as e:
            raise DownstreamConnectError(url, f"{host}:{port}: {e}") from e
        return cls(reader, writer, url=url, timeout=timeout)

    async def _guard(self, aw: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(aw, self.timeout)
        except asyncio.TimeoutError:
            self.abort()
            raise DownstreamTimeoutError(self.url, f"no data for {self.timeout:g}s") from None
        except asyncio.IncompleteReadError:
            raise DownstreamResetError(self.url, "connection closed before response") from None
        except asyncio.LimitOverrunError:
            raise DownstreamError(self.url, "response head too large") from None
        except OSError as e:
            raise DownstreamResetError(self.url, str(e)) from e

    async def send(self, data: bytes) -> None:
        self.writer.write(data)
        await self._guard(self.writer.drain())

    async def read_head(self) -> http1.ResponseHead:
        raw = await self._guard(self.reader.readuntil(http1.HEAD_TERMINATOR))
        try:
            return http1.parse_response_head(raw)
        except ValueError as e:
            raise DownstreamError(self.url, str(e)) from e

    async def read_chunk(self, size: int) -> bytes:
        return await self._guard(self.reader.read(size))

    def abort(self) -> None:
        transport = self.writer.transport
        if transport is not None and not transport.is_closing():
            transport.abort()

    def close(self) -> None:
        self.writer.close()


class ProxyPipeline:
    """Runs one client exchange from request head to terminal response."""

    def __init__(
        self,
        rules: RuleStore,
        audit: AuditLog,
        *,
        upstream_port: int = 80,
        upstream_timeout: float = 10.0,
        read_size: int = READ_SIZE,
    ) -> None:
        self.rules = rules
        self.audit = audit
        self.upstream_port = int(upstream_port)
        self.upstream_timeout = float(upstream_timeout)
        self.read_size = int(read_size)
        self.admission = AdmissionPolicy(rules, audit)
        self.content = ContentPolicy(rules, audit, self.admission)

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """asyncio.start_server callback: one request per client connection."""
        url = "-"
        try:
            try:
                raw = await http1.read_head(reader)
                if raw is None:
                    return
                head = http1.parse_request_head(raw)
                url = http1.request_url(head)
            except ValueError as e:
                logger.info("Rejecting malformed request: %s", e)
                await self._write(writer, http1.simple_response(400, BAD_REQUEST_BODY))
                return

            if head.method == "CONNECT":
                await self._write(writer, http1.simple_response(405, "CONNECT is not supported"))
                return

            exchange = ProxyExchange(method=head.method, url=url, request=head)
            await self.run(exchange, reader, writer)
        except (ConnectionResetError, BrokenPipeError):
            logger.debug("Client went away: %s", url)
        except Exception:
            logger.exception("Unhandled error while proxying %s", url)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def run(
        self,
        exchange: ProxyExchange,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> ProxyExchange:
        decision = self.admission.decide(exchange.url)
        exchange.transition(ExchangeState.ADMISSION_CHECKED)

        if decision is Decision.BLOCK:
            exchange.transition(ExchangeState.BLOCKED_URL)
            self.audit.blacklist_blocked(exchange.url)
            logger.info("URL blocked: %s", exchange.url)
            await self._respond(exchange, writer, 403, URL_BLOCKED_BODY)
            return exchange

        exchange.transition(ExchangeState.FORWARDING)
        try:
            body = await self._read_request_body(exchange, reader)
        except ValueError as e:
            logger.info("Bad request body for %s: %s", exchange.url, e)
            exchange.transition(ExchangeState.FAILED)
            await self._respond(exchange, writer, 400, BAD_REQUEST_BODY)
            return exchange

        try:
            await self._forward(exchange, body, writer)
        except DownstreamResetError as e:
            # Covers idle timeouts: the aborted socket is reported as a reset.
            logger.warning("Downstream reset/timeout for %s: %s", exchange.url, e.detail)
            self.audit.timeout(exchange.url)
            await self._fail(exchange, writer, 408, TIMEOUT_BODY)
        except DownstreamConnectError as e:
            logger.warning("Downstream connect failed for %s: %s", exchange.url, e.detail)
            self.audit.connect_failed(exchange.url)
            await self._fail(exchange, writer, 502, BAD_GATEWAY_BODY)
        except DownstreamError as e:
            logger.warning("Downstream error for %s: %s", exchange.url, e.detail)
            await self._fail(exchange, writer, 502, BAD_GATEWAY_BODY)
        return exchange

    async def _read_request_body(self, exchange: ProxyExchange, reader: asyncio.StreamReader) -> bytes:
        headers = exchange.request.headers
        if http1.header_value(headers, "transfer-encoding"):
            if not http1.is_chunked(headers):
                raise ValueError("Unsupported Transfer-Encoding")
            # Relayed with its chunk framing; the Transfer-Encoding header goes along.
            return await http1.read_chunked_body(reader)
        n = http1.content_length(headers)
        if not n:
            return b""
        try:
            return await reader.readexactly(n)
        except asyncio.IncompleteReadError:
            raise ValueError("Request body shorter than Content-Length") from None

    async def _forward(self, exchange: ProxyExchange, body: bytes, writer: asyncio.StreamWriter) -> None:
        host = http1.downstream_host(exchange.request, exchange.url)
        if not host:
            raise DownstreamConnectError(exchange.url, "no downstream host")
        path = http1.downstream_path(exchange.url)

        downstream = await _Downstream.open(
            host,
            self.upstream_port,
            url=exchange.url,
            timeout=self.upstream_timeout,
        )
        try:
            await downstream.send(http1.build_downstream_request(exchange.request, path, body))
            resp = await downstream.read_head()
            exchange.transition(ExchangeState.STREAMING)
            exchange.pending_head = resp.raw
            await self._stream(exchange, resp, downstream, writer)
        finally:
            # On a content block the downstream is just dropped, not aborted.
            downstream.close()

    async def _stream(
        self,
        exchange: ProxyExchange,
        resp: http1.ResponseHead,
        downstream: _Downstream,
        writer: asyncio.StreamWriter,
    ) -> None:
        remaining: Optional[int]
        if not http1.response_has_body(exchange.method, resp.status):
            remaining = 0
        elif http1.header_value(resp.headers, "transfer-encoding"):
            # Content-Length is ignored next to Transfer-Encoding; the body runs to EOF.
            remaining = None
        else:
            try:
                remaining = http1.content_length(resp.headers)
            except ValueError:
                remaining = None

        while remaining is None or remaining > 0:
            chunk = await downstream.read_chunk(self.read_size)
            if not chunk:
                break
            if remaining is not None:
                chunk = chunk[:remaining]
                remaining -= len(chunk)
            if not await self.on_chunk(exchange, chunk, writer):
                return

        if exchange.blocked:
            return
        await self._commit_head(exchange, writer)
        exchange.transition(ExchangeState.COMPLETED)
        logger.debug("Completed %s (%d body bytes)", exchange.url, exchange.bytes_relayed)

    async def on_chunk(self, exchange: ProxyExchange, chunk: bytes, writer: asyncio.StreamWriter) -> bool:
        """Judge and relay one body chunk. Returns False once the exchange is blocked."""
        if exchange.blocked:
            return False

        if self.content.decide(chunk, exchange.url) is Verdict.BLOCK:
            exchange.mark_blocked()
            exchange.transition(ExchangeState.BLOCKED_CONTENT)
            logger.info("Content blocked: %s", exchange.url)
            if not exchange.head_committed:
                await self._respond(exchange, writer, 403, CONTENT_BLOCKED_BODY)
            # Otherwise the status is already on the wire; the connection is closed as is.
            return False

        await self._commit_head(exchange, writer)
        writer.write(chunk)
        await writer.drain()
        exchange.bytes_relayed += len(chunk)
        return True

    async def _commit_head(self, exchange: ProxyExchange, writer: asyncio.StreamWriter) -> None:
        if exchange.head_committed:
            return
        exchange.head_committed = True
        head, exchange.pending_head = exchange.pending_head, None
        if head:
            await self._write(writer, head)

    async def _respond(self, exchange: ProxyExchange, writer: asyncio.StreamWriter, status: int, body: str) -> None:
        if exchange.head_committed:
            return
        exchange.head_committed = True
        exchange.pending_head = None
        await self._write(writer, http1.simple_response(status, body))

    async def _fail(self, exchange: ProxyExchange, writer: asyncio.StreamWriter, status: int, body: str) -> None:
        if exchange.finished:
            return
        exchange.transition(ExchangeState.FAILED)
        if exchange.head_committed:
            logger.info("Response for %s already started; closing client connection", exchange.url)
            return
        await self._respond(exchange, writer, status, body)

    @staticmethod
    async def _write(writer: asyncio.StreamWriter, data: bytes) -> None:
        writer.write(data)
        await writer.drain()
