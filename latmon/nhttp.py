"""Minimal HTTP/1.1 client used for latency measurement.

Each request runs on a fresh connection and is timed phase by phase:
  DNS -> TCP -> TLS -> HTTP (request write to end of response headers)

Timings are taken with time.perf_counter_ns().  Only the status line and
headers are parsed; the body is handed back unread, either as a chunked
decoder or as the raw connection (readable until the peer closes it).

Public API:
    Client             -- time one request end to end
    Request, Response  -- what goes out, what comes back
    ConnectionCloser   -- single owner of all reads on a connection
    ChunkedBodyReader  -- chunked transfer-encoding decoder
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import random
import re
import ssl
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Union
from urllib.parse import urlsplit

import dns.asyncresolver
import dns.exception
import dns.rdatatype

from latmon.config import DEFAULT_PORTS
from latmon.errors import ProtocolError, TransportError, UnexpectedEOFError
from latmon.models import PingState

logger = logging.getLogger(__name__)

# Invoked with the phase about to begin, right before each blocking call.
# Raising from it aborts the request.
PhaseHook = Callable[[PingState], None]

_HEX_SIZE = re.compile(rb"[0-9A-Fa-f]+")
_MAX_SIZE_DIGITS = 16  # sizes must fit in 64 bits
_CRLF = b"\r\n"


def _no_check(state: PingState) -> None:
    pass


# ---------------------------------------------------------------------------
# Connection wrapper
# ---------------------------------------------------------------------------

class ConnectionCloser:
    """Buffered reader over one connection; closing it closes the connection.

    Once a connection is wrapped, nothing else reads from it.  Reads honour
    the absolute deadline (event loop clock) last given to
    :meth:`set_deadline`.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._deadline: Optional[float] = None

    def set_deadline(self, deadline: Optional[float]) -> None:
        self._deadline = deadline

    async def _wait(self, aw):
        if self._deadline is None:
            return await aw
        remaining = self._deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(aw, timeout=max(remaining, 0.0))
        except asyncio.TimeoutError as exc:
            raise TransportError("read deadline exceeded") from exc

    async def readline(self) -> bytes:
        """Read through the next line-feed; a short result means end of stream."""
        try:
            return await self._wait(self._reader.readline())
        except ValueError as exc:
            # line longer than the stream buffer limit
            raise ProtocolError(f"line too long: {exc}") from exc
        except OSError as exc:
            raise TransportError(f"read: {exc}") from exc

    async def readexactly(self, n: int) -> bytes:
        try:
            return await self._wait(self._reader.readexactly(n))
        except asyncio.IncompleteReadError as exc:
            raise UnexpectedEOFError(
                f"short read: wanted {n} bytes, got {len(exc.partial)}"
            ) from exc
        except OSError as exc:
            raise TransportError(f"read: {exc}") from exc

    async def read(self, n: int = -1) -> bytes:
        """Read up to *n* bytes (all remaining if negative); ``b""`` at end of stream."""
        try:
            return await self._wait(self._reader.read(n))
        except OSError as exc:
            raise TransportError(f"read: {exc}") from exc

    def close(self) -> None:
        """Close the underlying transport, discarding anything still buffered."""
        self._writer.close()


# ---------------------------------------------------------------------------
# Chunked transfer-encoding
# ---------------------------------------------------------------------------

class ChunkedBodyReader:
    """Decode a chunked body directly off a :class:`ConnectionCloser`.

    ``read()`` returns decoded payload bytes.  The terminal zero-size chunk
    ends the body: the call that sees it returns what it had produced so far,
    ``done`` becomes True, and every later call returns ``b""``.  Chunk
    extensions and trailers are not supported.
    """

    def __init__(self, conn: ConnectionCloser) -> None:
        self._conn = conn
        self._remaining = 0
        self.done = False

    async def read(self, n: int = -1) -> bytes:
        """Return up to *n* decoded bytes (the whole rest of the body if negative).

        On failure the bytes decoded earlier in the same call are attached to
        the raised error as ``partial``.
        """
        if self.done or n == 0:
            return b""

        out = bytearray()
        try:
            await self._fill(out, n)
        except (ProtocolError, TransportError) as exc:
            exc.partial = bytes(out)
            raise
        return bytes(out)

    async def _fill(self, out: bytearray, n: int) -> None:
        unbounded = n < 0
        want = n

        while unbounded or want > 0:
            if self._remaining == 0:
                size = await self._read_chunk_size()
                if size == 0:
                    self.done = True
                    return
                self._remaining = size

            k = self._remaining if unbounded else min(want, self._remaining)
            try:
                out += await self._conn.readexactly(k)
            except UnexpectedEOFError as exc:
                raise UnexpectedEOFError(f"chunked-reader: chunk data: {exc}") from exc

            want -= k
            self._remaining -= k

            if self._remaining == 0:
                await self._skip_crlf()

    def close(self) -> None:
        self._conn.close()

    async def _read_chunk_size(self) -> int:
        line = await self._conn.readline()
        if not line.endswith(b"\n"):
            raise UnexpectedEOFError("chunked-reader: chunk size: unexpected end of stream")

        line = line.rstrip()
        if not line:
            raise ProtocolError("chunked-reader: chunk size: empty line")
        if not _HEX_SIZE.fullmatch(line):
            raise ProtocolError(f"chunked-reader: invalid chunk size {line[:32]!r}")
        if len(line) > _MAX_SIZE_DIGITS:
            raise ProtocolError(f"chunked-reader: chunk size too large {line[:32]!r}")
        return int(line, 16)

    async def _skip_crlf(self) -> None:
        try:
            tail = await self._conn.readexactly(2)
        except UnexpectedEOFError as exc:
            raise UnexpectedEOFError(f"chunked-reader: crlf: {exc}") from exc
        if tail != _CRLF:
            raise ProtocolError(f"chunked-reader: invalid CRLF after chunk: {tail!r}")


Body = Union[ConnectionCloser, ChunkedBodyReader]


# ---------------------------------------------------------------------------
# Headers, request, response
# ---------------------------------------------------------------------------

class Headers:
    """Ordered, case-insensitive, multi-valued header list."""

    def __init__(self, items: Optional[list[tuple[str, str]]] = None) -> None:
        self._items: list[tuple[str, str]] = []
        for name, value in items or []:
            self.add(name, value)

    def add(self, name: str, value: str) -> None:
        if any(c in name or c in value for c in "\r\n"):
            raise ValueError(f"header {name!r}: embedded line break")
        self._items.append((name, value))

    def values(self, name: str) -> list[str]:
        key = name.lower()
        return [v for n, v in self._items if n.lower() == key]

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        vals = self.values(name)
        return vals[0] if vals else default

    def has_token(self, name: str, token: str) -> bool:
        """True if any comma-separated value of *name* equals *token*."""
        token = token.lower()
        for value in self.values(name):
            for part in value.split(","):
                if part.strip().lower() == token:
                    return True
        return False

    def _fold(self, text: str) -> None:
        name, value = self._items[-1]
        self._items[-1] = (name, f"{value} {text}" if value else text)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and bool(self.values(name))

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class Request:
    """An HTTP/1.1 request without a body."""

    method: str
    url: str
    headers: Headers = field(default_factory=Headers)

    def encode(self, host: str, target: str) -> bytes:
        lines = [f"{self.method} {target} HTTP/1.1"]
        if "host" not in self.headers:
            lines.append(f"Host: {host}")
        lines.extend(f"{name}: {value}" for name, value in self.headers)
        lines.append("")
        lines.append("")
        return "\r\n".join(lines).encode("latin-1")


@dataclass
class Response:
    """Status line, headers and unread body of one response, plus phase timings (ns)."""

    proto: str = ""
    status: str = ""
    status_code: int = 0
    headers: Headers = field(default_factory=Headers)
    body: Optional[Body] = None

    dns: int = 0
    tcp: int = 0
    tls: int = 0
    http: int = 0
    e2e: int = 0

    @classmethod
    async def read(cls, conn: ConnectionCloser) -> Response:
        """Parse a status line and header block off *conn* and pick the body framing."""
        line = await conn.readline()
        if not line.endswith(b"\n"):
            raise UnexpectedEOFError("http: unexpected EOF reading status line")

        text = line.decode("latin-1").rstrip("\r\n")
        proto, sep, status = text.partition(" ")
        if not sep:
            raise ProtocolError(f"http: malformed response line: {text!r}")

        code = status.partition(" ")[0]
        if len(code) != 3:
            raise ProtocolError(f"http: malformed HTTP status code: {status!r}")
        if not (code.isascii() and code.isdigit()):
            raise ProtocolError(f"http: malformed status code: {status!r}")

        resp = cls(proto=proto, status=status, status_code=int(code))
        resp.headers = await _read_headers(conn)

        # Content-Length is not enforced: without chunking the body is
        # whatever arrives until the peer closes the connection.
        if resp.headers.has_token("Transfer-Encoding", "chunked"):
            resp.body = ChunkedBodyReader(conn)
        else:
            resp.body = conn
        return resp

    def close(self) -> None:
        if self.body is not None:
            self.body.close()


async def _read_headers(conn: ConnectionCloser) -> Headers:
    """Read ``Name: value`` lines up to and including the blank line."""
    headers = Headers()
    while True:
        line = await conn.readline()
        if not line.endswith(b"\n"):
            raise UnexpectedEOFError("http: unexpected EOF reading headers")

        text = line.decode("latin-1").rstrip("\r\n")
        if not text:
            return headers
        if "\r" in text or "\n" in text:
            raise ProtocolError(f"http: bare line break in MIME header: {text!r}")

        if text[0] in " \t":
            if not len(headers):
                raise ProtocolError(f"http: malformed MIME header initial line: {text!r}")
            headers._fold(text.strip())
            continue

        name, sep, value = text.partition(":")
        if not sep or not name or name != name.strip():
            raise ProtocolError(f"http: malformed MIME header line: {text!r}")
        headers.add(name, value.strip())


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

def _literal_ip(host: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return None


def _build_ssl_context() -> ssl.SSLContext:
    """Standard context that validates the server certificate; HTTP/1.1 only."""
    ctx = ssl.create_default_context()
    ctx.set_alpn_protocols(["http/1.1"])
    return ctx


class Client:
    """Times DNS, TCP, TLS and HTTP phases of one request on a fresh connection.

    Every phase runs under its own deadline of *timeout* seconds, set just
    before the phase starts.  Connections are never reused.
    """

    def __init__(
        self,
        timeout: float,
        resolver: Optional[dns.asyncresolver.Resolver] = None,
    ) -> None:
        self.timeout = timeout
        self._resolver = resolver
        self._ssl: Optional[ssl.SSLContext] = None

    @property
    def resolver(self) -> dns.asyncresolver.Resolver:
        if self._resolver is None:
            self._resolver = dns.asyncresolver.Resolver()
            self._resolver.lifetime = self.timeout
        return self._resolver

    async def resolve(self, host: str) -> str:
        """Resolve *host* to its A records and pick one at random."""
        try:
            answer = await self.resolver.resolve(host, dns.rdatatype.A)
        except dns.exception.DNSException as exc:
            raise TransportError(f"http: dns: {host}: {exc}") from exc

        addrs = [str(rr) for rr in answer]
        if not addrs:
            raise TransportError(f"http: dns: {host}: no addresses")
        return random.choice(addrs)

    async def do(self, req: Request, check: Optional[PhaseHook] = None) -> Response:
        """Send *req* and read the response status line and headers.

        The caller owns the returned response and must close it.
        """
        start = time.perf_counter_ns()
        check = check or _no_check
        loop = asyncio.get_running_loop()

        u = urlsplit(req.url)
        host = u.hostname or ""
        try:
            port = u.port
        except ValueError as exc:
            raise ValueError(f"http: url {req.url}: {exc}") from exc
        if port is None:
            if u.scheme not in DEFAULT_PORTS:
                raise ValueError(f"http: don't know how to handle scheme {u.scheme!r}")
            port = DEFAULT_PORTS[u.scheme]

        target = u.path or "/"
        if u.query:
            target = f"{target}?{u.query}"
        authority = host if port == DEFAULT_PORTS.get(u.scheme) else f"{host}:{port}"

        dns_ns = tls_ns = 0

        ip = _literal_ip(host)
        if ip is None:
            check(PingState.RESOLVING)
            st = time.perf_counter_ns()
            ip = await self.resolve(host)
            dns_ns = time.perf_counter_ns() - st

        check(PingState.CONNECTING)
        st = time.perf_counter_ns()
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(ip, port),
                timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportError(f"http: dial {host} ({ip}:{port}): {exc!r}") from exc
        tcp_ns = time.perf_counter_ns() - st

        try:
            if u.scheme == "https":
                check(PingState.TLS_HANDSHAKE)
                st = time.perf_counter_ns()
                await self._handshake(writer, host)
                tls_ns = time.perf_counter_ns() - st

            check(PingState.SENDING)
            st = time.perf_counter_ns()
            try:
                writer.write(req.encode(authority, target))
                await asyncio.wait_for(writer.drain(), timeout=self.timeout)
            except (OSError, asyncio.TimeoutError) as exc:
                raise TransportError(f"http: write {host}: {exc!r}") from exc

            check(PingState.AWAITING_RESPONSE)
            conn = ConnectionCloser(reader, writer)
            conn.set_deadline(loop.time() + self.timeout)
            resp = await Response.read(conn)
            http_ns = time.perf_counter_ns() - st
        except BaseException:
            writer.close()
            raise

        logger.debug("%s %s -> %s %d", req.method, req.url, resp.proto, resp.status_code)

        resp.dns = dns_ns
        resp.tcp = tcp_ns
        resp.tls = tls_ns
        resp.http = http_ns
        resp.e2e = time.perf_counter_ns() - start
        return resp

    async def _handshake(self, writer: asyncio.StreamWriter, host: str) -> None:
        """Upgrade the connection to TLS in place, verifying *host*."""
        if self._ssl is None:
            self._ssl = _build_ssl_context()
        try:
            await asyncio.wait_for(
                writer.start_tls(self._ssl, server_hostname=host),
                timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportError(f"http: tls {host}: {exc!r}") from exc
