"""Shared fixtures for latmon tests."""

import asyncio
import contextlib

import pytest

from latmon.nhttp import ConnectionCloser

OK = b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\n\r\n"


class FakeWriter:
    """Stands in for an asyncio.StreamWriter; records writes and close()."""

    def __init__(self):
        self.closed = False
        self.data = bytearray()

    def write(self, data):
        self.data += data

    def close(self):
        self.closed = True


@pytest.fixture
def make_conn():
    """Factory: wrap *data* in a ConnectionCloser (call from inside a running loop)."""

    def _make(data: bytes, eof: bool = True):
        reader = asyncio.StreamReader()
        reader.feed_data(data)
        if eof:
            reader.feed_eof()
        writer = FakeWriter()
        return ConnectionCloser(reader, writer), reader, writer

    return _make


@contextlib.asynccontextmanager
async def _serve(response=OK):
    """Accept connections on 127.0.0.1, record each request head, reply with *response*.

    With ``response=None`` the server reads the request and then says nothing
    until the client hangs up.
    """
    received = []

    async def handler(reader, writer):
        try:
            received.append(await reader.readuntil(b"\r\n\r\n"))
            if response is None:
                await reader.read()
            else:
                writer.write(response)
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield port, received
    finally:
        server.close()
        await server.wait_closed()


@pytest.fixture
def serve():
    """``async with serve(response) as (port, received)``: a throwaway HTTP server."""
    return _serve
