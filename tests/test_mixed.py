import asyncio
import contextlib

import pytest

from warpplus.proxy.mixed import Proxy

TIMEOUT = 5


@contextlib.asynccontextmanager
async def running(proxy):
    results: asyncio.Queue = asyncio.Queue()

    async def handle(reader, writer):
        try:
            await proxy.handle_connection(reader, writer)
        except Exception as exc:
            results.put_nowait(exc)
        else:
            results.put_nowait(None)
        finally:
            writer.close()

    srv = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = srv.sockets[0].getsockname()[1]
    try:
        yield port, results
    finally:
        srv.close()


async def close_client(writer):
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()


def recorder():
    seen = []

    async def handler(request):
        seen.append(request)

    return seen, handler


@pytest.mark.asyncio
async def test_socks5_connection_dispatched():
    seen, handler = recorder()
    proxy = Proxy(user_handler=handler)
    async with running(proxy) as (port, results):
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"\x05\x01\x00")
        writer.write(b"\x05\x01\x00\x01\x0a\x00\x00\x01\x00\x50")
        await writer.drain()
        greeting = await asyncio.wait_for(reader.readexactly(2), TIMEOUT)
        reply = await asyncio.wait_for(reader.readexactly(10), TIMEOUT)
        err = await asyncio.wait_for(results.get(), TIMEOUT)
        await close_client(writer)
    assert err is None
    assert greeting == b"\x05\x00"
    assert reply == b"\x05\x00\x00\x01" + bytes(6)
    assert seen[0].destination == "10.0.0.1:80"
    assert seen[0].network == "tcp"


@pytest.mark.asyncio
async def test_socks4_connection_dispatched():
    seen, handler = recorder()
    proxy = Proxy(user_tcp_handler=handler)
    async with running(proxy) as (port, results):
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"\x04\x01\x00\x50\x0a\x00\x00\x01user\x00")
        await writer.drain()
        reply = await asyncio.wait_for(reader.readexactly(8), TIMEOUT)
        err = await asyncio.wait_for(results.get(), TIMEOUT)
        await close_client(writer)
    assert err is None
    assert reply == b"\x00\x5a" + bytes(6)
    assert seen[0].dest_host == "10.0.0.1"
    assert seen[0].dest_port == 80


@pytest.mark.asyncio
async def test_http_connect_dispatched():
    seen, handler = recorder()
    proxy = Proxy(user_handler=handler)
    async with running(proxy) as (port, results):
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"CONNECT example.com:443 HTTP/1.1\r\nHost: example.com:443\r\n\r\n")
        await writer.drain()
        answer = await asyncio.wait_for(reader.readexactly(39), TIMEOUT)
        err = await asyncio.wait_for(results.get(), TIMEOUT)
        await close_client(writer)
    assert err is None
    assert answer == b"HTTP/1.1 200 Connection Established\r\n\r\n"
    assert seen[0].dest_host == "example.com"
    assert seen[0].dest_port == 443
    assert seen[0].destination == "example.com:443"


@pytest.mark.asyncio
async def test_empty_connection_raises():
    proxy = Proxy()
    async with running(proxy) as (port, results):
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        await close_client(writer)
        err = await asyncio.wait_for(results.get(), TIMEOUT)
    assert isinstance(err, asyncio.IncompleteReadError)
    assert err.partial == b""


@pytest.mark.asyncio
async def test_dial_override_reaches_socks5():
    calls = []

    async def refusing_dial(network, address):
        calls.append(address)
        raise ConnectionRefusedError("connection refused")

    proxy = Proxy(dial=refusing_dial)
    async with running(proxy) as (port, results):
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"\x05\x01\x00\x05\x01\x00\x01\x7f\x00\x00\x01\x00\x50")
        await writer.drain()
        data = await asyncio.wait_for(reader.readexactly(12), TIMEOUT)
        err = await asyncio.wait_for(results.get(), TIMEOUT)
        await close_client(writer)
    assert data[2:4] == b"\x05\x05"
    assert calls == ["127.0.0.1:80"]
    assert isinstance(err, ConnectionError)


def test_specific_handlers_override_general_one():
    _, general = recorder()
    _, tcp_only = recorder()
    _, udp_only = recorder()
    proxy = Proxy(user_handler=general, user_tcp_handler=tcp_only, user_udp_handler=udp_only)
    assert proxy.socks5.connect_handler is tcp_only
    assert proxy.socks4.connect_handler is tcp_only
    assert proxy.http.connect_handler is tcp_only
    assert proxy.socks5.associate_handler is udp_only


@pytest.mark.asyncio
async def test_listen_and_serve_accepts_clients():
    seen, handler = recorder()
    proxy = Proxy(bind="127.0.0.1:0", user_handler=handler)
    task = asyncio.ensure_future(proxy.listen_and_serve())
    try:
        for _ in range(200):
            if proxy.bind != "127.0.0.1:0":
                break
            await asyncio.sleep(0.01)
        port = int(proxy.bind.rsplit(":", 1)[1])
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"\x04\x01\x00\x50\x0a\x00\x00\x01\x00")
        await writer.drain()
        reply = await asyncio.wait_for(reader.readexactly(8), TIMEOUT)
        await close_client(writer)
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    assert port > 0
    assert reply[:2] == b"\x00\x5a"
    assert seen[0].destination == "10.0.0.1:80"