"""A proxy that serves SOCKS5, SOCKS4 and HTTP on a single port."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from warpplus.proxy import httpproxy, socks4, socks5
from warpplus.proxy.socks5_codec import split_host_port
from warpplus.proxy.statute import DEFAULT_BIND_ADDRESS, ProxyRequest

Handler = Callable[[ProxyRequest], Any]


def _join_host_port(host: str, port: Any) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class _PeekedReader:
    """A stream reader that replays bytes already taken from the wrapped reader."""

    def __init__(self, head: bytes, reader) -> None:
        self._head = bytearray(head)
        self._reader = reader

    def _take(self, count: int) -> bytes:
        data = bytes(self._head[:count])
        del self._head[:count]
        return data

    async def read(self, n: int = -1) -> bytes:
        if not self._head:
            return await self._reader.read(n)
        if n < 0:
            return self._take(len(self._head)) + await self._reader.read()
        return self._take(n)

    async def readexactly(self, n: int) -> bytes:
        data = self._take(n)
        if len(data) < n:
            data += await self._reader.readexactly(n - len(data))
        return data

    async def readline(self) -> bytes:
        end = self._head.find(b"\n")
        if end >= 0:
            return self._take(end + 1)
        return self._take(len(self._head)) + await self._reader.readline()

    def at_eof(self) -> bool:
        return not self._head and self._reader.at_eof()


async def _close(writer) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


class Proxy:
    """Detects the protocol from the first byte and serves it accordingly.

    ``user_handler`` takes both TCP and UDP requests; ``user_tcp_handler``
    and ``user_udp_handler`` override it for their kind of traffic.
    """

    def __init__(
        self,
        bind: str = DEFAULT_BIND_ADDRESS,
        user_handler: Optional[Handler] = None,
        user_tcp_handler: Optional[Handler] = None,
        user_udp_handler: Optional[Handler] = None,
        dial: Optional[Callable[..., Any]] = None,
        listen_packet: Optional[Callable[..., Any]] = None,
        forward_address: Optional[Callable[..., Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.bind = bind
        self.logger = logger or logging.getLogger(__name__)
        self.user_handler = user_handler
        self.user_tcp_handler = user_tcp_handler
        self.user_udp_handler = user_udp_handler

        self.socks5 = socks5.Server(
            bind=bind,
            proxy_dial=dial,
            proxy_listen_packet=listen_packet,
            packet_forward_address=forward_address,
            logger=self.logger,
        )
        self.socks4 = socks4.Server(bind=bind, proxy_dial=dial, logger=self.logger)
        self.http = httpproxy.Server(bind=bind, proxy_dial=dial, logger=self.logger)

        tcp_handler = user_tcp_handler or user_handler
        udp_handler = user_udp_handler or user_handler
        if tcp_handler is not None:
            self.socks5.connect_handler = tcp_handler
            self.socks4.connect_handler = tcp_handler
            self.http.connect_handler = tcp_handler
        if udp_handler is not None:
            self.socks5.associate_handler = udp_handler

    async def listen_and_serve(self) -> None:
        """Listen on ``bind`` and serve clients until cancelled."""
        host, port = split_host_port(self.bind)
        server = await asyncio.start_server(self._serve_client, host or None, port)
        sockname = server.sockets[0].getsockname()
        self.bind = _join_host_port(sockname[0], sockname[1])
        async with server:
            await server.serve_forever()

    async def _serve_client(self, reader, writer) -> None:
        try:
            await self.handle_connection(reader, writer)
        except Exception as exc:
            self.logger.error(str(exc))
        finally:
            await _close(writer)

    async def handle_connection(self, reader, writer) -> None:
        """Peek at the first byte and pass the connection to the matching server."""
        first = await reader.readexactly(1)
        peeked = _PeekedReader(first, reader)
        if first[0] == 5:
            await self.socks5.serve_conn(peeked, writer)
        elif first[0] == 4:
            await self.socks4.serve_conn(peeked, writer)
        else:
            await self.http.serve_conn(peeked, writer)