"""Types and helpers shared by the SOCKS and HTTP proxy servers."""

from __future__ import annotations

import asyncio
import socket
from dataclasses import dataclass
from typing import Any, Optional, Tuple

DEFAULT_BIND_ADDRESS = "127.0.0.1:1080"

_COPY_BUFFER_SIZE = 32 * 1024
_CLOSED_CONN_MESSAGE = "use of closed network connection"
_WSAECONNABORTED = 10053
_WSAECONNRESET = 10054

_TCP_FAMILIES = {"tcp": 0, "tcp4": socket.AF_INET, "tcp6": socket.AF_INET6}
_UDP_FAMILIES = {"udp": socket.AF_INET, "udp4": socket.AF_INET, "udp6": socket.AF_INET6}


@dataclass
class ProxyRequest:
    """A proxied connection handed over to a user handler."""

    reader: Any
    writer: Any
    network: str
    destination: str
    dest_host: str
    dest_port: int


def _split_host_port(address: str) -> Tuple[str, int]:
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"address {address}: missing ']' in address")
        host, rest = address[1:end], address[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"address {address}: missing port in address")
        port = rest[1:]
    else:
        host, sep, port = address.rpartition(":")
        if not sep:
            raise ValueError(f"address {address}: missing port in address")
        if ":" in host:
            raise ValueError(f"address {address}: too many colons in address")
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"address {address}: invalid port") from None


async def default_proxy_dial(network: str, address: str):
    """Open a TCP connection to ``address`` and return ``(reader, writer)``."""
    if network not in _TCP_FAMILIES:
        raise ValueError(f"unsupported network: {network}")
    host, port = _split_host_port(address)
    return await asyncio.open_connection(host or None, port, family=_TCP_FAMILIES[network])


class _DatagramProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr: Any) -> None:
        self.queue.put_nowait((data, addr))

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.queue.put_nowait(exc or ConnectionError(_CLOSED_CONN_MESSAGE))


class _PacketConn:
    """A bound UDP socket with awaitable reads."""

    def __init__(self, transport: asyncio.DatagramTransport, protocol: _DatagramProtocol):
        self._transport = transport
        self._protocol = protocol

    @property
    def local_addr(self):
        return self._transport.get_extra_info("sockname")

    async def recv_from(self):
        item = await self._protocol.queue.get()
        if isinstance(item, BaseException):
            self._protocol.queue.put_nowait(item)
            raise item
        return item

    def send_to(self, data: bytes, addr) -> None:
        if self._transport.is_closing():
            raise ConnectionError(_CLOSED_CONN_MESSAGE)
        self._transport.sendto(data, addr)

    def close(self) -> None:
        self._transport.close()


async def default_proxy_listen_packet(network: str, address: str) -> _PacketConn:
    """Bind a UDP socket on ``address`` and return a packet connection."""
    if network not in _UDP_FAMILIES:
        raise ValueError(f"unsupported network: {network}")
    family = _UDP_FAMILIES[network]
    host, port = _split_host_port(address)
    if not host:
        host = "::" if family == socket.AF_INET6 else "0.0.0.0"
    if ":" in host:
        family = socket.AF_INET6
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        _DatagramProtocol, local_addr=(host, port), family=family
    )
    return _PacketConn(transport, protocol)


def is_closed_conn_error(err: Optional[BaseException]) -> bool:
    """Report whether ``err`` comes from using an already closed connection."""
    if err is None:
        return False
    if _CLOSED_CONN_MESSAGE in str(err):
        return True
    return getattr(err, "winerror", None) in (_WSAECONNRESET, _WSAECONNABORTED)


async def _copy(reader, writer) -> None:
    while True:
        data = await reader.read(_COPY_BUFFER_SIZE)
        if not data:
            return
        writer.write(data)
        await writer.drain()


async def _close(writer) -> None:
    writer.close()
    await writer.wait_closed()


async def tunnel(reader1, writer1, reader2, writer2) -> None:
    """Relay bytes both ways between two streams until either side finishes.

    Both writers are closed afterwards. The first error met is raised,
    unless it only says that a connection was already closed.
    """
    copies = [
        asyncio.ensure_future(_copy(reader2, writer1)),
        asyncio.ensure_future(_copy(reader1, writer2)),
    ]
    errors = []
    try:
        await asyncio.wait(copies, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in copies:
            task.cancel()
        results = await asyncio.gather(*copies, return_exceptions=True)
        errors = [r for r in results if isinstance(r, Exception)]
        for writer in (writer1, writer2):
            try:
                await _close(writer)
            except Exception as exc:
                errors.append(exc)
    if errors:
        first = errors[0]
        if is_closed_conn_error(first):
            return
        raise first