"""A SOCKS4/4a server supporting the CONNECT command."""

from __future__ import annotations

import asyncio
import enum
import inspect
import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Union

from warpplus.proxy.statute import ProxyRequest, default_proxy_dial, tunnel

SOCKS4_VERSION = 0x04

_SOCKS4A_MARKER = bytes([0, 0, 0, 1])
_NO_ADDRESS = bytes(4)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class Command(enum.IntEnum):
    """A SOCKS4 command."""

    CONNECT = 0x01

    def __str__(self) -> str:
        return "socks connect"


def _describe_command(value: int) -> str:
    try:
        return str(Command(value))
    except ValueError:
        return f"socks {value}"


class Reply(enum.IntEnum):
    """A SOCKS4 reply code."""

    GRANTED = 0x5A
    REJECTED = 0x5B
    NO_IDENTD = 0x5C
    INVALID_USER = 0x5D

    def __str__(self) -> str:
        return _REPLY_TEXT[self]


_REPLY_TEXT = {
    Reply.GRANTED: "request granted",
    Reply.REJECTED: "request rejected or failed",
    Reply.NO_IDENTD: "request rejected because SOCKS server cannot connect to identd on the client",
    Reply.INVALID_USER: "request rejected because the client program and identd report different user-ids",
}


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass
class Address:
    """A SOCKS4 destination: a domain name or an IP address, with a port."""

    name: str = ""
    ip: Optional[IPAddress] = None
    port: int = 0

    def address(self) -> str:
        """Return ``host:port`` suitable for dialing, preferring the name."""
        if self.name:
            host = self.name
        else:
            host = str(self.ip) if self.ip is not None else ""
        return _join_host_port(host, self.port)

    def __str__(self) -> str:
        return self.address()


@dataclass
class AddrAndUser(Address):
    """A destination address together with the user id sent by the client."""

    username: str = ""


async def _read_cstring(reader) -> str:
    data = bytearray()
    while True:
        byte = await reader.readexactly(1)
        if byte == b"\x00":
            return data.decode("utf-8", "surrogateescape")
        data += byte


async def read_addr_and_user(reader) -> AddrAndUser:
    """Read port, address, user id and, for SOCKS4a, the host name."""
    port = int.from_bytes(await reader.readexactly(2), "big")
    raw_ip = await reader.readexactly(4)
    username = await _read_cstring(reader)
    if raw_ip == _SOCKS4A_MARKER:
        name = await _read_cstring(reader)
        return AddrAndUser(name=name, port=port, username=username)
    return AddrAndUser(ip=ipaddress.IPv4Address(raw_ip), port=port, username=username)


def encode_addr(addr: Optional[Address]) -> bytes:
    """Encode the port and IPv4 address of a reply; zeros where absent."""
    if addr is None:
        return bytes(2) + _NO_ADDRESS
    ip = addr.ip
    if ip is not None and ip.version == 6:
        ip = ip.ipv4_mapped
    port = (addr.port & 0xFFFF).to_bytes(2, "big")
    return port + (ip.packed if ip is not None else _NO_ADDRESS)


def encode_reply(reply: Reply, addr: Optional[Address]) -> bytes:
    """Encode a full SOCKS4 reply."""
    return bytes([0, int(reply)]) + encode_addr(addr)


async def _send_reply(writer, reply: Reply, addr: Optional[Address]) -> None:
    try:
        writer.write(encode_reply(reply, addr))
        await writer.drain()
    except OSError as exc:
        raise ConnectionError(f"failed to send reply: {exc}") from exc


async def _close(writer) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


def _parse_bind(bind: str) -> Tuple[Optional[str], int]:
    if not bind:
        return None, 0
    if bind.startswith("["):
        host, _, port = bind[1:].partition("]:")
    else:
        host, _, port = bind.rpartition(":")
    return host or None, int(port or 0)


class Server:
    """A SOCKS4 server that dials targets itself or hands them to a handler."""

    def __init__(
        self,
        bind: str = "",
        proxy_dial: Optional[Callable[..., Any]] = None,
        connect_handler: Optional[Callable[[ProxyRequest], Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.bind = bind
        self.proxy_dial = proxy_dial or default_proxy_dial
        self.connect_handler = connect_handler
        self.logger = logger or logging.getLogger(__name__)

    async def listen_and_serve(self) -> None:
        """Listen on ``bind`` and serve clients until cancelled."""
        host, port = _parse_bind(self.bind)
        server = await asyncio.start_server(self._serve_client, host, port)
        sockname = server.sockets[0].getsockname()
        self.bind = _join_host_port(sockname[0], sockname[1])
        async with server:
            await server.serve_forever()

    async def _serve_client(self, reader, writer) -> None:
        try:
            await self.serve_conn(reader, writer)
        except Exception as exc:
            self.logger.error(str(exc))
            await _close(writer)

    async def serve_conn(self, reader, writer) -> None:
        """Handle one SOCKS4 client connection."""
        version = (await reader.readexactly(1))[0]
        if version != SOCKS4_VERSION:
            raise ValueError(f"unsupported SOCKS version: {version}")
        command = (await reader.readexactly(1))[0]

        try:
            destination = await read_addr_and_user(reader)
        except (EOFError, OSError):
            await _send_reply(writer, Reply.REJECTED, None)
            raise

        if command != Command.CONNECT:
            await _send_reply(writer, Reply.REJECTED, None)
            raise ValueError(f"unsupported Command: {_describe_command(command)}")
        await self._handle_connect(reader, writer, destination)

    async def _handle_connect(self, reader, writer, destination: AddrAndUser) -> None:
        if self.connect_handler is None:
            await self._embedded_connect(reader, writer, destination)
            return

        await _send_reply(writer, Reply.GRANTED, None)
        host = destination.name or str(destination.ip)
        request = ProxyRequest(
            reader=reader,
            writer=writer,
            network="tcp",
            destination=str(destination),
            dest_host=host,
            dest_port=destination.port,
        )
        result = self.connect_handler(request)
        if inspect.isawaitable(result):
            await result

    async def _embedded_connect(self, reader, writer, destination: AddrAndUser) -> None:
        try:
            try:
                target_reader, target_writer = await self.proxy_dial("tcp", destination.address())
            except OSError as exc:
                await _send_reply(writer, Reply.REJECTED, None)
                raise ConnectionError(f"connect to {destination} failed: {exc}") from exc

            try:
                sockname = target_writer.get_extra_info("sockname")
                bind = Address(ip=ipaddress.ip_address(sockname[0]), port=sockname[1])
                await _send_reply(writer, Reply.GRANTED, bind)
            except BaseException:
                await _close(target_writer)
                raise
            await tunnel(target_reader, target_writer, reader, writer)
        finally:
            await _close(writer)