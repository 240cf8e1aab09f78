"""A SOCKS5 server supporting the CONNECT and UDP ASSOCIATE commands."""

from __future__ import annotations

import asyncio
import inspect
import ipaddress
import logging
from typing import Any, Callable, Optional, Tuple

from warpplus.proxy.socks5_codec import (
    MAX_UDP_PACKET,
    NO_ACCEPTABLE,
    NO_AUTH,
    SOCKS5_VERSION,
    Address,
    Command,
    Reply,
    UnrecognizedAddrTypeError,
    encode_addr_str,
    encode_reply,
    err_to_reply,
    parse_addr,
    read_addr,
    split_host_port,
)
from warpplus.proxy.statute import (
    DEFAULT_BIND_ADDRESS,
    ProxyRequest,
    default_proxy_dial,
    default_proxy_listen_packet,
    tunnel,
)


def _join_host_port(host: str, port: Any) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _to_ip(host: str):
    ip = ipaddress.ip_address(host.split("%", 1)[0])
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _host_port_key(host: str, port: int) -> str:
    try:
        host = str(_to_ip(host))
    except ValueError:
        pass
    return _join_host_port(host, port)


def _sockaddr_key(addr) -> str:
    return _host_port_key(str(addr[0]), int(addr[1]))


def _address_host(addr: Address) -> str:
    return str(addr.ip) if addr.ip is not None else addr.name


def _describe_command(value: int) -> str:
    try:
        return str(Command(value))
    except ValueError:
        return f"socks {value}"


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


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


def default_packet_forward_address(destination: str, transport, writer) -> Tuple[Any, int]:
    """Tell the client to send datagrams to the TCP local IP and the UDP local port."""
    udp_local = transport.local_addr
    if not isinstance(udp_local, tuple) or len(udp_local) < 2:
        raise ValueError(f"connect to {destination} failed: local address is {udp_local!r}")
    tcp_local = writer.get_extra_info("sockname")
    if not isinstance(tcp_local, tuple) or len(tcp_local) < 2:
        raise ValueError(f"connect to {destination} failed: local address is {tcp_local!r}")
    return _to_ip(str(tcp_local[0])), int(udp_local[1])


class _UDPAssociation:
    """A UDP association exposed to a user handler as a reader and a writer."""

    def __init__(self, packet, tcp_writer) -> None:
        self._packet = packet
        self._tcp_writer = tcp_writer
        self._queue: asyncio.Queue = asyncio.Queue()
        self._first = asyncio.Event()
        self._task: Optional[asyncio.Future] = None
        self._prefix: Optional[bytes] = None
        self.source = None
        self.target: Optional[Address] = None
        self.target_key = ""

    def start(self) -> None:
        self._task = asyncio.ensure_future(self._pump())

    async def _pump(self) -> None:
        while True:
            try:
                data, addr = await self._packet.recv_from()
            except Exception as exc:
                await self._queue.put(exc)
                return
            if len(data) < 3:
                await self._queue.put(b"")
                return
            if self.source is None:
                self.source = addr
            try:
                parsed, payload = parse_addr(data[3:])
            except (UnrecognizedAddrTypeError, EOFError, ValueError) as exc:
                await self._queue.put(exc)
                return
            key = _host_port_key(_address_host(parsed), parsed.port)
            if self.target is None:
                self.target = parsed
                self.target_key = key
            if key != self.target_key:
                await self._queue.put(ValueError(f"ignore non-target addresses {key}"))
                return
            self._first.set()
            await self._queue.put(payload)

    async def wait_first_packet(self) -> None:
        waiter = asyncio.ensure_future(self._first.wait())
        await asyncio.wait({waiter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        if self._first.is_set():
            return
        waiter.cancel()
        item = self._queue.get_nowait()
        if isinstance(item, BaseException):
            raise item
        raise EOFError("association closed before the first packet")

    async def read(self, n: int = -1) -> bytes:
        item = await self._queue.get()
        if isinstance(item, BaseException) or not item:
            self._queue.put_nowait(item)
            if isinstance(item, BaseException):
                raise item
            return b""
        return item if n < 0 else item[:n]

    def write(self, data: bytes) -> None:
        if self._prefix is None:
            self._prefix = bytes(3) + encode_addr_str(self.target_key)
        self._packet.send_to(self._prefix + bytes(data), self.source)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self._tcp_writer.is_closing()

    def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
        self._packet.close()
        self._tcp_writer.close()

    async def wait_closed(self) -> None:
        try:
            await self._tcp_writer.wait_closed()
        except OSError:
            pass

    def get_extra_info(self, name: str, default=None):
        if name == "peername" and self.target is not None:
            return (_address_host(self.target), self.target.port)
        if name == "sockname":
            return self._packet.local_addr
        return default


class Server:
    """A SOCKS5 server that relays traffic itself or hands it to handlers."""

    def __init__(
        self,
        bind: str = DEFAULT_BIND_ADDRESS,
        proxy_dial: Optional[Callable[..., Any]] = None,
        proxy_listen_packet: Optional[Callable[..., Any]] = None,
        packet_forward_address: Optional[Callable[..., Any]] = None,
        connect_handler: Optional[Callable[[ProxyRequest], Any]] = None,
        associate_handler: Optional[Callable[[ProxyRequest], Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.bind = bind
        self.proxy_dial = proxy_dial or default_proxy_dial
        self.proxy_listen_packet = proxy_listen_packet or default_proxy_listen_packet
        self.packet_forward_address = packet_forward_address or default_packet_forward_address
        self.connect_handler = connect_handler
        self.associate_handler = associate_handler
        self.logger = logger or logging.getLogger(__name__)

    async def listen_and_serve(self) -> None:
        """Listen on ``bind`` and serve clients until cancelled."""
        if self.bind:
            host, port = split_host_port(self.bind)
        else:
            host, port = "", 0
        server = await asyncio.start_server(self._serve_client, host or None, port)
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
        """Handle one SOCKS5 client connection."""
        version = (await reader.readexactly(1))[0]
        if version != SOCKS5_VERSION:
            raise ValueError(f"unsupported SOCKS version: {version}")

        count = (await reader.readexactly(1))[0]
        methods = await reader.readexactly(count)
        if NO_AUTH in methods:
            writer.write(bytes([SOCKS5_VERSION, NO_AUTH]))
            await writer.drain()
        else:
            writer.write(bytes([SOCKS5_VERSION, NO_ACCEPTABLE]))
            await writer.drain()
            raise ValueError("no supported authentication mechanism")

        header = await reader.readexactly(3)
        if header[0] != SOCKS5_VERSION:
            raise ValueError(f"unsupported Command version: {header[0]}")
        command = header[1]

        try:
            destination = await read_addr(reader)
        except UnrecognizedAddrTypeError:
            await _send_reply(writer, Reply.ADDR_TYPE_NOT_SUPPORTED, None)
            raise

        if command == Command.CONNECT:
            await self._handle_connect(reader, writer, destination)
        elif command == Command.ASSOCIATE:
            await self._handle_associate(reader, writer, destination)
        else:
            await _send_reply(writer, Reply.COMMAND_NOT_SUPPORTED, None)
            raise ValueError(f"unsupported Command: {_describe_command(command)}")

    async def _handle_connect(self, reader, writer, destination: Address) -> None:
        if self.connect_handler is None:
            await self._embedded_connect(reader, writer, destination)
            return

        await _send_reply(writer, Reply.SUCCESS, None)
        request = ProxyRequest(
            reader=reader,
            writer=writer,
            network="tcp",
            destination=str(destination),
            dest_host=destination.name or str(destination.ip),
            dest_port=destination.port,
        )
        await _maybe_await(self.connect_handler(request))

    async def _embedded_connect(self, reader, writer, destination: Address) -> None:
        try:
            try:
                target_reader, target_writer = await self.proxy_dial("tcp", destination.address())
            except OSError as exc:
                await _send_reply(writer, err_to_reply(exc), None)
                raise ConnectionError(f"connect to {destination} failed: {exc}") from exc

            try:
                sockname = target_writer.get_extra_info("sockname")
                if not isinstance(sockname, tuple) or len(sockname) < 2:
                    raise ConnectionError(
                        f"connect to {destination} failed: local address is {sockname!r}"
                    )
                bind = Address(ip=_to_ip(str(sockname[0])), port=int(sockname[1]))
                await _send_reply(writer, Reply.SUCCESS, bind)
            except BaseException:
                await _close(target_writer)
                raise
            await tunnel(target_reader, target_writer, reader, writer)
        finally:
            await _close(writer)

    async def _handle_associate(self, reader, writer, destination: Address) -> None:
        destination_addr = str(destination)
        try:
            packet = await self.proxy_listen_packet("udp", destination_addr)
        except OSError as exc:
            await _send_reply(writer, err_to_reply(exc), None)
            raise ConnectionError(f"connect to {destination} failed: {exc}") from exc

        try:
            ip, port = await _maybe_await(
                self.packet_forward_address(destination_addr, packet, writer)
            )
            await _send_reply(writer, Reply.SUCCESS, Address(ip=ip, port=port))
        except BaseException:
            packet.close()
            raise

        if self.associate_handler is None:
            await self._embedded_associate(reader, packet)
            return

        association = _UDPAssociation(packet, writer)
        association.start()
        try:
            await association.wait_first_packet()
        except BaseException:
            association.close()
            raise

        target = association.target
        request = ProxyRequest(
            reader=association,
            writer=association,
            network="udp",
            destination=association.target_key,
            dest_host=_address_host(target),
            dest_port=target.port,
        )
        await _maybe_await(self.associate_handler(request))

    async def _embedded_associate(self, reader, packet) -> None:
        async def watch_control_connection() -> None:
            try:
                while await reader.read(1):
                    pass
            except Exception:
                pass
            finally:
                packet.close()

        watcher = asyncio.ensure_future(watch_control_connection())
        source = None
        want_source = ""
        target = None
        want_target = ""
        reply_prefix: Optional[bytes] = None
        try:
            while True:
                data, addr = await packet.recv_from()
                got = _sockaddr_key(addr)
                if source is None:
                    source = addr
                    want_source = got

                if got == want_source:
                    if len(data) < 3:
                        continue
                    try:
                        parsed, payload = parse_addr(data[3:])
                    except (UnrecognizedAddrTypeError, EOFError, ValueError) as exc:
                        self.logger.debug(str(exc))
                        continue
                    key = _host_port_key(_address_host(parsed), parsed.port)
                    if target is None:
                        target = (_address_host(parsed), parsed.port)
                        want_target = key
                    if key != want_target:
                        self.logger.debug("ignore non-target addresses %s", key)
                        continue
                    packet.send_to(payload, target)
                elif target is not None and got == want_target:
                    if reply_prefix is None:
                        reply_prefix = bytes(3) + encode_addr_str(want_target)
                    packet.send_to(reply_prefix + data[:MAX_UDP_PACKET], source)
        finally:
            watcher.cancel()
            packet.close()