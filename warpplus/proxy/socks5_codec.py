"""SOCKS5 wire format: commands, reply codes and address encoding."""

from __future__ import annotations

import enum
import errno
import ipaddress
import re
from dataclasses import dataclass
from typing import Optional, Tuple, Union

SOCKS5_VERSION = 0x05
MAX_UDP_PACKET = 2048

NO_AUTH = 0x00
NO_ACCEPTABLE = 0xFF

IPV4_ADDRESS = 0x01
FQDN_ADDRESS = 0x03
IPV6_ADDRESS = 0x04

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_PORT_RE = re.compile(r"[+-]?[0-9]+")


class UnrecognizedAddrTypeError(ValueError):
    """The address type byte names no known SOCKS5 address type."""

    def __init__(self, message: str = "unrecognized address type") -> None:
        super().__init__(message)


class Command(enum.IntEnum):
    """A SOCKS5 command."""

    CONNECT = 0x01
    ASSOCIATE = 0x03

    def __str__(self) -> str:
        return "socks connect" if self is Command.CONNECT else "socks associate"


class Reply(enum.IntEnum):
    """A SOCKS5 reply code."""

    SUCCESS = 0x00
    SERVER_FAILURE = 0x01
    RULE_FAILURE = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDR_TYPE_NOT_SUPPORTED = 0x08

    def __str__(self) -> str:
        return _REPLY_TEXT[self]


_REPLY_TEXT = {
    Reply.SUCCESS: "succeeded",
    Reply.SERVER_FAILURE: "general SOCKS server failure",
    Reply.RULE_FAILURE: "connection not allowed by ruleset",
    Reply.NETWORK_UNREACHABLE: "network unreachable",
    Reply.HOST_UNREACHABLE: "host unreachable",
    Reply.CONNECTION_REFUSED: "connection refused",
    Reply.TTL_EXPIRED: "TTL expired",
    Reply.COMMAND_NOT_SUPPORTED: "Command not supported",
    Reply.ADDR_TYPE_NOT_SUPPORTED: "address type not supported",
}


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass
class Address:
    """A SOCKS5 address: an IP address or a domain name, with a port."""

    name: str = ""
    ip: Optional[IPAddress] = None
    port: int = 0

    def address(self) -> str:
        """Return ``host:port`` suitable for dialing, preferring the IP."""
        host = str(self.ip) if self.ip is not None else self.name
        return _join_host_port(host, self.port)

    def __str__(self) -> str:
        return self.address()


def err_to_reply(err: Optional[BaseException]) -> Reply:
    """Map a dial error to the SOCKS5 reply code sent to the client."""
    if err is None:
        return Reply.SUCCESS
    message = str(err)
    if "refused" in message or isinstance(err, ConnectionRefusedError):
        return Reply.CONNECTION_REFUSED
    if "network is unreachable" in message or getattr(err, "errno", None) == errno.ENETUNREACH:
        return Reply.NETWORK_UNREACHABLE
    return Reply.HOST_UNREACHABLE


def _decode_name(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


def _encode_name(name: str) -> bytes:
    return name.encode("utf-8", "surrogateescape")


async def read_addr(reader) -> Address:
    """Read an address type, address and port from a stream reader."""
    addr_type = (await reader.readexactly(1))[0]
    if addr_type == IPV4_ADDRESS:
        address = Address(ip=ipaddress.IPv4Address(await reader.readexactly(4)))
    elif addr_type == IPV6_ADDRESS:
        address = Address(ip=ipaddress.IPv6Address(await reader.readexactly(16)))
    elif addr_type == FQDN_ADDRESS:
        length = (await reader.readexactly(1))[0]
        address = Address(name=_decode_name(await reader.readexactly(length)))
    else:
        raise UnrecognizedAddrTypeError()
    address.port = int.from_bytes(await reader.readexactly(2), "big")
    return address


def parse_addr(data: bytes) -> Tuple[Address, bytes]:
    """Parse an address from the front of ``data``; return it and the rest."""
    view = memoryview(bytes(data))
    pos = 0

    def take(count: int) -> bytes:
        nonlocal pos
        if pos + count > len(view):
            raise EOFError("unexpected EOF")
        chunk = view[pos:pos + count].tobytes()
        pos += count
        return chunk

    addr_type = take(1)[0]
    if addr_type == IPV4_ADDRESS:
        address = Address(ip=ipaddress.IPv4Address(take(4)))
    elif addr_type == IPV6_ADDRESS:
        address = Address(ip=ipaddress.IPv6Address(take(16)))
    elif addr_type == FQDN_ADDRESS:
        length = take(1)[0]
        address = Address(name=_decode_name(take(length)))
    else:
        raise UnrecognizedAddrTypeError()
    address.port = int.from_bytes(take(2), "big")
    return address, view[pos:].tobytes()


def encode_addr(addr: Optional[Address]) -> bytes:
    """Encode an address with its type byte and port; zeros when absent."""
    if addr is None:
        return bytes([IPV4_ADDRESS, 0, 0, 0, 0, 0, 0])
    if addr.ip is not None:
        ip = addr.ip
        if ip.version == 6 and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        kind = IPV4_ADDRESS if ip.version == 4 else IPV6_ADDRESS
        head = bytes([kind]) + ip.packed
    elif addr.name:
        raw = _encode_name(addr.name)
        if len(raw) > 255:
            raise ValueError("string too long")
        head = bytes([FQDN_ADDRESS, len(raw)]) + raw
    else:
        head = bytes([IPV4_ADDRESS, 0, 0, 0, 0])
    return head + (addr.port & 0xFFFF).to_bytes(2, "big")


def split_host_port(address: str) -> Tuple[str, int]:
    """Split ``host:port`` into the host and a port number in 0..65535."""
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"address {address}: missing ']' in address")
        rest = address[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"address {address}: missing port in address")
        host, port_text = address[1:end], rest[1:]
    else:
        host, sep, port_text = address.rpartition(":")
        if not sep:
            raise ValueError(f"address {address}: missing port in address")
        if ":" in host:
            raise ValueError(f"address {address}: too many colons in address")
    if not _PORT_RE.fullmatch(port_text):
        raise ValueError(f"invalid port {port_text!r}")
    port = int(port_text)
    if port < 0 or port > 0xFFFF:
        raise ValueError("port number out of range " + port_text)
    return host, port


def encode_addr_str(addr: str) -> bytes:
    """Encode a ``host:port`` string, as an IP address when it is one."""
    host, port = split_host_port(addr)
    try:
        return encode_addr(Address(ip=ipaddress.ip_address(host), port=port))
    except ValueError:
        return encode_addr(Address(name=host, port=port))


def encode_reply(reply: Reply, addr: Optional[Address]) -> bytes:
    """Encode a full SOCKS5 reply."""
    return bytes([SOCKS5_VERSION, int(reply), 0]) + encode_addr(addr)