"""Address helpers: random addresses in a prefix and host:port resolution."""

from __future__ import annotations

import ipaddress
import random
import re
from typing import Tuple, Union

import dns.exception
import dns.resolver

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_PORT_RE = re.compile(r"[+-]?[0-9]+")


def _unmap(addr: IPAddress) -> IPAddress:
    if addr.version == 6 and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def random_ip_from_prefix(cidr: Union[str, IPNetwork]) -> IPAddress:
    """Return a random address inside ``cidr``; IPv4-mapped prefixes are refused."""
    network = cidr if isinstance(cidr, (ipaddress.IPv4Network, ipaddress.IPv6Network)) else (
        ipaddress.ip_network(cidr, strict=False)
    )
    start = network.network_address
    if start.version == 6 and start.ipv4_mapped is not None:
        raise ValueError("mapped v4 addresses not supported")

    host_len = start.max_prefixlen - network.prefixlen
    offset = random.getrandbits(host_len)
    return _unmap(type(start)(int(start) + offset))


def _split_host_port(hostport: str) -> Tuple[str, str]:
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport}: missing ']' in address")
        rest = hostport[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"address {hostport}: missing port in address")
        return hostport[1:end], rest[1:]
    host, sep, port = hostport.rpartition(":")
    if not sep:
        raise ValueError(f"address {hostport}: missing port in address")
    if ":" in host:
        raise ValueError(f"address {hostport}: too many colons in address")
    return host, port


def parse_resolve_address_port(
    hostname: str, include_v6: bool, dns_server: str
) -> Tuple[IPAddress, int]:
    """Parse ``host:port`` into ``(address, port)``, resolving names through ``dns_server``.

    A resolved IPv4 address is always accepted; an IPv6 one only when
    ``include_v6`` is true.
    """
    try:
        host, port_text = _split_host_port(hostname)
    except ValueError as exc:
        raise ValueError(f"can't parse provided hostname into host and port: {exc}") from exc

    if not _PORT_RE.fullmatch(port_text):
        raise ValueError(f"error parsing port: invalid syntax {port_text!r}")
    port = int(port_text)
    if port < 1 or port > 65535:
        raise ValueError(f"port number {port} is out of range")

    try:
        return _unmap(ipaddress.ip_address(host)), port
    except ValueError:
        pass

    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = [dns_server]
    resolver.port = 53

    found = []
    failures = []
    for rdtype in ("A", "AAAA"):
        try:
            answer = resolver.resolve(host, rdtype)
        except dns.resolver.NoAnswer:
            continue
        except dns.exception.DNSException as exc:
            failures.append(exc)
            continue
        found.extend(rdata.address for rdata in answer)

    if not found and len(failures) == 2:
        raise LookupError(f"hostname lookup failed: {failures[0]}")

    for text in found:
        try:
            addr = _unmap(ipaddress.ip_address(text))
        except ValueError:
            continue
        if addr.version == 4 or include_v6:
            return addr, port

    raise LookupError("no valid IP addresses found")