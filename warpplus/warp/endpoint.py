"""Known WARP endpoint prefixes and ports, and random picks from them."""

from __future__ import annotations

import ipaddress
import random
from typing import List, Tuple, Union

from warpplus.iputils import random_ip_from_prefix

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_WARP_PREFIXES = (
    "162.159.192.0/24",
    "162.159.193.0/24",
    "162.159.195.0/24",
    "188.114.96.0/24",
    "188.114.97.0/24",
    "188.114.98.0/24",
    "188.114.99.0/24",
    "2606:4700:d0::/64",
    "2606:4700:d1::/64",
)

_WARP_PORTS = (
    500, 854, 859, 864, 878, 880, 890, 891, 894, 903, 908, 928, 934, 939,
    942, 943, 945, 946, 955, 968, 987, 988, 1002, 1010, 1014, 1018, 1070,
    1074, 1180, 1387, 1701, 1843, 2371, 2408, 2506, 3138, 3476, 3581, 3854,
    4177, 4198, 4233, 4500, 5279, 5956, 7103, 7152, 7156, 7281, 7559, 8319,
    8742, 8854, 8886,
)


def warp_prefixes() -> List[IPNetwork]:
    """Return the address prefixes WARP endpoints live in."""
    return [ipaddress.ip_network(prefix) for prefix in _WARP_PREFIXES]


def random_warp_prefix(v4: bool, v6: bool) -> IPNetwork:
    """Pick a random WARP prefix of an allowed IP version."""
    if not v4 and not v6:
        raise ValueError("Must choose a IP version for RandomWarpPrefix")
    candidates = [
        prefix
        for prefix in warp_prefixes()
        if (v4 and prefix.version == 4) or (v6 and prefix.version == 6)
    ]
    return random.choice(candidates)


def warp_ports() -> List[int]:
    """Return the UDP ports WARP endpoints answer on."""
    return list(_WARP_PORTS)


def random_warp_port() -> int:
    """Pick a random WARP port."""
    return random.choice(_WARP_PORTS)


def random_warp_endpoint(v4: bool, v6: bool) -> Tuple[IPAddress, int]:
    """Pick a random WARP endpoint address and port."""
    ip = random_ip_from_prefix(random_warp_prefix(v4, v6))
    return ip, random_warp_port()