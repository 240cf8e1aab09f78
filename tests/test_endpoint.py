import ipaddress

import pytest

from warpplus.warp.endpoint import (
    random_warp_endpoint,
    random_warp_port,
    random_warp_prefix,
    warp_ports,
    warp_prefixes,
)


def test_prefixes_start_with_known_range():
    prefixes = warp_prefixes()
    assert prefixes[0] == ipaddress.ip_network("162.159.192.0/24")
    assert prefixes[-1] == ipaddress.ip_network("2606:4700:d1::/64")


def test_ports_bounds():
    ports = warp_ports()
    assert ports[0] == 500
    assert ports[-1] == 8886
    assert ports == sorted(ports)


def test_random_prefix_v4_only():
    for _ in range(30):
        assert random_warp_prefix(True, False).version == 4


def test_random_prefix_v6_only():
    for _ in range(30):
        assert random_warp_prefix(False, True).version == 6


def test_random_prefix_any_is_known():
    prefixes = warp_prefixes()
    for _ in range(30):
        assert random_warp_prefix(True, True) in prefixes


def test_random_prefix_requires_a_version():
    with pytest.raises(ValueError):
        random_warp_prefix(False, False)


def test_random_port_is_known():
    ports = warp_ports()
    for _ in range(30):
        assert random_warp_port() in ports


@pytest.mark.parametrize("v4,v6,version", [(True, False, 4), (False, True, 6)])
def test_random_endpoint_inside_prefixes(v4, v6, version):
    ip, port = random_warp_endpoint(v4, v6)
    assert ip.version == version
    assert any(ip in prefix for prefix in warp_prefixes())
    assert port in warp_ports()


def test_random_endpoint_requires_a_version():
    with pytest.raises(ValueError):
        random_warp_endpoint(False, False)