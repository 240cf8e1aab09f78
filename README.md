# warpplus

A library for working with WARP endpoints. It has three parts:

- **`warpplus.proxy`** – asyncio proxy servers: SOCKS4/4a, SOCKS5 (CONNECT and
  UDP ASSOCIATE), an HTTP proxy (plain requests and `CONNECT`), and a *mixed*
  proxy that looks at the first byte of each connection and hands it to the
  right one.
- **`warpplus.warp`** – Curve25519 keys in WireGuard's base64 form, the known
  WARP prefixes and ports, a client for the WARP registration API, and an
  identity store on disk.
- **`warpplus.scanner.warpping`** – a probe that measures how long a WARP
  endpoint takes to answer a WireGuard handshake initiation.

Address helpers live in `warpplus.iputils`.

Install with `pip install .`; the tests need the `test` extra.

## Proxies

Every server is built on `asyncio`. `listen_and_serve()` is a coroutine that
binds the listener, stores the address it actually got back in `bind`, and
serves until it is cancelled. `serve_conn(reader, writer)` handles one already
accepted connection given as an asyncio stream pair.

Each server either dials the destination itself and relays bytes both ways,
or, when a handler is given, passes the request to it as a
`warpplus.proxy.statute.ProxyRequest` with the fields `reader`, `writer`,
`network` (`"tcp"` or `"udp"`), `destination`, `dest_host` and `dest_port`.
Handlers may be plain functions or coroutine functions.

- `warpplus.proxy.socks4.Server(bind, proxy_dial, connect_handler, logger)` –
  SOCKS4 and SOCKS4a `CONNECT`. Other commands are answered with "request
  rejected".
- `warpplus.proxy.socks5.Server(bind, proxy_dial, proxy_listen_packet,
  packet_forward_address, connect_handler, associate_handler, logger)` –
  SOCKS5 without authentication, `CONNECT` and `UDP ASSOCIATE`. When a dial
  fails the client gets the matching reply code: connection refused, network
  unreachable, or host unreachable. By default UDP clients are told to send
  to the control connection's local IP and the UDP socket's port
  (`default_packet_forward_address`).
- `warpplus.proxy.httpproxy.Server(bind, proxy_dial, connect_handler, logger)`
  – forwards plain HTTP requests and opens `CONNECT` tunnels. When the
  upstream cannot be reached the client gets `503 Service Unavailable`
  (`format_error_response`). A target without a port gets 443 for `https`
  and `CONNECT`, and 80 otherwise (`split_target`).
- `warpplus.proxy.mixed.Proxy(bind, user_handler, user_tcp_handler,
  user_udp_handler, dial, listen_packet, forward_address, logger)` – one
  listener for all three: a first byte of `5` means SOCKS5, `4` means SOCKS4,
  anything else is treated as HTTP. `user_tcp_handler` and `user_udp_handler`
  take precedence over `user_handler` for their kind of traffic.

The SOCKS5, mixed and HTTP servers bind to `127.0.0.1:1080` by default; the
SOCKS4 server on its own binds to any free port on all interfaces.

```python
import asyncio
from warpplus.proxy.mixed import Proxy

async def handler(request):
    print("request to", request.destination, "over", request.network)
    request.writer.close()

asyncio.run(Proxy(bind="127.0.0.1:1080", user_handler=handler).listen_and_serve())
```

The wire formats can be used on their own:

- `warpplus.proxy.socks5_codec` – `Command`, `Reply`, `Address`,
  `read_addr`, `parse_addr`, `encode_addr`, `encode_addr_str`,
  `split_host_port`, `encode_reply` and `err_to_reply`; an unknown address
  type raises `UnrecognizedAddrTypeError`.
- `warpplus.proxy.socks4` – `read_addr_and_user`, `encode_addr` and
  `encode_reply`.
- `warpplus.proxy.statute` – `tunnel`, `default_proxy_dial`,
  `default_proxy_listen_packet` and `is_closed_conn_error`.

## Addresses

- `random_ip_from_prefix(cidr)` returns a random address inside an IPv4 or
  IPv6 prefix; IPv4-mapped IPv6 prefixes raise `ValueError`.
- `parse_resolve_address_port(hostname, include_v6, dns_server)` turns
  `host:port` into `(address, port)`. Names are resolved through the given
  DNS server on port 53; IPv6 results are used only when `include_v6` is
  true. Bad input raises `ValueError`, a failed lookup `LookupError`.

## Keys and endpoints

```python
from warpplus.warp.keys import Key
from warpplus.warp.endpoint import random_warp_endpoint, warp_ports, warp_prefixes

private = Key.generate_private()
public = private.public_key()
print(str(private), str(public))        # base64, as WireGuard writes keys

print(warp_prefixes())                   # the WARP CIDR ranges
print(warp_ports())                      # the ports WARP listens on
print(random_warp_endpoint(True, False)) # a random IPv4 address and port
```

`Key.from_bytes` refuses anything other than 32 bytes, and
`random_warp_prefix(False, False)` raises `ValueError`.

## Accounts

`warpplus.warp.account.load_or_create_identity(path, license)` reads
`wgcf-identity.json` from the directory `path`. If it is missing, unreadable
or holds no peers, the directory is recreated, a new device is registered with
a freshly generated key (`create_identity`), and the identity is saved
(`save_identity`). When a licence key is given and differs from the stored
one, the account is updated and saved again.

The API calls live in `warpplus.warp.api`: `register`, `get_account`,
`update_account`, `get_bound_devices`, `update_bound_device`,
`get_source_device`, `update_source_device`, `reset_account_license` and
`delete_device`. They return the records `Identity`, `IdentityAccount`,
`IdentityDevice` and `License`. Any response outside the 2xx range raises
`ApiError`, which carries `status_code`.

```python
from warpplus.warp import api

account = api.get_account("token", "device-id")
```

## Probing an endpoint

`warpplus.scanner.warpping.initiate_handshake(server_addr, private_key_b64,
peer_public_key_b64, preshared_key_b64)` sends between 8 and 14 random UDP
datagrams, then a WireGuard handshake initiation, and returns the time in
seconds until a valid handshake response arrives. It blocks, waits at most
five seconds for the answer, and raises `ValueError` for a malformed or
unexpected response. `build_initiation` and `tai64n` build the packet without
sending it.

## What this package does not do

- It has no command-line program; everything is used from Python.
- It does not set up a WireGuard tunnel or a TUN device. Keys, identities and
  endpoints are produced, but nothing here carries traffic through WARP.
- It does not scan ranges on its own: there is no address iterator, result
  queue or scan loop, and no TCP, TLS, HTTP or QUIC probes. Only the single
  handshake probe above is provided.