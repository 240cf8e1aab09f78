"""An HTTP proxy server supporting plain requests and CONNECT tunnels."""

from __future__ import annotations

import asyncio
import http
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple
from urllib.parse import urlsplit

from warpplus.proxy.statute import (
    DEFAULT_BIND_ADDRESS,
    ProxyRequest,
    default_proxy_dial,
    tunnel,
)

_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"


def format_error_response(status: int, message: str) -> bytes:
    """Build a plain-text HTTP/1.1 error response carrying ``message``."""
    try:
        status_text = http.HTTPStatus(status).phrase
    except ValueError:
        status_text = f"status code {status}"
    return (
        f"HTTP/1.1 {status} {status_text}\r\n"
        "Content-Type: text/plain; charset=utf-8\r\n"
        "X-Content-Type-Options: nosniff\r\n"
        "\r\n"
        f"{message}\n"
    ).encode("utf-8")


def _split_host_port(address: str) -> Tuple[str, str]:
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError("missing ']' in address")
        rest = address[end + 1:]
        if not rest.startswith(":"):
            raise ValueError("missing port in address")
        return address[1:end], rest[1:]
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError("missing port in address")
    if ":" in host:
        raise ValueError("too many colons in address")
    return host, port


def _join_host_port(host: str, port: Any) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def split_target(host: str, scheme: str, is_connect: bool) -> Tuple[str, str]:
    """Split a request's target into host and port, filling in the default port."""
    try:
        return _split_host_port(host)
    except ValueError:
        port = "443" if scheme == "https" or is_connect else "80"
        return host, port


@dataclass
class _Request:
    method: str
    target: str
    version: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    scheme: str = ""
    url_host: str = ""
    path: str = ""
    query: str = ""

    @property
    def is_connect(self) -> bool:
        return self.method == "CONNECT"

    @property
    def host(self) -> str:
        if self.url_host:
            return self.url_host
        for name, value in self.headers:
            if name.lower() == "host":
                return value
        return ""

    def serialize(self) -> bytes:
        uri = self.path or "/"
        if self.query:
            uri += "?" + self.query
        lines = [f"{self.method} {uri} HTTP/1.1", f"Host: {self.host}"]
        lines.extend(f"{name}: {value}" for name, value in self.headers if name.lower() != "host")
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


async def _read_line(reader) -> str:
    line = await reader.readline()
    if not line.endswith(b"\n"):
        raise EOFError("unexpected EOF")
    return line.rstrip(b"\r\n").decode("latin-1")


async def _read_request(reader) -> _Request:
    parts = (await _read_line(reader)).split(" ", 2)
    if len(parts) != 3:
        raise ValueError("malformed HTTP request")
    method, target, version = parts
    if not method or not version.startswith("HTTP/"):
        raise ValueError(f"malformed HTTP version {version!r}")

    request = _Request(method=method, target=target, version=version)
    if request.is_connect and not target.startswith("/"):
        parsed = urlsplit("http://" + target)
        request.url_host = parsed.netloc
    else:
        parsed = urlsplit(target)
        request.scheme = parsed.scheme
        request.url_host = parsed.netloc
        request.path = parsed.path
        request.query = parsed.query

    while True:
        line = await _read_line(reader)
        if not line:
            return request
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise ValueError(f"malformed MIME header line: {line}")
        request.headers.append((name.strip(), value.strip()))


class _PrefixedReader:
    """A stream reader that yields ``prefix`` before the wrapped reader's data."""

    def __init__(self, prefix: bytes, reader) -> None:
        self._prefix = bytearray(prefix)
        self._reader = reader

    def _take(self, count: int) -> bytes:
        data = bytes(self._prefix[:count])
        del self._prefix[:count]
        return data

    async def read(self, n: int = -1) -> bytes:
        if not self._prefix:
            return await self._reader.read(n)
        if n < 0:
            return self._take(len(self._prefix)) + await self._reader.read()
        return self._take(n)

    async def readexactly(self, n: int) -> bytes:
        head = self._take(n)
        if len(head) < n:
            head += await self._reader.readexactly(n - len(head))
        return head

    async def readline(self) -> bytes:
        end = self._prefix.find(b"\n")
        if end >= 0:
            return self._take(end + 1)
        return self._take(len(self._prefix)) + await self._reader.readline()

    def at_eof(self) -> bool:
        return not self._prefix and self._reader.at_eof()


async def _close(writer) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


def _parse_bind(bind: str) -> Tuple[Optional[str], int]:
    if not bind:
        return None, 0
    host, port = _split_host_port(bind)
    return host or None, int(port or 0)


class Server:
    """An HTTP proxy that dials targets itself or hands them to a handler."""

    def __init__(
        self,
        bind: str = DEFAULT_BIND_ADDRESS,
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
        """Read one request from the client and proxy it."""
        request = await _read_request(reader)
        if self.connect_handler is None:
            await self._embedded(reader, writer, request)
        else:
            await self._hand_over(reader, writer, request)

    async def _hand_over(self, reader, writer, request: _Request) -> None:
        if request.is_connect:
            writer.write(_ESTABLISHED)
            await writer.drain()
        else:
            reader = _PrefixedReader(request.serialize(), reader)

        host, port_text = split_target(request.url_host, request.scheme, request.is_connect)
        try:
            port = int(port_text)
        except ValueError:
            raise ValueError(f"invalid port {port_text!r}") from None

        proxy_request = ProxyRequest(
            reader=reader,
            writer=writer,
            network="tcp",
            destination=_join_host_port(host, port_text),
            dest_host=host,
            dest_port=port,
        )
        result = self.connect_handler(proxy_request)
        if inspect.isawaitable(result):
            await result

    async def _embedded(self, reader, writer, request: _Request) -> None:
        try:
            host, port_text = split_target(request.url_host, request.scheme, request.is_connect)
            try:
                target_reader, target_writer = await self.proxy_dial(
                    "tcp", _join_host_port(host, port_text)
                )
            except OSError as exc:
                writer.write(format_error_response(http.HTTPStatus.SERVICE_UNAVAILABLE, str(exc)))
                await writer.drain()
                raise

            try:
                if request.is_connect:
                    writer.write(_ESTABLISHED)
                    await writer.drain()
                else:
                    target_writer.write(request.serialize())
                    await target_writer.drain()
            except BaseException:
                await _close(target_writer)
                raise
            await tunnel(target_reader, target_writer, reader, writer)
        finally:
            await _close(writer)