"""Asyncio SOCKS4, SOCKS5, HTTP and protocol-detecting proxy servers."""