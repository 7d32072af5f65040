"""Byte stream to the server: TCP or TLS, optionally through a SOCKS5 proxy."""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import ipaddress
import socket
import ssl
import struct

import structlog

from .config import ConnectionProfile, ProxyConfig
from .errors import TransportError
from .message import MAX_LINE_LENGTH, MAX_TAGS_LENGTH

logger = structlog.get_logger()

# a full line: tags plus the rest, with room to spare
STREAM_LIMIT = 2 * (MAX_TAGS_LENGTH + MAX_LINE_LENGTH)

SOCKS_VERSION = 0x05
SOCKS_AUTH_VERSION = 0x01
SOCKS_NO_AUTH = 0x00
SOCKS_USERPASS = 0x02
SOCKS_NO_ACCEPTABLE = 0xFF
SOCKS_CONNECT = 0x01
SOCKS_ATYP_IPV4 = 0x01
SOCKS_ATYP_DOMAIN = 0x03
SOCKS_ATYP_IPV6 = 0x04

SOCKS_ERRORS = {
    0x01: "general SOCKS server failure",
    0x02: "connection not allowed by ruleset",
    0x03: "network unreachable",
    0x04: "host unreachable",
    0x05: "connection refused",
    0x06: "TTL expired",
    0x07: "command not supported",
    0x08: "address type not supported",
}


def tls_context(profile: ConnectionProfile) -> ssl.SSLContext:
    """Return the TLS context for a profile: verification, and an optional client certificate."""
    context = ssl.create_default_context()
    if not profile.tls_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    if profile.tls_certfile:
        # used for SASL EXTERNAL (CertFP)
        context.load_cert_chain(profile.tls_certfile, profile.tls_keyfile)
    return context


async def _recv_exactly(loop: asyncio.AbstractEventLoop, sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = await loop.sock_recv(sock, size - len(data))
        if not chunk:
            raise TransportError("SOCKS5 proxy closed the connection")
        data += chunk
    return data


async def _open_socket(host: str, port: int) -> socket.socket:
    """Connect a non-blocking socket to the first address of host that accepts."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    if not infos:
        raise OSError(f"Cannot resolve {host}")

    last_exc: OSError | None = None
    for family, socktype, proto, _, address in infos:
        sock = socket.socket(family, socktype, proto)
        sock.setblocking(False)
        try:
            await loop.sock_connect(sock, address)
        except OSError as exc:
            sock.close()
            last_exc = exc
            continue
        return sock
    assert last_exc is not None
    raise last_exc


def _socks_address(host: str) -> bytes:
    """Return the ATYP and DST.ADDR fields for a host."""
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        encoded = host.encode("idna")
        if len(encoded) > 255:
            raise TransportError(f"Hostname too long for SOCKS5: {host}") from None
        return bytes([SOCKS_ATYP_DOMAIN, len(encoded)]) + encoded
    atyp = SOCKS_ATYP_IPV4 if address.version == 4 else SOCKS_ATYP_IPV6
    return bytes([atyp]) + address.packed


async def socks5_handshake(sock: socket.socket, proxy: ProxyConfig, host: str, port: int) -> None:
    """Ask a SOCKS5 proxy (RFC 1928) to connect to host:port, authenticating as per RFC 1929 if needed."""
    loop = asyncio.get_running_loop()
    methods = [SOCKS_NO_AUTH]
    if proxy.username is not None:
        methods.append(SOCKS_USERPASS)
    await loop.sock_sendall(sock, bytes([SOCKS_VERSION, len(methods), *methods]))

    version, method = await _recv_exactly(loop, sock, 2)
    if version != SOCKS_VERSION:
        raise TransportError(f"Invalid SOCKS version in proxy reply: {version}")
    if method == SOCKS_NO_ACCEPTABLE or method not in methods:
        raise TransportError("SOCKS5 proxy accepted none of our authentication methods")

    if method == SOCKS_USERPASS:
        username = (proxy.username or "").encode("utf8")
        password = (proxy.password or "").encode("utf8")
        if len(username) > 255 or len(password) > 255:
            raise TransportError("SOCKS5 credentials too long")
        request = bytes([SOCKS_AUTH_VERSION, len(username)]) + username + bytes([len(password)]) + password
        await loop.sock_sendall(sock, request)
        _, status = await _recv_exactly(loop, sock, 2)
        if status != 0x00:
            raise TransportError("SOCKS5 proxy authentication failed")

    request = bytes([SOCKS_VERSION, SOCKS_CONNECT, 0x00]) + _socks_address(host) + struct.pack("!H", port)
    await loop.sock_sendall(sock, request)

    version, reply, _, atyp = await _recv_exactly(loop, sock, 4)
    if version != SOCKS_VERSION:
        raise TransportError(f"Invalid SOCKS version in proxy reply: {version}")
    if reply != 0x00:
        raise TransportError(f"SOCKS5 proxy error: {SOCKS_ERRORS.get(reply, f'unknown error {reply}')}")

    # skip BND.ADDR and BND.PORT
    if atyp == SOCKS_ATYP_IPV4:
        await _recv_exactly(loop, sock, 4 + 2)
    elif atyp == SOCKS_ATYP_IPV6:
        await _recv_exactly(loop, sock, 16 + 2)
    elif atyp == SOCKS_ATYP_DOMAIN:
        (length,) = await _recv_exactly(loop, sock, 1)
        await _recv_exactly(loop, sock, length + 2)
    else:
        raise TransportError(f"Invalid address type in SOCKS5 reply: {atyp}")


async def _open(profile: ConnectionProfile) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    context = tls_context(profile) if profile.tls else None
    server_hostname = profile.host if profile.tls else None

    if profile.proxy is None:
        return await asyncio.open_connection(
            profile.host,
            profile.port,
            ssl=context,
            server_hostname=server_hostname,
            limit=STREAM_LIMIT,
        )

    sock = await _open_socket(profile.proxy.host, profile.proxy.port)
    try:
        await socks5_handshake(sock, profile.proxy, profile.host, profile.port)
        return await asyncio.open_connection(
            sock=sock,
            ssl=context,
            server_hostname=server_hostname,
            limit=STREAM_LIMIT,
        )
    except BaseException:
        sock.close()
        raise


async def open_transport(profile: ConnectionProfile) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open the stream to the server of a profile.

    Raises TransportError on any failure, including a connect timeout.
    """
    log = logger.bind(host=profile.host, port=profile.port, tls=profile.tls)
    if profile.proxy:
        log = log.bind(proxy=f"{profile.proxy.host}:{profile.proxy.port}")
    log.debug("Connecting")

    try:
        return await asyncio.wait_for(_open(profile), timeout=profile.connect_timeout)
    except asyncio.TimeoutError as exc:
        raise TransportError(f"Connection timed out after {profile.connect_timeout}s") from exc
    except ssl.SSLError as exc:
        raise TransportError(f"TLS error: {exc.reason or exc}") from exc
    except OSError as exc:
        raise TransportError(f"Connection failed: {exc.strerror or exc}") from exc
