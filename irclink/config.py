"""Connection profiles, read from configparser sections."""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import configparser
import dataclasses
import urllib.parse

from .capabilities import SUPPORTED_CAPABILITIES
from .sasl import MECHANISMS


def _split(value: str | None) -> tuple[str, ...]:
    """Split a comma and/or whitespace-separated list."""
    if not value:
        return ()
    return tuple(item for item in value.replace(",", " ").split() if item)


@dataclasses.dataclass(frozen=True)
class ProxyConfig:
    """A SOCKS5 proxy, as given by a socks5://[user:pass@]host:port URL."""

    host: str
    port: int = 1080
    username: str | None = None
    password: str | None = None

    @classmethod
    def from_url(cls, url: str) -> ProxyConfig:
        """Parse a proxy URL; raises ValueError for anything other than a socks5 URL."""
        parsed = urllib.parse.urlsplit(url)
        if parsed.scheme not in ("socks5", "socks5h"):
            raise ValueError(f"Unsupported proxy scheme: {parsed.scheme!r}")
        if not parsed.hostname:
            raise ValueError(f"Proxy URL without a host: {url!r}")
        return cls(
            host=parsed.hostname,
            port=parsed.port or 1080,
            username=urllib.parse.unquote(parsed.username) if parsed.username else None,
            password=urllib.parse.unquote(parsed.password) if parsed.password else None,
        )


@dataclasses.dataclass(frozen=True)
class ConnectionProfile:
    """Everything needed to connect to and register with one network."""

    host: str
    nickname: str
    port: int = 6697
    tls: bool = True
    tls_verify: bool = True
    tls_certfile: str | None = None
    tls_keyfile: str | None = None
    proxy: ProxyConfig | None = None
    alt_nicknames: tuple[str, ...] = ()
    username: str | None = None
    realname: str | None = None
    password: str | None = None
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    # whether to carry on unauthenticated when SASL fails
    sasl_fallback: bool = True
    autojoin: tuple[str, ...] = ()
    capabilities: frozenset[str] = SUPPORTED_CAPABILITIES
    flood_burst: int = 4
    flood_rate: float = 1.0
    ping_interval: float = 120.0
    ping_timeout: float = 60.0
    connect_timeout: float = 30.0
    reconnect_base: float = 1.0
    reconnect_max: float = 300.0
    nick_retries: int = 3
    batch_max_messages: int = 5000
    batch_max_age: float = 120.0

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("A host is required")
        if not self.nickname:
            raise ValueError("A nickname is required")
        if self.sasl_mechanism is not None and self.sasl_mechanism.upper() not in MECHANISMS:
            raise ValueError(f"Unsupported SASL mechanism: {self.sasl_mechanism}")
        if self.sasl_mechanism and self.sasl_mechanism.upper() == "PLAIN" and not self.sasl_password:
            raise ValueError("SASL PLAIN requires sasl_password")
        if self.flood_burst < 1 or self.flood_rate <= 0:
            raise ValueError("flood_burst must be at least 1 and flood_rate positive")

    @property
    def user(self) -> str:
        """Return the username for USER, defaulting to the nickname."""
        return self.username or self.nickname

    @property
    def real(self) -> str:
        """Return the realname for USER, defaulting to the nickname."""
        return self.realname or self.nickname

    @property
    def sasl_account(self) -> str:
        """Return the SASL account name, defaulting to the username."""
        return self.sasl_username or self.user

    @classmethod
    def from_config(cls, config: configparser.SectionProxy) -> ConnectionProfile:
        """Build a profile from a [network:<name>] section.

        Raises ValueError for invalid or missing values.
        """
        host = config.get("host")
        nickname = config.get("nickname")
        if not host or not nickname:
            raise ValueError(f"Section {config.name}: host and nickname are required")

        tls = config.getboolean("tls", fallback=True)
        proxy = config.get("proxy")
        capabilities = config.get("capabilities")
        return cls(
            host=host,
            port=config.getint("port", fallback=6697 if tls else 6667),
            tls=tls,
            tls_verify=config.getboolean("tls_verify", fallback=True),
            tls_certfile=config.get("tls_certfile"),
            tls_keyfile=config.get("tls_keyfile"),
            proxy=ProxyConfig.from_url(proxy) if proxy else None,
            nickname=nickname,
            alt_nicknames=_split(config.get("alt_nicknames")),
            username=config.get("username"),
            realname=config.get("realname"),
            password=config.get("password"),
            sasl_mechanism=config.get("sasl_mechanism"),
            sasl_username=config.get("sasl_username"),
            sasl_password=config.get("sasl_password"),
            sasl_fallback=config.getboolean("sasl_fallback", fallback=True),
            autojoin=_split(config.get("autojoin")),
            capabilities=frozenset(_split(capabilities)) if capabilities is not None else SUPPORTED_CAPABILITIES,
            flood_burst=config.getint("flood_burst", fallback=4),
            flood_rate=config.getfloat("flood_rate", fallback=1.0),
            ping_interval=config.getfloat("ping_interval", fallback=120.0),
            ping_timeout=config.getfloat("ping_timeout", fallback=60.0),
            connect_timeout=config.getfloat("connect_timeout", fallback=30.0),
            reconnect_base=config.getfloat("reconnect_base", fallback=1.0),
            reconnect_max=config.getfloat("reconnect_max", fallback=300.0),
            nick_retries=config.getint("nick_retries", fallback=3),
            batch_max_messages=config.getint("batch_max_messages", fallback=5000),
            batch_max_age=config.getfloat("batch_max_age", fallback=120.0),
        )


def network_sections(config: configparser.ConfigParser) -> dict[str, configparser.SectionProxy]:
    """Return the [network:<name>] sections, keyed by name."""
    prefix = "network:"
    return {name[len(prefix) :]: config[name] for name in config.sections() if name.startswith(prefix)}
