"""ISUPPORT (RPL_ISUPPORT, numeric 005) tokens and casemapping.

Tokens are stored raw as they arrive and only parsed into typed values when
first accessed; the parsed values are cached until the next update. Absent or
unparseable tokens fall back to documented defaults, see
https://modern.ircdocs.horse/#rplisupport-005
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import enum
import re
import string
import unicodedata
from collections.abc import Callable, Iterable, Iterator
from typing import Any, NamedTuple, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

_FOLD_TABLES = {
    "ascii": str.maketrans(string.ascii_uppercase, string.ascii_lowercase),
    "rfc1459": str.maketrans(string.ascii_uppercase + "[]\\~", string.ascii_lowercase + "{}|^"),
    "strict-rfc1459": str.maketrans(string.ascii_uppercase + "[]\\", string.ascii_lowercase + "{}|"),
}

_CASEMAPPING_ALIASES = {
    "rfc1459-strict": "strict-rfc1459",
    "rfc8265": "rfc7613",
}


class CaseMapping(enum.Enum):
    """Server-declared rule for folding nicknames and channel names."""

    ASCII = "ascii"
    RFC1459 = "rfc1459"
    STRICT_RFC1459 = "strict-rfc1459"
    RFC7613 = "rfc7613"

    @classmethod
    def from_token(cls, value: str) -> CaseMapping:
        """Return the casemapping for a CASEMAPPING token value; raises ValueError if unknown."""
        value = value.lower()
        return cls(_CASEMAPPING_ALIASES.get(value, value))

    def fold(self, value: str) -> str:
        """Return the folded form of a name; equal folded forms mean the same name."""
        if self is CaseMapping.RFC7613:
            return unicodedata.normalize("NFKC", value).casefold()
        return value.translate(_FOLD_TABLES[self.value])

    def equals(self, first: str, second: str) -> bool:
        """Return True if both names are the same under this casemapping."""
        return self.fold(first) == self.fold(second)


class ChanModes(NamedTuple):
    """Channel mode letters, by CHANMODES type."""

    list_modes: str  # type A: always take a parameter, maintain a list
    param_modes: str  # type B: always take a parameter
    set_param_modes: str  # type C: take a parameter only when set
    flag_modes: str  # type D: never take a parameter

    def kind(self, letter: str) -> str | None:
        """Return the type ("A" to "D") of a mode letter, or None if unknown."""
        for kind, letters in zip("ABCD", self):
            if letter in letters:
                return kind
        return None


class Prefix(NamedTuple):
    """Membership prefix modes and their symbols, highest rank first."""

    modes: str
    symbols: str

    def symbol(self, mode: str) -> str | None:
        """Return the symbol of a prefix mode (e.g. "o" → "@")."""
        index = self.modes.find(mode)
        return self.symbols[index] if index >= 0 else None

    def mode(self, symbol: str) -> str | None:
        """Return the prefix mode of a symbol (e.g. "@" → "o")."""
        index = self.symbols.find(symbol)
        return self.modes[index] if index >= 0 else None

    def rank(self, mode: str) -> int:
        """Return the rank of a prefix mode; lower is more powerful."""
        index = self.modes.find(mode)
        return index if index >= 0 else len(self.modes)


DEFAULT_CASEMAPPING = CaseMapping.RFC1459
DEFAULT_CHANTYPES = "#&"
DEFAULT_CHANMODES = ChanModes("beI", "k", "l", "imnst")
DEFAULT_PREFIX = Prefix("qaohv", "~&@%+")
DEFAULT_MODES = 3


def unescape_value(value: str) -> str:
    """Unescape \\xHH sequences in an ISUPPORT value."""
    return re.sub(r"\\x([0-9A-Fa-f]{2})", lambda match: chr(int(match.group(1), 16)), value)


def _require(value: str | None) -> str:
    if not value:
        raise ValueError("value required")
    return value


def _positive_int(value: str | None) -> int:
    number = int(_require(value))
    if number <= 0:
        raise ValueError("value required to be a positive integer")
    return number


def _optional_int(value: str | None) -> int | None:
    return _positive_int(value) if value else None


def _chanmodes(value: str | None) -> ChanModes:
    kinds = _require(value).split(",")
    if len(kinds) < 4:
        raise ValueError("CHANMODES needs four types")
    # extra, unknown types are allowed and ignored
    if not all(all(char.isascii() and char.isalpha() for char in kind) for kind in kinds[:4]):
        raise ValueError("CHANMODES contains non-letters")
    return ChanModes(*kinds[:4])


def _prefix(value: str | None) -> Prefix:
    if not value:
        return Prefix("", "")  # an empty PREFIX means no membership prefixes at all
    match = re.fullmatch(r"\(([A-Za-z]*)\)(.*)", value)
    if not match or len(match.group(1)) != len(match.group(2)):
        raise ValueError("unrecognized PREFIX format")
    return Prefix(match.group(1), match.group(2))


def _limits(value: str | None) -> dict[str, int | None]:
    """Parse "key:limit,key:limit" tokens such as TARGMAX, CHANLIMIT and MAXLIST."""
    limits: dict[str, int | None] = {}
    for item in _require(value).split(","):
        key, has_limit, limit = item.partition(":")
        if not key or not has_limit:
            continue
        limits[key] = int(limit) if limit else None
    return limits


def _maxlist(value: str | None) -> dict[str, int]:
    limits = {modes: limit for modes, limit in _limits(value).items() if modes.isalpha() and limit is not None}
    if not limits:
        raise ValueError("no valid modes limits")
    return limits


def _letter(default: str) -> Callable[[str | None], str]:
    """Return a parser for tokens such as EXCEPTS, naming a mode letter with a default."""

    def parse(value: str | None) -> str:
        if not value:
            return default
        if len(value) != 1 or not value.isalpha():
            raise ValueError("value required to be a single letter")
        return value

    return parse


def _elist(value: str | None) -> str:
    extensions = _require(value).upper()
    if not all(char in "CMNTU" for char in extensions):
        raise ValueError("value required to only contain valid search extensions")
    return extensions


def _msgreftypes(value: str | None) -> tuple[str, ...]:
    return tuple(kind for kind in (value or "").split(",") if kind in ("msgid", "timestamp"))


class ISupport:
    """The ISUPPORT tokens advertised by a server, with typed accessors."""

    def __init__(self, tokens: Iterable[str] = ()) -> None:
        self._tokens: dict[str, str | None] = {}
        self._parsed: dict[str, Any] = {}
        self.update(tokens)

    def update(self, tokens: Iterable[str]) -> set[str]:
        """Merge tokens, e.g. ["CHANTYPES=#", "-EXCEPTS"]. Returns the set of keys touched.

        Last write wins; a token prefixed with "-" removes the key.
        """
        touched = set()
        for token in tokens:
            if not token or token == "-":
                continue
            if token.startswith("-"):
                key = token[1:].upper()
                self._tokens.pop(key, None)
            else:
                key, has_value, value = token.partition("=")
                key = key.upper()
                self._tokens[key] = unescape_value(value) if has_value else None
            touched.add(key)
        if touched:
            self._parsed.clear()
        return touched

    def __contains__(self, key: object) -> bool:
        """Return True if the server advertised this token."""
        return isinstance(key, str) and key.upper() in self._tokens

    def __iter__(self) -> Iterator[str]:
        """Iterate over the advertised keys."""
        return iter(self._tokens)

    def __len__(self) -> int:
        """Return the number of advertised tokens."""
        return len(self._tokens)

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the raw value of a token; flag-only tokens have an empty value."""
        key = key.upper()
        if key not in self._tokens:
            return default
        return self._tokens[key] or ""

    def _typed(self, key: str, parser: Callable[[str | None], T], default: T) -> T:
        if key in self._parsed:
            return self._parsed[key]  # type: ignore[no-any-return]

        if key not in self._tokens:
            value = default
        else:
            raw = self._tokens[key]
            try:
                value = parser(raw)
            except ValueError:
                logger.debug("Invalid ISUPPORT value, using default", key=key, value=raw)
                value = default
        self._parsed[key] = value
        return value

    @property
    def casemapping(self) -> CaseMapping:
        """Return the CASEMAPPING, defaulting to rfc1459."""
        return self._typed("CASEMAPPING", lambda value: CaseMapping.from_token(_require(value)), DEFAULT_CASEMAPPING)

    @property
    def chantypes(self) -> str:
        """Return the channel prefix characters, defaulting to "#&"."""
        return self._typed("CHANTYPES", lambda value: value or "", DEFAULT_CHANTYPES)

    @property
    def chanmodes(self) -> ChanModes:
        """Return the CHANMODES letters by type."""
        return self._typed("CHANMODES", _chanmodes, DEFAULT_CHANMODES)

    @property
    def prefix(self) -> Prefix:
        """Return the PREFIX membership modes and symbols."""
        return self._typed("PREFIX", _prefix, DEFAULT_PREFIX)

    @property
    def modes(self) -> int | None:
        """Return the maximum number of parameter modes per MODE command; None is unlimited."""
        return self._typed("MODES", _optional_int, DEFAULT_MODES)

    @property
    def nicklen(self) -> int | None:
        """Return the maximum nickname length, if advertised."""
        nicklen = self._typed("NICKLEN", _positive_int, None)
        if nicklen is None:
            nicklen = self._typed("MAXNICKLEN", _positive_int, None)
        return nicklen

    @property
    def channellen(self) -> int | None:
        """Return the maximum channel name length, if advertised."""
        return self._typed("CHANNELLEN", _positive_int, None)

    @property
    def topiclen(self) -> int | None:
        """Return the maximum topic length, if advertised."""
        return self._typed("TOPICLEN", _positive_int, None)

    @property
    def linelen(self) -> int | None:
        """Return the maximum line length (draft LINELEN), if advertised."""
        return self._typed("LINELEN", _positive_int, None)

    @property
    def userlen(self) -> int | None:
        """Return the maximum username length, if advertised."""
        return self._typed("USERLEN", _positive_int, None)

    @property
    def hostlen(self) -> int | None:
        """Return the maximum hostname length, if advertised."""
        return self._typed("HOSTLEN", _positive_int, None)

    @property
    def awaylen(self) -> int | None:
        return self._typed("AWAYLEN", _positive_int, None)

    @property
    def kicklen(self) -> int | None:
        return self._typed("KICKLEN", _positive_int, None)

    @property
    def keylen(self) -> int | None:
        return self._typed("KEYLEN", _positive_int, None)

    @property
    def namelen(self) -> int | None:
        """Return the maximum length of a nick!user@host mask, if advertised."""
        return self._typed("NAMELEN", _positive_int, None)

    @property
    def excepts(self) -> str | None:
        """Return the ban exception mode letter ("e" unless given), if supported."""
        return self._typed("EXCEPTS", _letter("e"), None)

    @property
    def invex(self) -> str | None:
        """Return the invite exception mode letter ("I" unless given), if supported."""
        return self._typed("INVEX", _letter("I"), None)

    @property
    def maxlist(self) -> dict[str, int]:
        """Return the maximum entries of list modes, keyed by the letters sharing each limit."""
        return self._typed("MAXLIST", _maxlist, {})

    def list_limit(self, mode: str) -> int | None:
        """Return the maximum number of entries for a list mode (e.g. "b"); None if not advertised."""
        for modes, limit in self.maxlist.items():
            if mode in modes:
                return limit
        return None

    @property
    def chathistory(self) -> int | None:
        """Return the maximum number of messages per CHATHISTORY request, if supported."""
        if "CHATHISTORY" in self._tokens:
            return self._typed("CHATHISTORY", _positive_int, None)
        return self._typed("DRAFT/CHATHISTORY", _positive_int, None)

    @property
    def monitor(self) -> int | None:
        """Return the maximum number of MONITOR targets; None is unlimited, or MONITOR is not supported at all.

        Use `"MONITOR" in isupport` to tell the two apart.
        """
        return self._typed("MONITOR", _optional_int, None)

    @property
    def elist(self) -> str:
        """Return the LIST search extensions supported, as upper-case letters."""
        return self._typed("ELIST", _elist, "")

    @property
    def msgreftypes(self) -> tuple[str, ...]:
        """Return the known message reference types, in the server's order of preference."""
        return self._typed("MSGREFTYPES", _msgreftypes, ())

    @property
    def utf8only(self) -> bool:
        """Return True if the server only accepts UTF-8."""
        return "UTF8ONLY" in self

    @property
    def whox(self) -> bool:
        return "WHOX" in self

    @property
    def safelist(self) -> bool:
        return "SAFELIST" in self

    @property
    def knock(self) -> bool:
        return "KNOCK" in self

    @property
    def userip(self) -> bool:
        return "USERIP" in self

    @property
    def cnotice(self) -> bool:
        return "CNOTICE" in self

    @property
    def cprivmsg(self) -> bool:
        return "CPRIVMSG" in self

    @property
    def network(self) -> str | None:
        """Return the network name, if advertised."""
        return self._typed("NETWORK", _require, None)

    @property
    def statusmsg(self) -> str:
        """Return the prefixes allowed in front of a channel name for STATUSMSG."""
        return self._typed("STATUSMSG", lambda value: value or "", "")

    @property
    def targmax(self) -> dict[str, int | None]:
        """Return the maximum targets per command; None means unlimited."""
        limits = self._typed("TARGMAX", _limits, {})
        return {command.upper(): limit for command, limit in limits.items()}

    @property
    def chanlimit(self) -> dict[str, int | None]:
        """Return the maximum channels joinable, per channel type."""
        per_prefix: dict[str, int | None] = {}
        for prefixes, limit in self._typed("CHANLIMIT", _limits, {}).items():
            for prefix in prefixes:
                per_prefix[prefix] = limit
        return per_prefix

    def target_limit(self, command: str) -> int | None:
        """Return the maximum number of targets for a command; None means unlimited."""
        return self.targmax.get(command.upper())

    def is_channel(self, name: str) -> bool:
        """Return True if a target name is a channel, as opposed to a nickname."""
        return bool(name) and name[0] in self.chantypes
