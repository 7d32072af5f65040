"""Wire codec.

Converts between raw IRC lines and IRCMessage instances, including IRCv3
message tags. The codec knows nothing about connections or state: it either
returns a message, or raises MalformedLine/MessageTooLong.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
import re
from collections.abc import Mapping, Sequence
from typing import NamedTuple

from .errors import MalformedLine, MessageTooLong

# 512 including CRLF; RFC 1459, section 2.3
MAX_LINE_LENGTH = 512

# the tags section, including the leading "@" and the trailing space; IRCv3 message-tags
MAX_TAGS_LENGTH = 8191

_COMMAND_RE = re.compile(r"[A-Za-z]+|[0-9]{3}")
_TAG_KEY_RE = re.compile(r"\+?(?:[A-Za-z0-9.-]+/)?[A-Za-z0-9-]+")

_TAG_ESCAPES = {";": "\\:", " ": "\\s", "\\": "\\\\", "\r": "\\r", "\n": "\\n"}
_TAG_UNESCAPES = {":": ";", "s": " ", "\\": "\\", "r": "\r", "n": "\n"}


def escape_tag_value(value: str) -> str:
    """Escape a tag value for the wire, as defined by IRCv3 message-tags."""
    return "".join(_TAG_ESCAPES.get(char, char) for char in value)


def unescape_tag_value(value: str) -> str:
    """Unescape a tag value as received from the wire.

    Unknown escapes (e.g. "\\b") decode to the escaped character itself. A
    value ending in a lone backslash is an unterminated escape and is refused.
    """
    unescaped = []
    chars = iter(value)
    for char in chars:
        if char != "\\":
            unescaped.append(char)
            continue
        try:
            escaped = next(chars)
        except StopIteration:
            raise MalformedLine("Unterminated tag escape", value) from None
        unescaped.append(_TAG_UNESCAPES.get(escaped, escaped))
    return "".join(unescaped)


def parse_tags(raw: str) -> dict[str, str]:
    """Parse the tags section (without the leading "@") into an ordered dict.

    Tags without a value are equivalent to tags with an empty value. When a key
    is repeated, the last value wins.
    """
    tags: dict[str, str] = {}
    for item in raw.split(";"):
        if not item:
            continue
        key, _, value = item.partition("=")
        if not key:
            raise MalformedLine("Empty tag key", raw)
        tags.pop(key, None)  # last one wins, and takes the last position
        tags[key] = unescape_tag_value(value)
    return tags


def format_tags(tags: Mapping[str, str]) -> str:
    """Format tags for the wire (without the leading "@")."""
    formatted = []
    for key, value in tags.items():
        if not _TAG_KEY_RE.fullmatch(key):
            raise ValueError(f"Invalid tag key: {key!r}")
        formatted.append(f"{key}={escape_tag_value(value)}" if value else key)
    return ";".join(formatted)


class Hostmask(NamedTuple):
    """The nick!user@host source of a message; user and host are optional."""

    nick: str
    user: str | None = None
    host: str | None = None

    @classmethod
    def parse(cls, source: str) -> Hostmask:
        """Split a message source into its components."""
        nick_user, has_host, host = source.partition("@")
        nick, has_user, user = nick_user.partition("!")
        return cls(nick, user if has_user else None, host if has_host else None)

    def __str__(self) -> str:
        """Return the wire format of the hostmask."""
        formatted = self.nick
        if self.user is not None:
            formatted += "!" + self.user
        if self.host is not None:
            formatted += "@" + self.host
        return formatted


@dataclasses.dataclass
class IRCMessage:
    """Represents an RFC 1459/2812 message, with IRCv3 message tags.

    Can be either initialized:
    * with its constructor using a command, params and (optionally) a source
      and tags
    * given a preformatted string, using the from_message() class method
    * given raw bytes off the wire, using the decode() class method

    Serialization happens with str() (without line terminator) or encode()
    (bytes, CRLF-terminated, length-checked).
    """

    command: str
    params: Sequence[str] = ()
    source: str | None = None
    tags: Mapping[str, str] = dataclasses.field(default_factory=dict)

    def __post_init__(self) -> None:
        """Normalize the command and copy the containers."""
        self.command = str(self.command).upper()
        self.params = [str(param) for param in self.params] if self.params else []
        self.tags = dict(self.tags) if self.tags else {}

    @classmethod
    def from_message(cls, message: str) -> IRCMessage:
        """Parse a previously formatted IRC message. Returns an instance of IRCMessage."""
        line = message.rstrip("\r\n")
        if not line.strip(" "):
            raise MalformedLine("Empty line", message)

        tags: dict[str, str] = {}
        if line.startswith("@"):
            raw_tags, has_message, line = line[1:].partition(" ")
            if not has_message:
                raise MalformedLine("Tags without a message", message)
            tags = parse_tags(raw_tags)
            line = line.lstrip(" ")

        source = None
        if line.startswith(":"):
            source, has_command, line = line[1:].partition(" ")
            if not has_command or not source:
                raise MalformedLine("Invalid IRC message (no command specified)", message)
            line = line.lstrip(" ")

        command, _, rest = line.partition(" ")
        if not _COMMAND_RE.fullmatch(command):
            raise MalformedLine(f"Invalid command {command!r}", message)

        params = []
        while rest:
            # skip multiple spaces in middle of message, as per RFC 1459
            rest = rest.lstrip(" ")
            if not rest:
                break
            if rest.startswith(":"):
                params.append(rest[1:])
                break
            param, _, rest = rest.partition(" ")
            params.append(param)

        return cls(command, params, source, tags)

    @classmethod
    def decode(cls, data: bytes) -> IRCMessage:
        """Parse a line of bytes off the wire.

        Lines are expected to be UTF-8, but many networks still carry legacy
        encodings; fall back to latin-1, which never fails.
        """
        data = data.rstrip(b"\r\n")
        try:
            text = data.decode("utf8")
        except UnicodeDecodeError:
            text = data.decode("latin-1")
        return cls.from_message(text)

    def __str__(self) -> str:
        """Generate an RFC-compliant formatted string for the instance."""
        components = []

        if self.tags:
            components.append("@" + format_tags(self.tags))

        if self.source:
            if " " in self.source:
                raise ValueError(f"Invalid source: {self.source!r}")
            components.append(":" + self.source)

        components.append(self.command)

        if self.params:
            *middle, last = self.params
            for param in middle:
                if not param or " " in param or param.startswith(":"):
                    raise ValueError(f"Only the last parameter can be empty or contain spaces: {param!r}")
            components.extend(middle)
            if not last or " " in last or last.startswith(":"):
                last = ":" + last
            components.append(last)

        formatted = " ".join(components)
        if any(char in formatted for char in "\r\n\0"):
            raise ValueError("CR, LF or NUL are not allowed in a message")
        return formatted

    def encode(self, max_length: int = MAX_LINE_LENGTH, max_tags_length: int = MAX_TAGS_LENGTH) -> bytes:
        """Serialize to bytes, terminated by CRLF.

        The tags section and the rest of the message are accounted separately,
        as per IRCv3 message-tags. Raises MessageTooLong instead of truncating;
        pass max_tags_length=0 when tags have not been negotiated.
        """
        line = str(self)
        body = line
        if self.tags:
            tags_section, _, body = line.partition(" ")
            tags_length = len(tags_section.encode("utf8")) + 1
            if tags_length > max_tags_length:
                raise MessageTooLong(tags_length, max_tags_length)

        body_length = len(body.encode("utf8")) + 2
        if body_length > max_length:
            raise MessageTooLong(body_length, max_length)
        return line.encode("utf8") + b"\r\n"

    @property
    def hostmask(self) -> Hostmask | None:
        """Return the parsed source, if any."""
        if not self.source:
            return None
        return Hostmask.parse(self.source)

    @property
    def nick(self) -> str | None:
        """Return the nickname (or server name) part of the source, if any."""
        hostmask = self.hostmask
        return hostmask.nick if hostmask else None

    @property
    def is_numeric(self) -> bool:
        """Return True for numeric replies, e.g. 001."""
        return self.command.isdigit()
