"""Event dispatcher: inbound messages → events, intents → outbound messages."""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
import re
from collections.abc import Mapping

import structlog

from .batch import Batch
from .events import (
    BatchReceived,
    Event,
    MembershipChanged,
    MessageReceived,
    NicknameChanged,
    ServerReply,
    TopicChanged,
)
from .message import MAX_LINE_LENGTH, IRCMessage
from .numerics import RPL
from .session import MembershipDiff, Session

logger = structlog.get_logger()

# when our own user@host is unknown and not advertised, assume the longest common ones
_USERLEN = 10
_HOSTLEN = 63

_NEWLINE_RE = re.compile(r"\r\n|\r|\n")

# numerics that are fully translated into other events
_CONSUMED_NUMERICS = frozenset(str(numeric) for numeric in (RPL.NAMREPLY, RPL.TOPICWHOTIME))


class Intent:
    """Base class for client intents."""


@dataclasses.dataclass(frozen=True)
class Join(Intent):
    """Join a channel, optionally with a key."""

    channel: str
    key: str | None = None


@dataclasses.dataclass(frozen=True)
class Part(Intent):
    """Leave a channel."""

    channel: str
    reason: str | None = None


@dataclasses.dataclass(frozen=True)
class PrivMsg(Intent):
    """Send a message to a channel or a user."""

    target: str
    text: str


@dataclasses.dataclass(frozen=True)
class Notice(Intent):
    """Send a notice to a channel or a user."""

    target: str
    text: str


@dataclasses.dataclass(frozen=True)
class ChangeNick(Intent):
    """Change our nickname."""

    nickname: str


@dataclasses.dataclass(frozen=True)
class Raw(Intent):
    """Send a preformatted line as-is; the escape hatch for everything else."""

    line: str


def split_text(text: str, max_bytes: int) -> list[str]:
    """Split text so that each chunk encodes to at most max_bytes of UTF-8.

    Newlines cannot be sent, so every line becomes (at least) one chunk; only
    CR and LF end a line, formatting control codes are kept. Cuts happen at a
    space when there is one in the second half of the chunk, and never inside
    a multi-byte character. A single character longer than max_bytes becomes a
    chunk of its own. Empty lines are dropped.
    """
    chunks = []
    for line in _NEWLINE_RE.split(text):
        encoded = line.encode("utf8")
        while len(encoded) > max_bytes:
            cut = max_bytes
            while cut > 0 and (encoded[cut] & 0xC0) == 0x80:  # UTF-8 continuation byte
                cut -= 1
            if cut == 0:
                cut = 1
                while cut < len(encoded) and (encoded[cut] & 0xC0) == 0x80:
                    cut += 1
            space = encoded.rfind(b" ", 0, cut)
            if space > max_bytes // 2:
                cut = space + 1
            chunks.append(encoded[:cut].decode("utf8"))
            encoded = encoded[cut:]
        if encoded:
            chunks.append(encoded.decode("utf8"))
    return chunks


class Dispatcher:
    """Translate between wire messages and the consumer's view of the world."""

    def __init__(self, session: Session, max_length: int | None = None) -> None:
        self.session = session
        self.max_length = max_length

    @property
    def line_length(self) -> int:
        """Return the maximum length of a line, tags excluded: fixed, advertised with LINELEN, or 512."""
        return self.max_length or self.session.isupport.linelen or MAX_LINE_LENGTH

    def translate(self, msg: IRCMessage, diffs: Mapping[str, MembershipDiff] | None = None) -> list[Event]:
        """Return the events for an inbound message, already applied to the session."""
        events: list[Event] = [MembershipChanged(channel, diff) for channel, diff in (diffs or {}).items()]

        if msg.command in ("PRIVMSG", "NOTICE"):
            received = self._message_received(msg)
            if received is not None:
                events.append(received)
        elif msg.command == "TOPIC" and msg.params:
            events.append(TopicChanged(msg.params[0], msg.params[1] if len(msg.params) > 1 else "", msg.nick))
        elif msg.command == str(RPL.TOPIC) and len(msg.params) > 2:
            channel = self.session.channels.get(msg.params[1])
            setter = channel.topic_setter if channel else None
            events.append(TopicChanged(msg.params[1], msg.params[2], setter))
        elif msg.command == "NICK" and msg.params and msg.nick and self.session.is_me(msg.params[0]):
            if msg.nick != msg.params[0]:
                events.append(NicknameChanged(msg.nick, msg.params[0]))
        elif msg.is_numeric and msg.command not in _CONSUMED_NUMERICS and not diffs:
            events.append(ServerReply(msg.command, tuple(msg.params)))
        return events

    def translate_batch(self, batch: Batch, events: list[Event]) -> BatchReceived:
        """Wrap the events of a completed batch into a single event."""
        return BatchReceived(
            reference=batch.reference,
            batch_type=batch.batch_type,
            params=tuple(batch.params),
            messages=tuple(batch.messages),
            events=tuple(events),
            error=batch.error,
        )

    def _message_received(self, msg: IRCMessage) -> MessageReceived | None:
        if len(msg.params) < 2:
            logger.debug("Message without text", command=msg.command, params=msg.params)
            return None

        recipient, text = msg.params[0], msg.params[1]
        sender = msg.nick or ""
        own = self.session.is_me(sender)
        kind = msg.command.lower()

        if text.startswith("\x01"):
            ctcp = text.strip("\x01")
            verb, _, argument = ctcp.partition(" ")
            if verb.upper() != "ACTION":
                logger.debug("Ignoring CTCP", verb=verb, sender=sender)
                return None
            kind, text = "action", argument

        if self.session.is_channel(recipient):
            target = recipient
        elif own or not sender:
            target = recipient  # our own (echoed) private message, or a server notice
        else:
            target = sender
        return MessageReceived(target=target, sender=sender, text=text, tags=dict(msg.tags), kind=kind, own=own)

    def _text_room(self, command: str, target: str) -> int:
        """Return how many bytes of text fit in one line, once relayed with our full source."""
        me = self.session.users.get(self.session.nickname)
        isupport = self.session.isupport
        if me and me.user:
            user_length = len(me.user)
        elif isupport.userlen:
            user_length = isupport.userlen + 1  # a "~" is prepended to usernames without ident
        else:
            user_length = _USERLEN
        if me and me.host:
            host_length = len(me.host)
        else:
            host_length = isupport.hostlen or _HOSTLEN
        source = 1 + len(self.session.nickname.encode("utf8")) + 1 + user_length + 1 + host_length + 1
        overhead = source + len(command) + 1 + len(target.encode("utf8")) + 2 + 2  # " :" and CRLF
        return max(self.line_length - overhead, 1)

    def to_messages(self, intent: Intent) -> list[IRCMessage]:
        """Return the wire messages for a client intent.

        Raises MalformedLine for a Raw intent that cannot be parsed.
        """
        if isinstance(intent, Join):
            return [IRCMessage("JOIN", [intent.channel, intent.key] if intent.key else [intent.channel])]
        if isinstance(intent, Part):
            return [IRCMessage("PART", [intent.channel, intent.reason] if intent.reason else [intent.channel])]
        if isinstance(intent, (PrivMsg, Notice)):
            command = "PRIVMSG" if isinstance(intent, PrivMsg) else "NOTICE"
            room = self._text_room(command, intent.target)
            return [IRCMessage(command, [intent.target, chunk]) for chunk in split_text(intent.text, room)]
        if isinstance(intent, ChangeNick):
            return [IRCMessage("NICK", [intent.nickname])]
        if isinstance(intent, Raw):
            return [IRCMessage.from_message(intent.line)]
        raise TypeError(f"Unknown intent: {intent!r}")
