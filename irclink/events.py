"""Domain events handed to the consumer (UI, data layer, …)."""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
from collections.abc import Mapping

from .message import IRCMessage
from .session import MembershipDiff


class Event:
    """Base class for all events."""


@dataclasses.dataclass(frozen=True)
class Connected(Event):
    """The transport is up; registration has not happened yet."""

    host: str
    port: int
    tls: bool


@dataclasses.dataclass(frozen=True)
class CapabilitiesNegotiated(Event):
    """Capability negotiation finished, or the capability set changed later on."""

    capabilities: frozenset[str]


@dataclasses.dataclass(frozen=True)
class Registered(Event):
    """RPL_WELCOME was received."""

    nickname: str


@dataclasses.dataclass(frozen=True)
class MessageReceived(Event):
    """A PRIVMSG or NOTICE, to a channel or to us.

    target is the conversation: the channel name, or the other party's nick
    for private messages (including our own, echoed, private messages).
    """

    target: str
    sender: str
    text: str
    tags: Mapping[str, str] = dataclasses.field(default_factory=dict)
    kind: str = "privmsg"  # privmsg, notice, action
    own: bool = False


@dataclasses.dataclass(frozen=True)
class MembershipChanged(Event):
    """Someone joined, left, was renamed or had their membership modes changed."""

    channel: str
    diff: MembershipDiff


@dataclasses.dataclass(frozen=True)
class TopicChanged(Event):
    """The topic of a channel was set or shown."""

    channel: str
    topic: str | None
    setter: str | None = None


@dataclasses.dataclass(frozen=True)
class NicknameChanged(Event):
    """Our own nickname changed after registration."""

    old: str
    new: str


@dataclasses.dataclass(frozen=True)
class BatchReceived(Event):
    """A complete IRCv3 batch; events are the translated messages, in arrival order."""

    reference: str
    batch_type: str
    params: tuple[str, ...]
    messages: tuple[IRCMessage, ...]
    events: tuple[Event, ...]
    error: str | None = None


@dataclasses.dataclass(frozen=True)
class ServerReply(Event):
    """A numeric reply that is not consumed internally, e.g. the MOTD or a WHOIS line."""

    numeric: str
    params: tuple[str, ...]


@dataclasses.dataclass(frozen=True)
class Disconnected(Event):
    """The connection is gone; retry_delay is None when no reconnect will happen."""

    reason: str
    retry_delay: float | None = None


@dataclasses.dataclass(frozen=True)
class ReconnectScheduled(Event):
    """A new connection attempt will be made after delay seconds."""

    delay: float
