"""Session state of a single connection.

The Session is updated by every inbound message, from a single task (the
connection's read loop). All nickname and channel comparisons go through the
server's casemapping; keys are re-folded whenever CASEMAPPING changes.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
from collections.abc import Iterator, MutableMapping
from typing import TypeVar

import structlog

from .batch import BatchArena
from .isupport import CaseMapping, ISupport
from .message import Hostmask, IRCMessage
from .modes import ModeChange, parse_channel_modes, parse_user_modes
from .numerics import IRCNumeric

logger = structlog.get_logger()

V = TypeVar("V")


class CaseMappedDict(MutableMapping[str, V]):
    """A dict keyed by nickname/channel names, compared under a casemapping.

    Iteration yields the names as last set, e.g. with their original case.
    """

    def __init__(self, casemapping: CaseMapping) -> None:
        self.casemapping = casemapping
        self._data: dict[str, tuple[str, V]] = {}

    def __getitem__(self, key: str) -> V:
        """Return the value for a name."""
        return self._data[self.casemapping.fold(key)][1]

    def __setitem__(self, key: str, value: V) -> None:
        """Set the value for a name."""
        self._data[self.casemapping.fold(key)] = (key, value)

    def __delitem__(self, key: str) -> None:
        """Remove a name."""
        del self._data[self.casemapping.fold(key)]

    def __iter__(self) -> Iterator[str]:
        """Iterate over the names, as originally given."""
        return (name for name, _ in self._data.values())

    def __len__(self) -> int:
        """Return the number of names."""
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        """Return True if a name (under the casemapping) is present."""
        return isinstance(key, str) and self.casemapping.fold(key) in self._data

    def __repr__(self) -> str:
        """Return a representation with the original names."""
        return f"{self.__class__.__name__}({dict(self.items())!r})"

    def name(self, key: str) -> str:
        """Return the name as stored, e.g. "#Chan" for a lookup of "#chan"."""
        return self._data[self.casemapping.fold(key)][0]

    def rename(self, old: str, new: str) -> None:
        """Move a value to a new name."""
        value = self.pop(old)
        self[new] = value

    def set_casemapping(self, casemapping: CaseMapping) -> None:
        """Change the casemapping and re-fold every key."""
        items = list(self._data.values())
        self.casemapping = casemapping
        self._data = {}
        for name, value in items:
            self[name] = value


@dataclasses.dataclass
class User:
    """A user seen in at least one common channel."""

    nick: str
    user: str | None = None
    host: str | None = None
    account: str | None = None
    realname: str | None = None
    away: str | None = None

    def update(self, hostmask: Hostmask) -> None:
        """Fill in user@host from a message source."""
        if hostmask.user is not None:
            self.user = hostmask.user
        if hostmask.host is not None:
            self.host = hostmask.host


@dataclasses.dataclass
class Member:
    """A channel member, with its membership modes (e.g. "ov"), highest first."""

    nick: str
    modes: str = ""


@dataclasses.dataclass
class Channel:
    """A channel we are in."""

    name: str
    members: CaseMappedDict[Member]
    topic: str | None = None
    topic_setter: str | None = None
    topic_time: int | None = None
    # B/C/D modes and their parameters; A (list) modes are kept separately
    modes: dict[str, str | None] = dataclasses.field(default_factory=dict)
    lists: dict[str, list[str]] = dataclasses.field(default_factory=dict)

    @property
    def mode_string(self) -> str:
        """Return the current modes in MODE syntax, e.g. "+kl key 10"."""
        letters = sorted(self.modes)
        arguments = [self.modes[letter] or "" for letter in letters if self.modes[letter] is not None]
        return " ".join(["+" + "".join(letters), *arguments])


@dataclasses.dataclass(frozen=True)
class MembershipDiff:
    """A change in the membership of a channel."""

    kind: str  # join, part, kick, quit, nick, mode, names
    joined: tuple[str, ...] = ()
    left: tuple[str, ...] = ()
    renamed: tuple[tuple[str, str], ...] = ()
    modes: tuple[ModeChange, ...] = ()
    actor: str | None = None
    reason: str | None = None


class Session:
    """All the state derived from the server's messages on one connection."""

    def __init__(self, nickname: str = "*", *, batch_max_messages: int = 5000, batch_max_age: float = 120.0) -> None:
        self.nickname = nickname
        self.isupport = ISupport()
        self.capabilities: frozenset[str] = frozenset()
        self.user_modes: set[str] = set()
        casemapping = self.isupport.casemapping
        self.channels: CaseMappedDict[Channel] = CaseMappedDict(casemapping)
        self.users: CaseMappedDict[User] = CaseMappedDict(casemapping)
        self.batches = BatchArena(max_messages=batch_max_messages, max_age=batch_max_age)
        self._names: CaseMappedDict[list[str]] = CaseMappedDict(casemapping)
        self.log = logger.new()

    @property
    def casemapping(self) -> CaseMapping:
        """Return the casemapping in effect."""
        return self.isupport.casemapping

    def is_me(self, nick: str | None) -> bool:
        """Return True if a nickname is our own."""
        return nick is not None and self.casemapping.equals(nick, self.nickname)

    def is_channel(self, target: str) -> bool:
        """Return True if a target (possibly with a STATUSMSG prefix) is a channel."""
        return self.isupport.is_channel(target.lstrip(self.isupport.statusmsg))

    def member(self, channel: str, nick: str) -> Member | None:
        """Return a member of a channel, or None."""
        try:
            return self.channels[channel].members[nick]
        except KeyError:
            return None

    def apply(self, msg: IRCMessage) -> dict[str, MembershipDiff]:
        """Update the state with an inbound message.

        Returns the membership changes it caused, keyed by channel name.
        """
        numeric = IRCNumeric.lookup(msg.command)
        name = repr(numeric).lower() if numeric else msg.command.lower()
        handler = getattr(self, f"_apply_{name}", None)
        if not handler:
            return {}
        try:
            return handler(msg) or {}  # type: ignore[no-any-return]
        except IndexError:
            self.log.debug("Not enough parameters", command=msg.command, params=msg.params)
            return {}

    def _set_casemapping(self, casemapping: CaseMapping) -> None:
        self.log.debug("Casemapping changed", casemapping=casemapping.value)
        for mapping in (self.channels, self.users, self._names):
            mapping.set_casemapping(casemapping)
        for channel in self.channels.values():
            channel.members.set_casemapping(casemapping)

    def _user(self, nick: str) -> User:
        if nick not in self.users:
            self.users[nick] = User(nick)
        return self.users[nick]

    def _forget(self, nick: str) -> None:
        """Forget a user once we share no channel with them anymore."""
        if self.is_me(nick):
            return
        if not any(nick in channel.members for channel in self.channels.values()):
            self.users.pop(nick, None)

    def _add_member(self, channel: Channel, nick: str, modes: str = "") -> None:
        member = channel.members.get(nick)
        if member is None:
            channel.members[nick] = Member(nick, modes)
        elif modes:
            member.modes = self._sort_modes(set(member.modes) | set(modes))

    def _sort_modes(self, modes: set[str]) -> str:
        prefix = self.isupport.prefix
        return "".join(sorted(modes, key=prefix.rank))

    def _apply_rpl_welcome(self, msg: IRCMessage) -> None:
        self.nickname = msg.params[0]

    def _apply_rpl_isupport(self, msg: IRCMessage) -> None:
        old = self.isupport.casemapping
        # first parameter is our nick, last one is "are supported by this server"
        self.isupport.update(msg.params[1:-1])
        if self.isupport.casemapping is not old:
            self._set_casemapping(self.isupport.casemapping)

    def _apply_rpl_umodeis(self, msg: IRCMessage) -> None:
        self.user_modes = {change.letter for change in parse_user_modes(msg.params[1]) if change.adding}

    def _apply_join(self, msg: IRCMessage) -> dict[str, MembershipDiff]:
        hostmask = msg.hostmask
        if hostmask is None:
            return {}
        name = msg.params[0]
        if self.is_me(hostmask.nick) and name not in self.channels:
            self.channels[name] = Channel(name, CaseMappedDict(self.casemapping))
            self.log.info("Joined channel", channel=name)
        channel = self.channels.get(name)
        if channel is None:
            self.log.debug("JOIN for a channel we are not in", channel=name, nick=hostmask.nick)
            return {}

        user = self._user(hostmask.nick)
        user.update(hostmask)
        if len(msg.params) >= 3:  # extended-join
            user.account = None if msg.params[1] == "*" else msg.params[1]
            user.realname = msg.params[2]
        self._add_member(channel, hostmask.nick)
        return {channel.name: MembershipDiff("join", joined=(hostmask.nick,))}

    def _apply_part(self, msg: IRCMessage) -> dict[str, MembershipDiff]:
        nick = msg.nick
        if nick is None:
            return {}
        reason = msg.params[1] if len(msg.params) > 1 else None
        diffs = {}
        for name in msg.params[0].split(","):
            channel = self.channels.get(name)
            if channel is None:
                continue
            if self.is_me(nick):
                del self.channels[name]
                self.log.info("Left channel", channel=channel.name)
            else:
                channel.members.pop(nick, None)
            diffs[channel.name] = MembershipDiff("part", left=(nick,), reason=reason)
        for name in list(self.users) if self.is_me(nick) else [nick]:
            self._forget(name)
        return diffs

    def _apply_kick(self, msg: IRCMessage) -> dict[str, MembershipDiff]:
        name, target = msg.params[0], msg.params[1]
        reason = msg.params[2] if len(msg.params) > 2 else None
        channel = self.channels.get(name)
        if channel is None:
            return {}
        if self.is_me(target):
            del self.channels[name]
            self.log.info("Kicked from channel", channel=channel.name, by=msg.nick, reason=reason)
            for nick in list(self.users):
                self._forget(nick)
        else:
            channel.members.pop(target, None)
            self._forget(target)
        return {channel.name: MembershipDiff("kick", left=(target,), actor=msg.nick, reason=reason)}

    def _apply_quit(self, msg: IRCMessage) -> dict[str, MembershipDiff]:
        nick = msg.nick
        if nick is None:
            return {}
        reason = msg.params[0] if msg.params else None
        diffs = {}
        for channel in self.channels.values():
            if channel.members.pop(nick, None) is not None:
                diffs[channel.name] = MembershipDiff("quit", left=(nick,), reason=reason)
        self.users.pop(nick, None)
        return diffs

    def _apply_nick(self, msg: IRCMessage) -> dict[str, MembershipDiff]:
        old, new = msg.nick, msg.params[0]
        if old is None:
            return {}
        if self.is_me(old):
            self.log.info("Nickname changed", old=old, new=new)
            self.nickname = new
        if old in self.users:
            self.users.rename(old, new)
            self.users[new].nick = new
        diffs = {}
        for channel in self.channels.values():
            if old in channel.members:
                channel.members.rename(old, new)
                channel.members[new].nick = new
                diffs[channel.name] = MembershipDiff("nick", renamed=((old, new),))
        return diffs

    def _apply_mode(self, msg: IRCMessage) -> dict[str, MembershipDiff]:
        target = msg.params[0]
        if not self.is_channel(target):
            if self.is_me(target) and len(msg.params) > 1:
                for change in parse_user_modes(msg.params[1]):
                    if change.adding:
                        self.user_modes.add(change.letter)
                    else:
                        self.user_modes.discard(change.letter)
            return {}

        channel = self.channels.get(target)
        if channel is None or len(msg.params) < 2:
            return {}
        changes = parse_channel_modes(msg.params[1], msg.params[2:], self.isupport.chanmodes, self.isupport.prefix)
        prefix_changes = self._apply_channel_modes(channel, changes)
        if not prefix_changes:
            return {}
        return {channel.name: MembershipDiff("mode", modes=tuple(prefix_changes), actor=msg.nick)}

    def _apply_channel_modes(self, channel: Channel, changes: list[ModeChange]) -> list[ModeChange]:
        """Apply mode changes to a channel; return the changes that affected members."""
        prefix = self.isupport.prefix
        chanmodes = self.isupport.chanmodes
        prefix_changes = []
        for change in changes:
            if change.letter in prefix.modes:
                member = channel.members.get(change.argument or "")
                if member is None:
                    continue
                modes = set(member.modes)
                if change.adding:
                    modes.add(change.letter)
                else:
                    modes.discard(change.letter)
                member.modes = self._sort_modes(modes)
                prefix_changes.append(change)
            elif chanmodes.kind(change.letter) == "A":
                if change.argument is None:
                    continue  # list query
                entries = channel.lists.setdefault(change.letter, [])
                if change.adding and change.argument not in entries:
                    entries.append(change.argument)
                elif not change.adding and change.argument in entries:
                    entries.remove(change.argument)
            elif change.adding:
                channel.modes[change.letter] = change.argument
            else:
                channel.modes.pop(change.letter, None)
        return prefix_changes

    def _apply_rpl_channelmodeis(self, msg: IRCMessage) -> None:
        channel = self.channels.get(msg.params[1])
        if channel is None:
            return
        changes = parse_channel_modes(msg.params[2], msg.params[3:], self.isupport.chanmodes, self.isupport.prefix)
        channel.modes.clear()
        self._apply_channel_modes(channel, changes)

    def _apply_topic(self, msg: IRCMessage) -> None:
        channel = self.channels.get(msg.params[0])
        if channel is None:
            return
        channel.topic = msg.params[1] if len(msg.params) > 1 else ""
        channel.topic_setter = msg.nick
        channel.topic_time = None

    def _apply_rpl_topic(self, msg: IRCMessage) -> None:
        channel = self.channels.get(msg.params[1])
        if channel is not None:
            channel.topic = msg.params[2]

    def _apply_rpl_notopic(self, msg: IRCMessage) -> None:
        channel = self.channels.get(msg.params[1])
        if channel is not None:
            channel.topic = None

    def _apply_rpl_topicwhotime(self, msg: IRCMessage) -> None:
        channel = self.channels.get(msg.params[1])
        if channel is None:
            return
        channel.topic_setter = Hostmask.parse(msg.params[2]).nick
        try:
            channel.topic_time = int(msg.params[3])
        except ValueError:
            channel.topic_time = None

    def _apply_rpl_namreply(self, msg: IRCMessage) -> None:
        # "<client> <symbol> <channel> :[prefix]<nick>{ [prefix]<nick>}"
        name = msg.params[2]
        channel = self.channels.get(name)
        if channel is None:
            return
        prefix = self.isupport.prefix
        names = self._names.setdefault(name, [])
        for entry in msg.params[3].split():
            stripped = entry.lstrip(prefix.symbols)  # multi-prefix may give more than one
            modes = "".join(prefix.mode(symbol) or "" for symbol in entry[: len(entry) - len(stripped)])
            hostmask = Hostmask.parse(stripped)  # userhost-in-names
            if not hostmask.nick:
                continue
            self._user(hostmask.nick).update(hostmask)
            self._add_member(channel, hostmask.nick, modes)
            names.append(hostmask.nick)

    def _apply_rpl_endofnames(self, msg: IRCMessage) -> dict[str, MembershipDiff]:
        name = msg.params[1]
        names = self._names.pop(name, [])
        channel = self.channels.get(name)
        if channel is None:
            return {}
        return {channel.name: MembershipDiff("names", joined=tuple(names))}

    def _apply_chghost(self, msg: IRCMessage) -> None:
        nick = msg.nick
        if nick is not None and nick in self.users:
            self.users[nick].user, self.users[nick].host = msg.params[0], msg.params[1]

    def _apply_account(self, msg: IRCMessage) -> None:
        nick = msg.nick
        if nick is not None and nick in self.users:
            self.users[nick].account = None if msg.params[0] == "*" else msg.params[0]

    def _apply_away(self, msg: IRCMessage) -> None:
        nick = msg.nick
        if nick is not None and nick in self.users:
            self.users[nick].away = msg.params[0] if msg.params else None

    def _apply_setname(self, msg: IRCMessage) -> None:
        nick = msg.nick
        if nick is not None and nick in self.users:
            self.users[nick].realname = msg.params[0]
