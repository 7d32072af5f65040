"""Connection registration: PASS/NICK/USER and nickname collision handling."""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import enum
from collections.abc import Sequence

import structlog

from .errors import NicknameExhausted, RegistrationRejected
from .message import IRCMessage
from .numerics import ERR, NICKNAME_REJECTED, RPL

logger = structlog.get_logger()


class RegistrationState(enum.Enum):
    """Lifecycle of a connection, from the first byte up to RPL_WELCOME."""

    CONNECTING = "connecting"
    NEGOTIATING_CAPABILITIES = "negotiating-capabilities"
    AUTHENTICATING = "authenticating"
    SENDING_REGISTRATION = "sending-registration"
    WAITING_WELCOME = "waiting-welcome"
    REGISTERED = "registered"
    FAILED = "failed"


class FailureReason(enum.Enum):
    """Why a registration ended up in the FAILED state."""

    NICKNAME_EXHAUSTED = "nickname exhausted"
    CONNECTION_LOST = "connection lost"
    SASL_FAILED = "SASL authentication failed"
    PASSWORD_MISMATCH = "password incorrect"
    BANNED = "banned from server"


# forward-only, except for the nickname retry loop (WAITING_WELCOME → SENDING_REGISTRATION)
_TRANSITIONS = {
    RegistrationState.CONNECTING: {RegistrationState.NEGOTIATING_CAPABILITIES},
    RegistrationState.NEGOTIATING_CAPABILITIES: {
        RegistrationState.AUTHENTICATING,
        RegistrationState.SENDING_REGISTRATION,
    },
    RegistrationState.AUTHENTICATING: {RegistrationState.SENDING_REGISTRATION},
    RegistrationState.SENDING_REGISTRATION: {RegistrationState.WAITING_WELCOME},
    RegistrationState.WAITING_WELCOME: {RegistrationState.SENDING_REGISTRATION, RegistrationState.REGISTERED},
    RegistrationState.REGISTERED: set(),
    RegistrationState.FAILED: set(),
}


def fallback_nickname(nickname: str, attempt: int, nicklen: int | None = None) -> str:
    """Return the n-th fallback for a nickname: nick → nick1 → nick2…

    The base is shortened when needed so that the result fits in nicklen.
    """
    suffix = str(attempt)
    base = nickname
    if nicklen is not None and len(base) + len(suffix) > nicklen:
        base = base[: max(nicklen - len(suffix), 1)]
    return base + suffix


class Registration:
    """Registration state of a single connection.

    The same instance tracks the negotiation phases (capabilities and
    authentication, driven from the outside through advance()) and handles
    the NICK/USER exchange itself.
    """

    def __init__(
        self,
        nickname: str,
        username: str,
        realname: str,
        *,
        password: str | None = None,
        alt_nicknames: Sequence[str] = (),
        max_retries: int = 3,
        nicklen: int | None = None,
    ) -> None:
        self.nickname = nickname
        self.username = username
        self.realname = realname
        self.password = password
        self.alt_nicknames = list(alt_nicknames)
        self.max_retries = max_retries
        self.nicklen = nicklen

        self.state = RegistrationState.CONNECTING
        self.failure: FailureReason | None = None
        self.retries = 0
        self.tried = [nickname]
        self.log = logger.new()

    @property
    def registered(self) -> bool:
        """Return True after RPL_WELCOME."""
        return self.state is RegistrationState.REGISTERED

    @property
    def terminal(self) -> bool:
        """Return True if the registration can no longer make progress."""
        return self.state in (RegistrationState.REGISTERED, RegistrationState.FAILED)

    def advance(self, state: RegistrationState) -> None:
        """Move to a new state; raises RuntimeError on a transition that is not allowed."""
        if state is self.state:
            return
        if state is RegistrationState.FAILED and not self.terminal:
            self.state = state
            return
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid registration transition: {self.state.name} → {state.name}")
        self.log.debug("Registration state changed", old=self.state.value, new=state.value)
        self.state = state

    def fail(self, reason: FailureReason) -> None:
        """Put the registration in its terminal FAILED state."""
        if self.terminal:
            return
        self.advance(RegistrationState.FAILED)
        self.failure = reason
        self.log.warning("Registration failed", reason=reason.value)

    def connection_lost(self) -> None:
        """Record that the transport went away before RPL_WELCOME."""
        self.fail(FailureReason.CONNECTION_LOST)

    def start(self) -> list[IRCMessage]:
        """Send PASS (if any), NICK and USER."""
        self.advance(RegistrationState.SENDING_REGISTRATION)
        messages = []
        if self.password:
            messages.append(IRCMessage("PASS", [self.password]))
        messages.append(IRCMessage("NICK", [self.nickname]))
        messages.append(IRCMessage("USER", [self.username, "0", "*", self.realname]))
        self.advance(RegistrationState.WAITING_WELCOME)
        return messages

    def next_nickname(self) -> str | None:
        """Return the next nickname candidate, distinct from all the previous ones, or None when exhausted."""
        if self.retries >= self.max_retries:
            return None
        self.retries += 1
        while self.alt_nicknames:
            candidate = self.alt_nicknames.pop(0)
            if candidate not in self.tried:
                return candidate
        attempt = self.retries
        candidate = fallback_nickname(self.tried[0], attempt, self.nicklen)
        while candidate in self.tried:
            attempt += 1
            candidate = fallback_nickname(self.tried[0], attempt, self.nicklen)
        return candidate

    def handle(self, msg: IRCMessage) -> list[IRCMessage]:
        """Handle a reply received while waiting for RPL_WELCOME.

        Raises NicknameExhausted or RegistrationRejected on terminal failures.
        """
        if self.state is not RegistrationState.WAITING_WELCOME:
            return []

        if msg.command == str(RPL.WELCOME):
            if msg.params:
                self.nickname = msg.params[0]  # the server may have changed/truncated it
            self.advance(RegistrationState.REGISTERED)
            self.log.info("Registered", nickname=self.nickname)
            return []

        if msg.command in NICKNAME_REJECTED:
            rejected = msg.params[1] if len(msg.params) > 2 else self.nickname
            candidate = self.next_nickname()
            if candidate is None:
                self.fail(FailureReason.NICKNAME_EXHAUSTED)
                raise NicknameExhausted(f"No nickname accepted (tried {', '.join(self.tried)})")
            self.log.info("Nickname rejected, trying another", rejected=rejected, candidate=candidate)
            self.advance(RegistrationState.SENDING_REGISTRATION)
            self.nickname = candidate
            self.tried.append(candidate)
            self.advance(RegistrationState.WAITING_WELCOME)
            return [IRCMessage("NICK", [candidate])]

        if msg.command == str(ERR.PASSWDMISMATCH):
            self.fail(FailureReason.PASSWORD_MISMATCH)
            raise RegistrationRejected(msg.params[-1] if msg.params else FailureReason.PASSWORD_MISMATCH.value)

        if msg.command == str(ERR.YOUREBANNEDCREEP):
            self.fail(FailureReason.BANNED)
            raise RegistrationRejected(msg.params[-1] if msg.params else FailureReason.BANNED.value)

        return []
