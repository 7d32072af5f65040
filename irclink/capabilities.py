"""IRCv3 capability negotiation (CAP LS/REQ/ACK/NAK/END, NEW/DEL).

The negotiator is a plain state machine: it consumes CAP messages and returns
the messages to send in response. It never talks to the network itself.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
import enum
from collections.abc import Iterable

import structlog

from .message import MAX_LINE_LENGTH, IRCMessage

logger = structlog.get_logger()

CAP_VERSION = "302"

# capabilities this implementation knows how to handle
SUPPORTED_CAPABILITIES = frozenset(
    {
        "account-notify",
        "account-tag",
        "away-notify",
        "batch",
        "cap-notify",
        "chghost",
        "echo-message",
        "extended-join",
        "invite-notify",
        "message-tags",
        "multi-prefix",
        "sasl",
        "server-time",
        "setname",
        "userhost-in-names",
    }
)


class CapState(enum.Enum):
    """State of a single capability."""

    UNKNOWN = "unknown"
    REQUESTED = "requested"
    ACKED = "acked"
    NAKKED = "nakked"
    DISABLED = "disabled"


class NegotiationState(enum.Enum):
    """State of the negotiation as a whole."""

    IDLE = "idle"
    AWAITING_LS = "awaiting-ls"
    REQUESTING = "requesting"
    AWAITING_ACK = "awaiting-ack"
    DONE = "done"


@dataclasses.dataclass
class Capability:
    """A capability advertised by the server."""

    name: str
    value: str | None = None
    state: CapState = CapState.UNKNOWN

    @property
    def values(self) -> list[str]:
        """Return the comma-separated value as a list, e.g. the SASL mechanisms."""
        return self.value.split(",") if self.value else []


class CapNegotiator:
    """Drive the CAP exchange and keep track of the agreed capability set.

    If "sasl" gets acknowledged and authentication is wanted, CAP END is held
    back until end_authentication() is called, so that SASL runs before the
    server completes the registration.
    """

    def __init__(
        self,
        wanted: Iterable[str] = SUPPORTED_CAPABILITIES,
        *,
        sasl_mechanism: str | None = None,
        max_length: int = MAX_LINE_LENGTH,
    ) -> None:
        self.wanted = frozenset(wanted) & SUPPORTED_CAPABILITIES
        self.sasl_mechanism = sasl_mechanism
        self.max_length = max_length
        self.state = NegotiationState.IDLE
        self.capabilities: dict[str, Capability] = {}
        self._pending: set[str] = set()
        self._authenticating = False
        self.log = logger.new()

    def start(self) -> list[IRCMessage]:
        """Begin the negotiation."""
        self.state = NegotiationState.AWAITING_LS
        return [IRCMessage("CAP", ["LS", CAP_VERSION])]

    @property
    def done(self) -> bool:
        """Return True once CAP END has been sent (or CAP is not supported at all)."""
        return self.state is NegotiationState.DONE

    @property
    def enabled(self) -> frozenset[str]:
        """Return the names of the capabilities currently in effect."""
        return frozenset(name for name, cap in self.capabilities.items() if cap.state is CapState.ACKED)

    def is_enabled(self, name: str) -> bool:
        """Return True if a capability is currently in effect."""
        cap = self.capabilities.get(name)
        return cap is not None and cap.state is CapState.ACKED

    @property
    def needs_authentication(self) -> bool:
        """Return True when SASL was acked and CAP END waits for authentication to conclude."""
        return self._authenticating

    def handle(self, msg: IRCMessage) -> list[IRCMessage]:
        """Handle a CAP message from the server, returning what to send in response."""
        try:
            subcommand = msg.params[1].upper()
        except IndexError:
            self.log.debug("Ignoring CAP message without a subcommand", params=msg.params)
            return []

        handler = getattr(self, f"_handle_{subcommand.lower()}", None)
        if not handler:
            self.log.debug("Ignoring unknown CAP subcommand", subcommand=subcommand)
            return []
        return handler(msg.params[2:])  # type: ignore[no-any-return]

    def unsupported(self) -> list[IRCMessage]:
        """Handle servers that do not implement CAP at all (421/451 in response to CAP LS)."""
        if self.state is not NegotiationState.AWAITING_LS:
            return []
        self.log.info("Server does not support capability negotiation")
        self.state = NegotiationState.DONE
        return []

    def end_authentication(self) -> list[IRCMessage]:
        """Conclude the SASL step; CAP END is sent if nothing else is pending."""
        self._authenticating = False
        return self._maybe_end()

    @staticmethod
    def _parse_caps(caps: str) -> Iterable[tuple[str, str | None]]:
        for token in caps.split():
            name, has_value, value = token.partition("=")
            yield name, value if has_value else None

    def _advertise(self, caps: str) -> None:
        for name, value in self._parse_caps(caps):
            cap = self.capabilities.get(name)
            if cap is None:
                self.capabilities[name] = Capability(name, value)
            else:
                cap.value = value

    def _wants(self, cap: Capability) -> bool:
        if cap.name not in self.wanted or cap.state is not CapState.UNKNOWN:
            return False
        if cap.name == "sasl":
            if not self.sasl_mechanism:
                return False
            # CAP LS 302 may advertise the mechanisms; older servers do not
            if cap.values and self.sasl_mechanism.upper() not in (mech.upper() for mech in cap.values):
                self.log.warning("SASL mechanism not offered by server", mechanism=self.sasl_mechanism)
                return False
        return True

    def _request(self, names: list[str]) -> list[IRCMessage]:
        """Build CAP REQ messages, splitting them so that each fits in a line."""
        # "CAP REQ :" plus CRLF
        room = self.max_length - len("CAP REQ :") - 2
        batches: list[list[str]] = []
        current: list[str] = []
        length = 0
        for name in names:
            extra = len(name) + (1 if current else 0)
            if current and length + extra > room:
                batches.append(current)
                current, length = [], 0
                extra = len(name)
            current.append(name)
            length += extra
        if current:
            batches.append(current)

        for name in names:
            self.capabilities[name].state = CapState.REQUESTED
            self._pending.add(name)
        return [IRCMessage("CAP", ["REQ", " ".join(batch)]) for batch in batches]

    def _maybe_end(self) -> list[IRCMessage]:
        if self.state is not NegotiationState.AWAITING_ACK or self._pending:
            return []
        if self._authenticating:
            return []
        self.state = NegotiationState.DONE
        self.log.info("Capability negotiation finished", capabilities=sorted(self.enabled))
        return [IRCMessage("CAP", ["END"])]

    def _handle_ls(self, params: list[str]) -> list[IRCMessage]:
        # multi-line replies are "CAP * LS * :caps", the final line has no "*"
        continuation = len(params) > 1 and params[0] == "*"
        self._advertise(params[-1] if params else "")
        if continuation:
            return []

        if self.state is not NegotiationState.AWAITING_LS:
            self.log.debug("Unsolicited CAP LS reply")
            return []

        self.state = NegotiationState.REQUESTING
        names = sorted(name for name, cap in self.capabilities.items() if self._wants(cap))
        self.log.debug("Server capabilities", advertised=sorted(self.capabilities), requesting=names)
        self.state = NegotiationState.AWAITING_ACK
        if not names:
            return self._maybe_end()
        return self._request(names)

    def _handle_ack(self, params: list[str]) -> list[IRCMessage]:
        for name, _ in self._parse_caps(params[-1] if params else ""):
            disable = name.startswith("-")
            name = name.lstrip("-~=")
            cap = self.capabilities.setdefault(name, Capability(name))
            cap.state = CapState.DISABLED if disable else CapState.ACKED
            self._pending.discard(name)
            if name == "sasl" and not disable and self.state is NegotiationState.AWAITING_ACK:
                self._authenticating = True
            self.log.debug("Capability acknowledged", capability=name, enabled=not disable)
        return self._maybe_end()

    def _handle_nak(self, params: list[str]) -> list[IRCMessage]:
        for name, _ in self._parse_caps(params[-1] if params else ""):
            name = name.lstrip("-~=")
            cap = self.capabilities.setdefault(name, Capability(name))
            cap.state = CapState.NAKKED
            self._pending.discard(name)
            self.log.info("Capability rejected by server", capability=name)
        return self._maybe_end()

    def _handle_new(self, params: list[str]) -> list[IRCMessage]:
        caps = params[-1] if params else ""
        self._advertise(caps)
        for name, _ in self._parse_caps(caps):
            if self.capabilities[name].state is CapState.DISABLED:
                self.capabilities[name].state = CapState.UNKNOWN  # removed earlier, now back
        if not self.done:
            return []
        names = sorted(
            name
            for name, _ in self._parse_caps(caps)
            if name != "sasl" and self._wants(self.capabilities[name])
        )
        self.log.info("New capabilities advertised", capabilities=caps, requesting=names)
        return self._request(names) if names else []

    def _handle_del(self, params: list[str]) -> list[IRCMessage]:
        for name, _ in self._parse_caps(params[-1] if params else ""):
            cap = self.capabilities.get(name)
            if cap is None:
                continue
            if cap.state is CapState.ACKED:
                cap.state = CapState.DISABLED
            else:
                del self.capabilities[name]
            self._pending.discard(name)
            self.log.info("Capability removed by server", capability=name)
        return self._maybe_end()

    def _handle_list(self, params: list[str]) -> list[IRCMessage]:
        self.log.debug("Enabled capabilities", capabilities=params[-1] if params else "")
        return []
