"""Exception hierarchy.

Errors are split by how far they are allowed to travel:

* ProtocolError and its subclasses are absorbed by the connection: the
  offending line is logged and dropped, and the connection carries on.
* TransportError tears the connection down; a reconnect is scheduled.
* NegotiationError tears the connection down, but does not schedule a
  reconnect, as retrying with the same profile would fail the same way.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations


class IRCLinkError(Exception):
    """Base class for all exceptions raised by this package."""


class TransportError(IRCLinkError):
    """Connect, read, write or TLS failure of the underlying stream."""


class ProtocolError(IRCLinkError):
    """A non-fatal protocol violation, e.g. a line that could not be parsed."""


class MalformedLine(ProtocolError):
    """A line received from the server that does not follow the IRC grammar."""

    def __init__(self, reason: str, line: str | bytes = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.line = line


class MessageTooLong(ProtocolError):
    """A message that would not fit in the negotiated line length."""

    def __init__(self, length: int, limit: int) -> None:
        super().__init__(f"Message too long ({length} > {limit} bytes)")
        self.length = length
        self.limit = limit


class BatchError(ProtocolError):
    """An unmatched, duplicate or overflowing IRCv3 batch."""


class NegotiationError(IRCLinkError):
    """Registration could not be completed with the given profile."""


class SaslFailed(NegotiationError):
    """SASL authentication failed, and the profile does not allow falling back."""


class NicknameExhausted(NegotiationError):
    """All nickname candidates were rejected by the server."""


class RegistrationRejected(NegotiationError):
    """The server refused the registration, e.g. wrong password or banned."""
