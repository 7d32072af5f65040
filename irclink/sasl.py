"""SASL authentication, run within capability negotiation.

Supports the PLAIN and EXTERNAL mechanisms. As with the other negotiation
steps, the Authenticator consumes messages and returns messages to send.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import base64
import enum

import structlog

from .message import IRCMessage
from .numerics import RPL, SASL_FAILURE, SASL_SUCCESS

logger = structlog.get_logger()

# AUTHENTICATE payloads are split in chunks of this size
CHUNK_SIZE = 400

MECHANISMS = ("PLAIN", "EXTERNAL")


class SaslOutcome(enum.Enum):
    """Terminal outcome of an authentication attempt."""

    SUCCESS = "success"
    FAILURE = "failure"


class Authenticator:
    """Run a single SASL exchange; a failed mechanism is never retried."""

    def __init__(self, mechanism: str, username: str = "", password: str = "", authzid: str = "") -> None:
        mechanism = mechanism.upper()
        if mechanism not in MECHANISMS:
            raise ValueError(f"Unsupported SASL mechanism: {mechanism}")
        self.mechanism = mechanism
        self.username = username
        self.password = password
        self.authzid = authzid
        self.started = False
        self.outcome: SaslOutcome | None = None
        self.reason = ""
        self.server_mechanisms: list[str] = []
        self.log = logger.new(mechanism=mechanism)

    @property
    def concluded(self) -> bool:
        """Return True once a terminal numeric has been received."""
        return self.outcome is not None

    def start(self) -> list[IRCMessage]:
        """Announce the mechanism to the server."""
        self.started = True
        self.log.debug("Starting SASL authentication")
        return [IRCMessage("AUTHENTICATE", [self.mechanism])]

    def payload(self) -> bytes:
        """Return the raw (not base64-encoded) response to the server's challenge."""
        if self.mechanism == "PLAIN":
            return b"\0".join(part.encode("utf8") for part in (self.authzid, self.username, self.password))
        return b""  # EXTERNAL: identity comes from the TLS client certificate

    def respond(self) -> list[IRCMessage]:
        """Return the AUTHENTICATE messages carrying the response, chunked."""
        encoded = base64.b64encode(self.payload()).decode("ascii")
        chunks = [encoded[i : i + CHUNK_SIZE] for i in range(0, len(encoded), CHUNK_SIZE)]
        # an empty response, or one that ends on a chunk boundary, is terminated with "+"
        if not chunks or len(chunks[-1]) == CHUNK_SIZE:
            chunks.append("+")
        return [IRCMessage("AUTHENTICATE", [chunk]) for chunk in chunks]

    def handle(self, msg: IRCMessage) -> list[IRCMessage]:
        """Handle AUTHENTICATE and SASL numerics, returning what to send in response."""
        if self.concluded:
            return []

        if msg.command == "AUTHENTICATE":
            if msg.params and msg.params[0] == "+":
                return self.respond()
            self.log.debug("Ignoring unexpected SASL challenge", params=msg.params)
            return []

        if msg.command == str(RPL.SASLMECHS):
            self.server_mechanisms = msg.params[1].split(",") if len(msg.params) > 1 else []
            self.log.info("Server SASL mechanisms", mechanisms=self.server_mechanisms)
        elif msg.command in SASL_SUCCESS:
            self.outcome = SaslOutcome.SUCCESS
            self.log.info("SASL authentication successful")
        elif msg.command in SASL_FAILURE:
            self.outcome = SaslOutcome.FAILURE
            self.reason = msg.params[-1] if msg.params else "SASL authentication failed"
            self.log.warning("SASL authentication failed", reason=self.reason, numeric=msg.command)
        return []
