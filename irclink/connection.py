"""Connection lifecycle: one transport, its read/write/keepalive tasks, and reconnection.

A Connection lives for as long as its transport: it owns the Session and the
negotiation state machines, and is never reused. The ConnectionManager creates
a fresh Connection for every attempt, and sleeps according to its Backoff in
between.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from typing import Any

import structlog

from .backoff import Backoff
from .batch import Batch
from .capabilities import CapNegotiator
from .config import ConnectionProfile
from .dispatcher import Dispatcher, Intent, Join
from .errors import NegotiationError, ProtocolError, SaslFailed, TransportError
from .events import (
    CapabilitiesNegotiated,
    Connected,
    Disconnected,
    Event,
    ReconnectScheduled,
    Registered,
)
from .message import MAX_TAGS_LENGTH, IRCMessage
from .numerics import ERR, RPL, SASL_FAILURE, SASL_SUCCESS
from .registration import FailureReason, Registration, RegistrationState
from .sasl import Authenticator, SaslOutcome
from .session import Session
from .throttle import TokenBucket
from .transport import open_transport

logger = structlog.get_logger()

# replies to "CAP LS" from servers that do not implement CAP
_CAP_UNSUPPORTED = frozenset(str(numeric) for numeric in (ERR.UNKNOWNCOMMAND, ERR.NOTREGISTERED))
_SASL_REPLIES = SASL_SUCCESS | SASL_FAILURE | {str(RPL.SASLMECHS)}

# batch types whose content is history, not live state
_HISTORY_BATCHES = frozenset(("chathistory", "draft/chathistory"))

# how long to wait for QUIT to be flushed out
QUIT_TIMEOUT = 5.0

Emitter = Callable[[Event], None]


class Connection:
    """A single connection to an IRC server, from connect until the transport goes away."""

    def __init__(self, name: str, profile: ConnectionProfile, emit: Emitter, metrics: dict[str, Any]) -> None:
        self.name = name
        self.profile = profile
        self.emit = emit
        self.metrics = metrics

        self.session = Session(
            profile.nickname,
            batch_max_messages=profile.batch_max_messages,
            batch_max_age=profile.batch_max_age,
        )
        self.registration = Registration(
            profile.nickname,
            profile.user,
            profile.real,
            password=profile.password,
            alt_nicknames=profile.alt_nicknames,
            max_retries=profile.nick_retries,
        )
        self.negotiator = CapNegotiator(profile.capabilities, sasl_mechanism=profile.sasl_mechanism)
        self.authenticator: Authenticator | None = None
        if profile.sasl_mechanism:
            self.authenticator = Authenticator(
                profile.sasl_mechanism,
                username=profile.sasl_account,
                password=profile.sasl_password or "",
            )
        self.dispatcher = Dispatcher(self.session)
        self.bucket = TokenBucket(profile.flood_burst, profile.flood_rate)

        self.queue: asyncio.Queue[IRCMessage] = asyncio.Queue()
        # intents submitted before registration, sent right after RPL_WELCOME
        self.pending: list[Intent] = []
        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None
        self.last_read = 0.0
        self.last_write = 0.0
        self._ping_sent: float | None = None
        # reason given by the server with ERROR
        self.error: str | None = None
        # set to send a QUIT before closing
        self.quit_reason: str | None = None

        self.log = logger.new(network=name, host=profile.host, port=profile.port)

    def __repr__(self) -> str:
        """Return a user-readable description of the connection."""
        return f"<{self.__class__.__name__} {self.name} {self.profile.host}:{self.profile.port}>"

    @property
    def line_length(self) -> int:
        """Return the maximum length of a line, tags excluded."""
        return self.dispatcher.line_length

    @property
    def tags_length(self) -> int:
        """Return the room for message tags: none at all until message-tags is in effect."""
        return MAX_TAGS_LENGTH if self.negotiator.is_enabled("message-tags") else 0

    async def run(self) -> None:
        """Connect, register and process messages until the connection is lost.

        Never returns normally: raises TransportError when the connection is
        lost, and NegotiationError when registering is not possible.
        """
        self.reader, self.writer = await open_transport(self.profile)
        loop = asyncio.get_running_loop()
        self.last_read = self.last_write = loop.time()
        self.metrics["connections"].labels(self.name).inc()
        self.log.info("Connected", tls=self.profile.tls)

        tasks: list[asyncio.Task[None]] = []
        try:
            self.emit(Connected(self.profile.host, self.profile.port, self.profile.tls))
            self.registration.advance(RegistrationState.NEGOTIATING_CAPABILITIES)
            self._write_all(self.negotiator.start())

            tasks = [
                asyncio.create_task(self._read_forever()),
                asyncio.create_task(self._write_forever()),
                asyncio.create_task(self._keepalive()),
            ]
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                task.result()
            raise TransportError("Connection closed")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            self.registration.connection_lost()
            self.metrics["connections"].labels(self.name).dec()
            if self.registration.registered:
                self.metrics["registered"].labels(self.name).dec()
            await self.close()

    async def close(self) -> None:
        """Close the transport, after sending QUIT if a reason was set."""
        if self.writer is None or self.writer.is_closing():
            return
        if self.quit_reason is not None:
            self._write(IRCMessage("QUIT", [self.quit_reason]))
            try:
                await asyncio.wait_for(self.writer.drain(), timeout=QUIT_TIMEOUT)
            except (OSError, asyncio.TimeoutError) as exc:
                self.log.debug("Could not flush QUIT", error=repr(exc))
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as exc:
            self.log.debug("Error while closing the connection", error=repr(exc))
        self.log.info("Connection closed")

    def submit(self, intent: Intent) -> None:
        """Queue an intent; before registration, hold it back until RPL_WELCOME."""
        if not self.registration.registered:
            self.pending.append(intent)
            return
        self._enqueue(intent)

    def _enqueue(self, intent: Intent) -> None:
        try:
            messages = self.dispatcher.to_messages(intent)
        except (ProtocolError, ValueError) as exc:
            self.log.warning("Dropping invalid intent", intent=repr(intent), error=str(exc))
            self.metrics["errors"].labels("intent").inc()
            return
        for msg in messages:
            self.queue.put_nowait(msg)

    def _write(self, msg: IRCMessage) -> None:
        """Write a message to the transport right away; used for protocol control messages and by the writer."""
        assert self.writer is not None
        try:
            data = msg.encode(max_length=self.line_length, max_tags_length=self.tags_length)
        except (ProtocolError, ValueError) as exc:
            self.log.warning("Dropping message that cannot be sent", command=msg.command, error=str(exc))
            self.metrics["errors"].labels("encode").inc()
            return
        if msg.command in ("PASS", "AUTHENTICATE"):
            self.log.debug("Data sent", command=msg.command)  # do not log credentials
        else:
            self.log.debug("Data sent", message=data.decode("utf8", errors="replace").rstrip("\r\n"))
        self.writer.write(data)
        self.last_write = asyncio.get_running_loop().time()
        self.metrics["lines_sent"].labels(self.name).inc()

    def _write_all(self, messages: Iterable[IRCMessage]) -> None:
        for msg in messages:
            self._write(msg)

    async def _write_forever(self) -> None:
        """Drain the outbound queue, at the pace the token bucket allows."""
        assert self.writer is not None
        while True:
            msg = await self.queue.get()
            await self.bucket.wait()
            self._write(msg)
            try:
                await self.writer.drain()
            except OSError as exc:
                raise TransportError(f"Write error: {exc.strerror or exc}") from exc

    async def _keepalive(self) -> None:
        """Send a PING when idle, and give up when it goes unanswered."""
        loop = asyncio.get_running_loop()
        interval, timeout = self.profile.ping_interval, self.profile.ping_timeout
        while True:
            await asyncio.sleep(min(interval, timeout) / 4)
            now = loop.time()
            if self._ping_sent is not None:
                if self.last_read >= self._ping_sent:
                    self._ping_sent = None
                elif now - self._ping_sent >= timeout:
                    self.log.warning("No reply to PING", timeout=timeout)
                    raise TransportError("Ping timeout")
            if self._ping_sent is None and now - self.last_write >= interval:
                self._write(IRCMessage("PING", [f"irclink-{int(now)}"]))
                self._ping_sent = now

    async def _read_forever(self) -> None:
        """Receive data from the server.

        Do some basic checking, then call _handle_line()
        """
        assert self.reader is not None
        while True:
            try:
                line = await self.reader.readline()
            except ValueError:
                self.log.warning("Line exceeded max length, ignoring")
                continue
            except OSError as exc:
                raise TransportError(f"Read error: {exc.strerror or exc}") from exc

            if not line:
                raise TransportError(self.error or "Connection closed by server")

            self.last_read = asyncio.get_running_loop().time()
            self._handle_line(line)

    def _handle_line(self, bline: bytes) -> None:
        """Handle a single line of input."""
        if not bline.strip():
            return

        try:
            msg = IRCMessage.decode(bline)
        except ProtocolError as exc:
            self.log.debug("Ignoring malformed line", error=str(exc), line=bline)
            self.metrics["errors"].labels("malformed").inc()
            return

        self.log.debug("Data received", message=str(msg) if msg.command != "AUTHENTICATE" else "AUTHENTICATE")
        self.metrics["lines_received"].labels(self.name).inc()

        try:
            self._route(msg)
        except NegotiationError:
            raise
        except ProtocolError as exc:
            self.log.info("Protocol error", error=str(exc), command=msg.command)
            self.metrics["errors"].labels("protocol").inc()
        except Exception:
            self.metrics["errors"].labels("internal").inc()
            self.log.exception("Internal error while handling message", command=msg.command)

        for batch in self.session.batches.expire():
            self._release_batch(batch)

    def _route(self, msg: IRCMessage) -> None:
        """Route a message to the component in charge, depending on the registration phase."""
        command = msg.command

        if command == "PING":
            self._write(IRCMessage("PONG", msg.params))
            return
        if command == "PONG":
            return
        if command == "ERROR":
            self.error = msg.params[-1] if msg.params else "Closing link"
            self.log.warning("Server error", reason=self.error)
            return
        if command == "CAP":
            self._handle_cap(msg)
            return
        if self._authenticating and (command == "AUTHENTICATE" or command in _SASL_REPLIES):
            self._handle_sasl(msg)
            return
        if command in _CAP_UNSUPPORTED and not self.negotiator.done:
            self._write_all(self.negotiator.unsupported())
            if self.negotiator.done:
                self._negotiation_finished()
            return

        if not self.registration.terminal:
            self._write_all(self.registration.handle(msg))
            if self.registration.registered:
                self._registered()

        if command == "BATCH":
            for batch in self.session.batches.handle(msg):
                self._release_batch(batch)
            return
        flushed = self.session.batches.add(msg)
        if flushed is not None:
            for batch in flushed:
                self._release_batch(batch)
            return

        for event in self._translate(msg):
            self.emit(event)

    @property
    def _authenticating(self) -> bool:
        return self.authenticator is not None and self.authenticator.started and not self.authenticator.concluded

    def _translate(self, msg: IRCMessage, apply: bool = True) -> list[Event]:
        diffs = self.session.apply(msg) if apply else {}
        return self.dispatcher.translate(msg, diffs)

    def _release_batch(self, batch: Batch) -> None:
        """Process the messages of a completed batch and emit them as one event."""
        live = batch.batch_type not in _HISTORY_BATCHES
        events: list[Event] = []
        for msg in batch.messages:
            events.extend(self._translate(msg, apply=live))
        self.emit(self.dispatcher.translate_batch(batch, events))

    def _handle_cap(self, msg: IRCMessage) -> None:
        was_done = self.negotiator.done
        before = self.negotiator.enabled
        self._write_all(self.negotiator.handle(msg))

        if self.negotiator.needs_authentication and self.authenticator and not self.authenticator.started:
            self.registration.advance(RegistrationState.AUTHENTICATING)
            self._write_all(self.authenticator.start())

        if not was_done:
            if self.negotiator.done:
                self._negotiation_finished()
        elif self.negotiator.enabled != before:
            # CAP NEW/DEL after registration
            self.session.capabilities = self.negotiator.enabled
            self.emit(CapabilitiesNegotiated(self.negotiator.enabled))

    def _handle_sasl(self, msg: IRCMessage) -> None:
        assert self.authenticator is not None
        self._write_all(self.authenticator.handle(msg))
        if not self.authenticator.concluded:
            return

        if self.authenticator.outcome is SaslOutcome.FAILURE:
            self.metrics["errors"].labels("sasl").inc()
            if not self.profile.sasl_fallback:
                self.registration.fail(FailureReason.SASL_FAILED)
                raise SaslFailed(self.authenticator.reason)
            self.log.warning("Continuing without authentication", reason=self.authenticator.reason)

        self._write_all(self.negotiator.end_authentication())
        if self.negotiator.done:
            self._negotiation_finished()

    def _negotiation_finished(self) -> None:
        """Send the registration commands, once CAP END is out."""
        self.session.capabilities = self.negotiator.enabled
        self.emit(CapabilitiesNegotiated(self.negotiator.enabled))
        self._write_all(self.registration.start())

    def _registered(self) -> None:
        self.metrics["registered"].labels(self.name).inc()
        self.emit(Registered(self.registration.nickname))

        for channel in self.profile.autojoin:
            self._enqueue(Join(channel))
        pending, self.pending = self.pending, []
        for intent in pending:
            self._enqueue(intent)


class ConnectionManager:
    """Keep a network connected: connect, and reconnect after failures until stopped."""

    def __init__(
        self,
        name: str,
        profile: ConnectionProfile,
        emit: Emitter,
        metrics: dict[str, Any],
        backoff: Backoff | None = None,
    ) -> None:
        self.name = name
        self.profile = profile
        self._emit = emit
        self.metrics = metrics
        self.backoff = backoff or Backoff(base=profile.reconnect_base, cap=profile.reconnect_max)
        self.connection: Connection | None = None
        self.task: asyncio.Task[None] | None = None
        self._stopping = False
        self._quit_reason = ""
        self.log = logger.new(network=name)

    def emit(self, event: Event) -> None:
        """Pass an event on; a successful registration also resets the backoff."""
        if isinstance(event, Registered):
            self.backoff.reset()
        self._emit(event)

    def submit(self, intent: Intent) -> None:
        """Hand an intent to the live connection, if any."""
        if self.connection is None or self._stopping:
            self.log.warning("Not connected, dropping intent", intent=repr(intent))
            return
        self.connection.submit(intent)

    async def stop(self, reason: str = "Leaving") -> None:
        """Disconnect (sending QUIT) and stop reconnecting."""
        self._stopping = True
        self._quit_reason = reason
        if self.connection is not None:
            self.connection.quit_reason = reason
        if self.task is not None and not self.task.done():
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)

    async def run(self) -> None:
        """Connection loop; returns after a fatal error, or when stopped."""
        try:
            await self._run_forever()
        except asyncio.CancelledError:
            if not self._stopping:
                raise
            self.log.info("Disconnected by request", reason=self._quit_reason)
            self.emit(Disconnected(self._quit_reason, None))

    async def _run_forever(self) -> None:
        while True:
            connection = Connection(self.name, self.profile, self.emit, self.metrics)
            self.connection = connection
            try:
                await connection.run()
            except NegotiationError as exc:
                self.log.error("Giving up on network", reason=str(exc), error=exc.__class__.__name__)
                self.metrics["errors"].labels("negotiation").inc()
                self.emit(Disconnected(str(exc), None))
                return
            except TransportError as exc:
                reason = str(exc)
            except Exception as exc:
                self.log.exception("Internal error in connection")
                self.metrics["errors"].labels("internal").inc()
                reason = f"Internal error: {exc!r}"
            finally:
                self.connection = None

            delay = self.backoff.next()
            self.log.info("Disconnected, reconnecting", reason=reason, delay=round(delay, 3))
            self.metrics["reconnects"].labels(self.name).inc()
            self.emit(Disconnected(reason, delay))
            self.emit(ReconnectScheduled(delay))
            await asyncio.sleep(delay)
