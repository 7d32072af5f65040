"""Scripted IRC server, used for testing.

The server does nothing on its own: every accepted connection is handed to
the test, which reads what the client sent and writes the replies it wants.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import TypeVar

from irclink.events import Event
from irclink.message import IRCMessage

SERVERNAME = "irc.example.org"

E = TypeVar("E", bound=Event)


async def expect_event(events: AsyncIterator[tuple[str, Event]], cls: type[E], timeout: float = 5) -> E:
    """Groks events until one of the given class is found."""
    while True:
        _, event = await asyncio.wait_for(events.__anext__(), timeout)
        if isinstance(event, cls):
            return event


class FakeClient:
    """The server side of a single client connection."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.received: list[IRCMessage] = []

    async def readmsg(self, timeout: float = 5) -> IRCMessage | None:
        """Read a single message; returns None once the client has closed the connection."""
        line = await asyncio.wait_for(self.reader.readline(), timeout)
        if not line:
            return None
        msg = IRCMessage.decode(line)
        self.received.append(msg)
        return msg

    async def expect(self, command: str, timeout: float = 5) -> IRCMessage:
        """Groks messages until one with the given command is found.

        Raises AssertionError if the client disconnects before that.
        """
        while True:
            msg = await self.readmsg(timeout)
            assert msg is not None, f"Connection closed while waiting for {command}"
            if msg.command == command:
                return msg

    def send(self, line: str) -> None:
        """Send a raw line to the client."""
        self.writer.write(line.encode("utf8") + b"\r\n")

    def reply(self, numeric: str, *params: str, nickname: str = "irclink") -> None:
        """Send a numeric reply to the client."""
        self.send(str(IRCMessage(numeric, [nickname, *params], source=SERVERNAME)))

    async def handshake(self, caps: str = "", ack: bool = True, nickname: str = "irclink") -> IRCMessage:
        """Go through CAP LS and registration, up to RPL_WELCOME.

        Returns the NICK message that was accepted.
        """
        cap_ls = await self.expect("CAP")
        assert cap_ls.params == ["LS", "302"]
        self.send(f":{SERVERNAME} CAP * LS :{caps}")

        msg = await self.expect("CAP")
        if msg.params[0] == "REQ":
            verb = "ACK" if ack else "NAK"
            self.send(f":{SERVERNAME} CAP * {verb} :{msg.params[1]}")
            msg = await self.expect("CAP")
        assert msg.params == ["END"]

        nick = await self.expect("NICK")
        await self.expect("USER")
        self.welcome(nickname)
        return nick

    def welcome(self, nickname: str = "irclink") -> None:
        """Send RPL_WELCOME and a few ISUPPORT tokens."""
        self.reply("001", f"Welcome to the Example IRC Network {nickname}", nickname=nickname)
        self.reply(
            "005",
            "CASEMAPPING=rfc1459",
            "CHANTYPES=#",
            "PREFIX=(ov)@+",
            "NETWORK=Example",
            "are supported by this server",
            nickname=nickname,
        )

    async def close(self) -> None:
        """Close the connection from the server side."""
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError:
            pass


class FakeIRCServer:
    """A listening socket on localhost, handing over each connection to the test."""

    def __init__(self) -> None:
        self.server: asyncio.AbstractServer | None = None
        self.port = 0
        self.clients: list[FakeClient] = []
        self._accepted: asyncio.Queue[FakeClient] = asyncio.Queue()

    async def start(self) -> None:
        """Listen on a random free port."""
        self.server = await asyncio.start_server(self._on_connect, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        client = FakeClient(reader, writer)
        self.clients.append(client)
        self._accepted.put_nowait(client)

    async def accept(self, timeout: float = 5) -> FakeClient:
        """Return the next client that connects."""
        return await asyncio.wait_for(self._accepted.get(), timeout)

    async def stop(self) -> None:
        """Close all the client connections, then the listening socket."""
        for client in self.clients:
            await client.close()
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
