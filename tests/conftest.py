"""Testing initialization."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator

import pytest
import structlog

from irclink.client import IRCClient
from irclink.config import ConnectionProfile

from .ircserver import FakeIRCServer


@pytest.fixture(autouse=True)
def fixture_configure_structlog() -> None:
    """Fixture to configure structlog. Currently just silences it entirely."""

    def dummy_processor(
        logger: logging.Logger, name: str, event_dict: structlog.typing.EventDict
    ) -> structlog.typing.EventDict:
        raise structlog.DropEvent

    structlog.configure(processors=[dummy_processor])


@pytest.fixture(name="ircserver")
async def fixture_ircserver() -> AsyncGenerator[FakeIRCServer, None]:
    """Fixture for a scripted IRC server, listening on localhost."""
    ircserver = FakeIRCServer()
    await ircserver.start()
    yield ircserver
    await ircserver.stop()


@pytest.fixture(name="profile")
def fixture_profile(ircserver: FakeIRCServer) -> ConnectionProfile:
    """Fixture for a connection profile pointing to the scripted server.

    Flood control is relaxed, so that tests do not wait on it.
    """
    return ConnectionProfile(
        host="127.0.0.1",
        port=ircserver.port,
        tls=False,
        nickname="irclink",
        flood_burst=100,
        flood_rate=100.0,
        connect_timeout=5.0,
    )


@pytest.fixture(name="client")
async def fixture_client(ircserver: FakeIRCServer) -> AsyncGenerator[IRCClient, None]:
    """Fixture for an IRCClient, closed after the test (and before the server)."""
    client = IRCClient()
    yield client
    await client.close()
