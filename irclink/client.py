"""Multi-connection facade: the interface that the rest of an application talks to."""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import prometheus_client
import structlog
from prometheus_client import Counter, Gauge

from .backoff import Backoff
from .config import ConnectionProfile
from .connection import ConnectionManager, Emitter
from .dispatcher import Intent
from .events import Event
from .session import Session

logger = structlog.get_logger()


class IRCClient:
    """Any number of connections, each identified by an application-chosen id.

    Intents are submitted with submit(), which never blocks; events from all
    the connections are yielded by events(), tagged with their connection id.
    """

    def __init__(self) -> None:
        self.managers: dict[str, ConnectionManager] = {}
        self._events: asyncio.Queue[tuple[str, Event]] = asyncio.Queue()

        # set up a few Prometheus metrics
        registry = prometheus_client.CollectorRegistry()
        self.metrics: dict[str, Any] = {
            "connections": Gauge("irclink_connections", "Number of open connections", ["network"], registry=registry),
            "registered": Gauge(
                "irclink_registered", "Number of registered connections", ["network"], registry=registry
            ),
            "lines_received": Counter(
                "irclink_lines_received", "Count of lines received", ["network"], registry=registry
            ),
            "lines_sent": Counter("irclink_lines_sent", "Count of lines sent", ["network"], registry=registry),
            "reconnects": Counter("irclink_reconnects", "Count of reconnections", ["network"], registry=registry),
            "events": Counter("irclink_events", "Count of events emitted", ["type"], registry=registry),
            "errors": Counter("irclink_errors", "Count of errors and exceptions", ["type"], registry=registry),
        }
        self.metrics_registry = registry

    def _emitter(self, connection_id: str) -> Emitter:
        def emit(event: Event) -> None:
            self.metrics["events"].labels(event.__class__.__name__).inc()
            self._events.put_nowait((connection_id, event))

        return emit

    def connect(self, connection_id: str, profile: ConnectionProfile, backoff: Backoff | None = None) -> None:
        """Start connecting to a network, and keep it connected until disconnect()."""
        if connection_id in self.managers:
            raise ValueError(f"Connection {connection_id!r} already exists")
        manager = ConnectionManager(connection_id, profile, self._emitter(connection_id), self.metrics, backoff)
        self.managers[connection_id] = manager
        manager.task = asyncio.create_task(self._run(connection_id, manager))
        logger.info("Connection added", network=connection_id, host=profile.host, port=profile.port)

    async def _run(self, connection_id: str, manager: ConnectionManager) -> None:
        try:
            await manager.run()
        finally:
            # a network that gave up, or was disconnected, is forgotten
            if self.managers.get(connection_id) is manager:
                del self.managers[connection_id]

    async def disconnect(self, connection_id: str, reason: str = "Leaving") -> None:
        """Send QUIT and close a connection, without reconnecting."""
        manager = self.managers.get(connection_id)
        if manager is None:
            raise KeyError(connection_id)
        await manager.stop(reason)

    async def close(self, reason: str = "Leaving") -> None:
        """Disconnect everything."""
        await asyncio.gather(*(manager.stop(reason) for manager in list(self.managers.values())))

    def submit(self, connection_id: str, intent: Intent) -> None:
        """Queue an intent for a connection; returns immediately."""
        manager = self.managers.get(connection_id)
        if manager is None:
            logger.warning("Unknown connection, dropping intent", network=connection_id, intent=repr(intent))
            return
        manager.submit(intent)

    def session(self, connection_id: str) -> Session | None:
        """Return the session of a live connection, for read-only inspection."""
        manager = self.managers.get(connection_id)
        if manager is None or manager.connection is None:
            return None
        return manager.connection.session

    async def events(self) -> AsyncIterator[tuple[str, Event]]:
        """Yield (connection_id, event) pairs, as they happen."""
        while True:
            yield await self._events.get()
