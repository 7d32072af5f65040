"""IRCv3 batch reassembly.

Messages carrying a "batch" tag are held back until the matching "BATCH -id"
arrives, and then released together. The arena is bounded: a batch that grows
too large or stays open for too long is force-flushed, as if it was closed.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
import time
from collections.abc import Callable

import structlog

from .errors import BatchError
from .message import IRCMessage

logger = structlog.get_logger()


@dataclasses.dataclass
class Batch:
    """A batch of messages, in arrival order."""

    reference: str
    batch_type: str
    params: list[str]
    opened_at: float
    tags: dict[str, str] = dataclasses.field(default_factory=dict)
    messages: list[IRCMessage] = dataclasses.field(default_factory=list)
    # set when the batch was flushed without a proper close
    error: str | None = None


class BatchArena:
    """Open batches, keyed by their reference."""

    def __init__(
        self,
        max_messages: int = 5000,
        max_age: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_messages = max_messages
        self.max_age = max_age
        self.clock = clock
        self._open: dict[str, Batch] = {}

    def __contains__(self, reference: object) -> bool:
        """Return True if a batch with this reference is open."""
        return reference in self._open

    def __len__(self) -> int:
        """Return the number of open batches."""
        return len(self._open)

    def _force_flush(self, reference: str, error: str) -> Batch:
        batch = self._open.pop(reference)
        batch.error = error
        logger.warning("Flushing batch", reference=reference, type=batch.batch_type, error=error)
        return batch

    def handle(self, msg: IRCMessage) -> list[Batch]:
        """Handle a BATCH command; return the batches that are complete.

        Raises BatchError for an invalid BATCH command, or for closing a batch
        that is not open.
        """
        if not msg.params or len(msg.params[0]) < 2 or msg.params[0][0] not in "+-":
            raise BatchError(f"Invalid BATCH command: {msg.params}")

        sign, reference = msg.params[0][0], msg.params[0][1:]
        if sign == "-":
            if reference not in self._open:
                raise BatchError(f"Closing a batch that is not open: {reference}")
            batch = self._open.pop(reference)
            logger.debug("Batch closed", reference=reference, type=batch.batch_type, count=len(batch.messages))
            return [batch]

        completed = []
        if reference in self._open:
            completed.append(self._force_flush(reference, "duplicate batch reference"))

        batch_type = msg.params[1] if len(msg.params) > 1 else ""
        self._open[reference] = Batch(
            reference=reference,
            batch_type=batch_type,
            params=list(msg.params[2:]),
            opened_at=self.clock(),
            tags=dict(msg.tags),
        )
        logger.debug("Batch opened", reference=reference, type=batch_type)
        return completed

    def add(self, msg: IRCMessage) -> list[Batch] | None:
        """Buffer a message tagged with an open batch.

        Returns None if the message does not belong to an open batch, and
        should be processed right away. Otherwise, returns the batches that
        had to be force-flushed because they grew too large.
        """
        reference = msg.tags.get("batch")
        if reference is None:
            return None
        if reference not in self._open:
            logger.debug("Message tagged with an unknown batch", reference=reference, command=msg.command)
            return None

        batch = self._open[reference]
        batch.messages.append(msg)
        if len(batch.messages) >= self.max_messages:
            return [self._force_flush(reference, "too many messages")]
        return []

    def expire(self) -> list[Batch]:
        """Force-flush the batches that have been open for longer than max_age."""
        now = self.clock()
        expired = [reference for reference, batch in self._open.items() if now - batch.opened_at > self.max_age]
        return [self._force_flush(reference, "batch timed out") for reference in expired]
