"""Test the IRCv3 batch arena."""

from __future__ import annotations

import pytest

from irclink.batch import BatchArena
from irclink.errors import BatchError
from irclink.message import IRCMessage


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def msg(line: str) -> IRCMessage:
    """Return a message from the server."""
    return IRCMessage.from_message(line)


def test_batch() -> None:
    """Test a batch that is opened, filled and closed."""
    arena = BatchArena()
    assert arena.handle(msg(":irc.example.org BATCH +ref netsplit irc.hub other.host")) == []
    assert "ref" in arena
    assert arena.add(msg("@batch=ref :alice!a@h QUIT :irc.hub other.host")) == []
    assert arena.add(msg("@batch=ref :bob!b@h QUIT :irc.hub other.host")) == []

    completed = arena.handle(msg(":irc.example.org BATCH -ref"))
    assert len(completed) == 1
    batch = completed[0]
    assert batch.reference == "ref"
    assert batch.batch_type == "netsplit"
    assert batch.params == ["irc.hub", "other.host"]
    assert [m.nick for m in batch.messages] == ["alice", "bob"]
    assert batch.error is None
    assert len(arena) == 0


def test_not_batched() -> None:
    """Test messages that do not belong to an open batch."""
    arena = BatchArena()
    assert arena.add(msg(":alice!a@h PRIVMSG #chan :hi")) is None
    assert arena.add(msg("@batch=unknown :alice!a@h PRIVMSG #chan :hi")) is None


@pytest.mark.parametrize("line", ["BATCH", "BATCH ref", "BATCH +", "BATCH -unknown"])
def test_invalid(line: str) -> None:
    """Test invalid BATCH commands."""
    arena = BatchArena()
    with pytest.raises(BatchError):
        arena.handle(msg(line))


def test_duplicate_reference() -> None:
    """Test that reopening an open reference flushes the old batch."""
    arena = BatchArena()
    arena.handle(msg("BATCH +ref chathistory #chan"))
    arena.add(msg("@batch=ref :alice!a@h PRIVMSG #chan :old"))
    completed = arena.handle(msg("BATCH +ref chathistory #chan"))
    assert len(completed) == 1
    assert completed[0].error == "duplicate batch reference"
    assert len(completed[0].messages) == 1
    assert "ref" in arena


def test_too_many_messages() -> None:
    """Test that a batch is force-flushed once it reaches its size limit."""
    arena = BatchArena(max_messages=3)
    arena.handle(msg("BATCH +ref chathistory #chan"))
    assert arena.add(msg("@batch=ref :a!a@h PRIVMSG #chan :1")) == []
    assert arena.add(msg("@batch=ref :a!a@h PRIVMSG #chan :2")) == []
    flushed = arena.add(msg("@batch=ref :a!a@h PRIVMSG #chan :3"))
    assert flushed is not None
    assert len(flushed) == 1
    assert flushed[0].error == "too many messages"
    assert len(flushed[0].messages) == 3
    assert "ref" not in arena


def test_expire() -> None:
    """Test that batches open for too long are force-flushed."""
    clock = FakeClock()
    arena = BatchArena(max_age=10, clock=clock)
    arena.handle(msg("BATCH +old netjoin"))
    clock.now += 5
    arena.handle(msg("BATCH +new netjoin"))
    assert arena.expire() == []

    clock.now += 6
    expired = arena.expire()
    assert [batch.reference for batch in expired] == ["old"]
    assert expired[0].error == "batch timed out"
    assert "new" in arena
    assert "old" not in arena
