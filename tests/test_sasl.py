"""Test the SASL authenticator."""

from __future__ import annotations

import base64

import pytest

from irclink.message import IRCMessage
from irclink.sasl import CHUNK_SIZE, Authenticator, SaslOutcome


def test_plain() -> None:
    """Test a successful PLAIN exchange."""
    auth = Authenticator("plain", "account", "secret")
    assert [str(msg) for msg in auth.start()] == ["AUTHENTICATE PLAIN"]
    assert auth.started

    out = auth.handle(IRCMessage("AUTHENTICATE", ["+"]))
    assert len(out) == 1
    assert base64.b64decode(out[0].params[0]) == b"\0account\0secret"

    auth.handle(IRCMessage.from_message(":irc.example.org 900 * nick!u@h account :You are now logged in"))
    assert not auth.concluded
    auth.handle(IRCMessage.from_message(":irc.example.org 903 * :SASL authentication successful"))
    assert auth.concluded
    assert auth.outcome is SaslOutcome.SUCCESS


def test_external() -> None:
    """Test that EXTERNAL sends an empty response."""
    auth = Authenticator("EXTERNAL")
    auth.start()
    out = auth.handle(IRCMessage("AUTHENTICATE", ["+"]))
    assert [str(msg) for msg in out] == ["AUTHENTICATE +"]


def test_failure() -> None:
    """Test a failed exchange; nothing is sent afterwards."""
    auth = Authenticator("PLAIN", "account", "wrong")
    auth.start()
    auth.handle(IRCMessage("AUTHENTICATE", ["+"]))
    auth.handle(IRCMessage.from_message(":irc.example.org 904 * :SASL authentication failed"))
    assert auth.outcome is SaslOutcome.FAILURE
    assert auth.reason == "SASL authentication failed"
    assert auth.handle(IRCMessage("AUTHENTICATE", ["+"])) == []


def test_mechanisms() -> None:
    """Test RPL_SASLMECHS."""
    auth = Authenticator("EXTERNAL")
    auth.start()
    auth.handle(IRCMessage.from_message(":irc.example.org 908 * PLAIN,SCRAM-SHA-256 :are available SASL mechanisms"))
    assert auth.server_mechanisms == ["PLAIN", "SCRAM-SHA-256"]
    assert not auth.concluded


def test_unsupported_mechanism() -> None:
    """Test that only PLAIN and EXTERNAL are accepted."""
    with pytest.raises(ValueError):
        Authenticator("SCRAM-SHA-256")


@pytest.mark.parametrize(
    ("password_length", "expected_chunks"),
    [
        (10, [None]),
        # 300 bytes of payload encode to exactly 400 characters: a "+" follows
        (300 - len("\0account\0"), [CHUNK_SIZE, "+"]),
        (500, [CHUNK_SIZE, None]),
        (600 - len("\0account\0"), [CHUNK_SIZE, CHUNK_SIZE, "+"]),
    ],
)
def test_chunking(password_length: int, expected_chunks: list[int | str | None]) -> None:
    """Test that long responses are split in chunks of 400 bytes.

    None in expected_chunks is a final chunk shorter than 400 bytes.
    """
    password = "p" * password_length
    auth = Authenticator("PLAIN", "account", password)
    out = auth.handle(IRCMessage("AUTHENTICATE", ["+"]))
    chunks = [msg.params[0] for msg in out]
    assert len(chunks) == len(expected_chunks)
    for chunk, expected in zip(chunks, expected_chunks):
        if expected is None:
            assert 0 < len(chunk) < CHUNK_SIZE
        elif expected == "+":
            assert chunk == "+"
        else:
            assert len(chunk) == expected

    encoded = "".join(chunk for chunk in chunks if chunk != "+")
    assert base64.b64decode(encoded) == b"\0account\0" + password.encode()
