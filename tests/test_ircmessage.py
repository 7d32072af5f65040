"""Test the validity of our IRCMessage parser/builder."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest
import yaml

from irclink.errors import MalformedLine, MessageTooLong
from irclink.message import Hostmask, IRCMessage, escape_tag_value, unescape_tag_value

TEST_DATA_DIR = Path(__file__).parent / "data"


def pytest_generate_tests(metafunc: pytest.Metafunc) -> None:
    """Generate test data fixtures from irc-parser-tests-style YAML files.

    Create one fixture for each of the tests in there, to avoid lumping all of
    them together in one big test.
    """
    fixtures = {
        "data_msg_split": "msg-split.yaml",
        "data_msg_join": "msg-join.yaml",
    }

    for fixture, filename in fixtures.items():
        filepath = TEST_DATA_DIR / filename
        if fixture in metafunc.fixturenames:
            with filepath.open(encoding="utf-8") as yamlfile:
                yamldata = yaml.safe_load(yamlfile.read())
            metafunc.parametrize(fixture, yamldata["tests"])


def test_msg_split(data_msg_split: Mapping[str, Any]) -> None:
    """Test an msg-split test fixture.

    Parse a raw, wire protocol message, and check whether all of the
    deconstructed atoms (tags, verb, params, source) are how they should be.
    """
    raw = data_msg_split["input"]
    atoms = data_msg_split["atoms"]
    parsed = IRCMessage.from_message(raw)

    assert parsed.command == atoms["verb"].upper()
    assert parsed.params == list(atoms.get("params", []))
    assert parsed.source == atoms.get("source")
    assert parsed.tags == dict(atoms.get("tags", {}))


def test_msg_join(data_msg_join: Mapping[str, Any]) -> None:
    """Test an msg-join test fixture.

    Take the individual atoms, build a wire protocol message and check whether
    it matches at least one of the expected results.
    """
    atoms = data_msg_join["atoms"]
    matches = data_msg_join["matches"]

    constructed = IRCMessage(atoms["verb"], atoms.get("params"), atoms.get("source"), atoms.get("tags"))
    assert str(constructed) in matches


@pytest.mark.parametrize(
    "line",
    [
        "",
        "   ",
        "@a=b",
        ":source",
        ":source ",
        "PRIV#MSG #chan :hi",
        "12 foo",
        "@a=b\\ foo",
    ],
)
def test_from_message_malformed(line: str) -> None:
    """Test that lines not following the grammar are refused."""
    with pytest.raises(MalformedLine):
        IRCMessage.from_message(line)


def test_decode() -> None:
    """Test decoding from bytes, including the latin-1 fallback."""
    msg = IRCMessage.decode(b":nick!user@host PRIVMSG #chan :caf\xc3\xa9\r\n")
    assert msg.params == ["#chan", "café"]

    msg = IRCMessage.decode(b":nick!user@host PRIVMSG #chan :caf\xe9\r\n")
    assert msg.params == ["#chan", "café"]


def test_command_case() -> None:
    """Test that commands are upper-cased, both when parsing and when constructing."""
    assert IRCMessage.from_message("privmsg #chan hi").command == "PRIVMSG"
    assert IRCMessage("notice", ["#chan", "hi"]).command == "NOTICE"


def test_str_invalid() -> None:
    """Test that messages that cannot be represented on the wire are refused."""
    with pytest.raises(ValueError, match="last parameter"):
        str(IRCMessage("PRIVMSG", ["#chan with space", "hi"]))
    with pytest.raises(ValueError, match="last parameter"):
        str(IRCMessage("MODE", ["", "+o"]))
    with pytest.raises(ValueError, match="CR, LF or NUL"):
        str(IRCMessage("PRIVMSG", ["#chan", "line\r\nQUIT"]))
    with pytest.raises(ValueError, match="source"):
        str(IRCMessage("PRIVMSG", ["#chan", "hi"], source="bad source"))
    with pytest.raises(ValueError, match="tag key"):
        str(IRCMessage("TAGMSG", ["#chan"], tags={"bad key": "x"}))


def test_encode() -> None:
    """Test encoding to bytes, terminated with CRLF."""
    assert IRCMessage("PRIVMSG", ["#chan", "hello world"]).encode() == b"PRIVMSG #chan :hello world\r\n"


def test_encode_length() -> None:
    """Test the length limits of encode(): 512 for the message, 8191 for the tags."""
    overhead = len("PRIVMSG #chan ") + 2
    fits = IRCMessage("PRIVMSG", ["#chan", "a" * (512 - overhead)])
    assert len(fits.encode()) == 512

    too_long = IRCMessage("PRIVMSG", ["#chan", "a" * (513 - overhead)])
    with pytest.raises(MessageTooLong) as exc:
        too_long.encode()
    assert exc.value.length == 513
    assert exc.value.limit == 512

    # multi-byte characters count as bytes, not characters
    with pytest.raises(MessageTooLong):
        IRCMessage("PRIVMSG", ["#chan", "é" * 250]).encode()

    # tags are accounted for separately
    tagged = IRCMessage("PRIVMSG", ["#chan", "a" * (512 - overhead)], tags={"label": "x" * 1000})
    assert len(tagged.encode()) == 512 + len("@label=") + 1000 + 1
    with pytest.raises(MessageTooLong):
        tagged.encode(max_tags_length=100)
    with pytest.raises(MessageTooLong):
        IRCMessage("TAGMSG", ["#chan"], tags={"label": "x" * 8190}).encode()


def test_tag_escaping() -> None:
    """Test escaping of tag values in both directions."""
    raw = "a;b c\\d\r\ne"
    escaped = escape_tag_value(raw)
    assert escaped == "a\\:b\\sc\\\\d\\r\\ne"
    assert unescape_tag_value(escaped) == raw
    assert unescape_tag_value("\\x") == "x"
    with pytest.raises(MalformedLine):
        unescape_tag_value("abc\\")


def test_tag_order() -> None:
    """Test that tags keep their order through parsing and formatting."""
    msg = IRCMessage.from_message("@z=1;a=2;m=3 FOO")
    assert list(msg.tags) == ["z", "a", "m"]
    assert str(msg) == "@z=1;a=2;m=3 FOO"


def test_hostmask() -> None:
    """Test parsing of message sources."""
    msg = IRCMessage.from_message(":nick!user@host.example.org PRIVMSG #chan :hi")
    assert msg.hostmask == Hostmask("nick", "user", "host.example.org")
    assert msg.nick == "nick"
    assert str(msg.hostmask) == "nick!user@host.example.org"

    server = IRCMessage.from_message(":irc.example.org NOTICE * :hi")
    assert server.hostmask == Hostmask("irc.example.org", None, None)

    assert Hostmask.parse("nick@host") == Hostmask("nick", None, "host")
    assert IRCMessage("PING", ["x"]).nick is None


def test_is_numeric() -> None:
    """Test the numeric detection."""
    assert IRCMessage("001", ["nick", "Welcome"]).is_numeric
    assert not IRCMessage("PRIVMSG", ["#chan", "hi"]).is_numeric
