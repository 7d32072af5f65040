"""Test the CAP negotiation state machine."""

from __future__ import annotations

from irclink.capabilities import CapNegotiator, CapState, NegotiationState
from irclink.message import IRCMessage


def cap(line: str) -> IRCMessage:
    """Return a CAP message from the server."""
    return IRCMessage.from_message(f":irc.example.org CAP * {line}")


def lines(messages: list[IRCMessage]) -> list[str]:
    """Return messages in their wire format, for easier comparisons."""
    return [str(msg) for msg in messages]


def test_start() -> None:
    """Test that the negotiation starts with CAP LS 302."""
    negotiator = CapNegotiator()
    assert lines(negotiator.start()) == ["CAP LS 302"]
    assert negotiator.state is NegotiationState.AWAITING_LS
    assert not negotiator.done


def test_request_wanted_only() -> None:
    """Test that only capabilities that are both advertised and wanted are requested."""
    negotiator = CapNegotiator(["multi-prefix", "server-time", "made-up"])
    negotiator.start()
    out = negotiator.handle(cap("LS :multi-prefix extended-join server-time made-up"))
    assert lines(out) == ["CAP REQ :multi-prefix server-time"]
    assert negotiator.capabilities["multi-prefix"].state is CapState.REQUESTED
    assert negotiator.capabilities["extended-join"].state is CapState.UNKNOWN

    assert negotiator.handle(cap("ACK :multi-prefix")) == []
    assert lines(negotiator.handle(cap("ACK :server-time"))) == ["CAP END"]
    assert negotiator.done
    assert negotiator.enabled == {"multi-prefix", "server-time"}
    assert negotiator.is_enabled("server-time")
    assert not negotiator.is_enabled("extended-join")


def test_multiline_ls() -> None:
    """Test that CAP LS continuation lines are merged before requesting."""
    negotiator = CapNegotiator(["multi-prefix", "batch"])
    negotiator.start()
    assert negotiator.handle(cap("LS * :multi-prefix")) == []
    out = negotiator.handle(cap("LS :batch"))
    assert lines(out) == ["CAP REQ :batch multi-prefix"]


def test_nothing_to_request() -> None:
    """Test that CAP END is sent right away when nothing is wanted."""
    negotiator = CapNegotiator(["batch"])
    negotiator.start()
    assert lines(negotiator.handle(cap("LS :multi-prefix"))) == ["CAP END"]
    assert negotiator.done
    assert negotiator.enabled == frozenset()


def test_nak() -> None:
    """Test that a rejected request still concludes the negotiation."""
    negotiator = CapNegotiator(["multi-prefix", "batch"])
    negotiator.start()
    negotiator.handle(cap("LS :multi-prefix batch"))
    assert lines(negotiator.handle(cap("NAK :batch multi-prefix"))) == ["CAP END"]
    assert negotiator.capabilities["batch"].state is CapState.NAKKED
    assert negotiator.enabled == frozenset()


def test_values() -> None:
    """Test capability values, e.g. SASL mechanisms."""
    negotiator = CapNegotiator()
    negotiator.start()
    negotiator.handle(cap("LS :sasl=PLAIN,EXTERNAL draft/languages=2,en,fr"))
    assert negotiator.capabilities["sasl"].values == ["PLAIN", "EXTERNAL"]
    assert negotiator.capabilities["draft/languages"].value == "2,en,fr"


def test_sasl_not_requested_without_mechanism() -> None:
    """Test that SASL is only requested when authentication is configured."""
    negotiator = CapNegotiator()
    negotiator.start()
    assert lines(negotiator.handle(cap("LS :sasl"))) == ["CAP END"]


def test_sasl_mechanism_not_offered() -> None:
    """Test that SASL is not requested if the server does not offer our mechanism."""
    negotiator = CapNegotiator(sasl_mechanism="EXTERNAL")
    negotiator.start()
    assert lines(negotiator.handle(cap("LS :sasl=PLAIN"))) == ["CAP END"]


def test_sasl_holds_end() -> None:
    """Test that CAP END waits for the SASL exchange to conclude."""
    negotiator = CapNegotiator(sasl_mechanism="PLAIN")
    negotiator.start()
    assert lines(negotiator.handle(cap("LS :sasl=PLAIN multi-prefix"))) == ["CAP REQ :multi-prefix sasl"]
    assert negotiator.handle(cap("ACK :multi-prefix sasl")) == []
    assert negotiator.needs_authentication
    assert not negotiator.done

    assert lines(negotiator.end_authentication()) == ["CAP END"]
    assert not negotiator.needs_authentication
    assert negotiator.done


def test_unsupported() -> None:
    """Test servers that do not know about CAP."""
    negotiator = CapNegotiator()
    assert negotiator.unsupported() == []
    assert not negotiator.done

    negotiator.start()
    assert negotiator.unsupported() == []
    assert negotiator.done


def test_new_del() -> None:
    """Test CAP NEW and CAP DEL, after the negotiation."""
    negotiator = CapNegotiator(["away-notify", "batch"])
    negotiator.start()
    negotiator.handle(cap("LS :batch"))
    negotiator.handle(cap("ACK :batch"))
    assert negotiator.done

    assert lines(negotiator.handle(cap("NEW :away-notify unknown-cap"))) == ["CAP REQ away-notify"]
    assert negotiator.handle(cap("ACK :away-notify")) == []
    assert negotiator.enabled == {"away-notify", "batch"}

    assert negotiator.handle(cap("DEL :batch")) == []
    assert negotiator.capabilities["batch"].state is CapState.DISABLED
    assert negotiator.enabled == {"away-notify"}

    # advertised again, requested again
    assert lines(negotiator.handle(cap("NEW :batch"))) == ["CAP REQ batch"]


def test_del_while_pending() -> None:
    """Test that a CAP DEL for the last pending capability concludes the negotiation."""
    negotiator = CapNegotiator(["multi-prefix", "batch"])
    negotiator.start()
    assert lines(negotiator.handle(cap("LS :multi-prefix batch"))) == ["CAP REQ :batch multi-prefix"]
    assert negotiator.handle(cap("ACK :multi-prefix")) == []
    assert not negotiator.done

    assert lines(negotiator.handle(cap("DEL :batch"))) == ["CAP END"]
    assert negotiator.done
    assert negotiator.enabled == {"multi-prefix"}
    assert "batch" not in negotiator.capabilities


def test_ack_disable() -> None:
    """Test an ACK with a "-" modifier, disabling a capability."""
    negotiator = CapNegotiator(["batch"])
    negotiator.start()
    negotiator.handle(cap("LS :batch"))
    negotiator.handle(cap("ACK :batch"))
    negotiator.handle(cap("ACK :-batch"))
    assert not negotiator.is_enabled("batch")


def test_request_split() -> None:
    """Test that long CAP REQ lines are split."""
    names = [f"vendor.example/capability-{i:03}" for i in range(40)]
    negotiator = CapNegotiator(names)
    # not in the supported list, so nothing would be requested; pretend they are
    negotiator.wanted = frozenset(names)
    negotiator.start()
    out = negotiator.handle(cap("LS :" + " ".join(names)))
    assert len(out) > 1
    for msg in out:
        assert len(msg.encode()) <= 512
    requested = [name for msg in out for name in msg.params[1].split()]
    assert requested == sorted(names)


def test_malformed() -> None:
    """Test CAP messages without a (known) subcommand."""
    negotiator = CapNegotiator()
    negotiator.start()
    assert negotiator.handle(IRCMessage("CAP", ["*"])) == []
    assert negotiator.handle(cap("FOO :bar")) == []
    assert negotiator.handle(cap("LIST :batch")) == []
    assert negotiator.state is NegotiationState.AWAITING_LS
