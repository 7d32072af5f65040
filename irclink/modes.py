"""MODE string parsing.

Each mode letter is classified using the CHANMODES and PREFIX ISUPPORT tokens
before its parameter is consumed; getting a single letter wrong would shift
every following parameter on the line.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from collections.abc import Sequence
from typing import NamedTuple

import structlog

from .isupport import ChanModes, Prefix

logger = structlog.get_logger()


class ModeChange(NamedTuple):
    """A single +x/-x change, with its parameter (if any)."""

    adding: bool
    letter: str
    argument: str | None = None

    def __str__(self) -> str:
        """Return the change as "+o nick", "-m" etc."""
        change = ("+" if self.adding else "-") + self.letter
        return f"{change} {self.argument}" if self.argument is not None else change


def takes_argument(letter: str, adding: bool, chanmodes: ChanModes, prefix: Prefix) -> bool:
    """Return whether a channel mode letter consumes a parameter."""
    if letter in prefix.modes:
        return True
    kind = chanmodes.kind(letter)
    if kind in ("A", "B"):
        return True
    if kind == "C":
        return adding
    if kind is None:
        logger.debug("Unknown channel mode, assuming it takes no parameter", mode=letter)
    return False


def parse_channel_modes(
    modestring: str,
    arguments: Sequence[str],
    chanmodes: ChanModes,
    prefix: Prefix,
) -> list[ModeChange]:
    """Split a channel MODE string and its arguments into individual changes."""
    remaining = list(arguments)
    changes = []
    adding = True
    for letter in modestring:
        if letter in "+-":
            adding = letter == "+"
            continue

        argument = None
        if takes_argument(letter, adding, chanmodes, prefix):
            if remaining:
                argument = remaining.pop(0)
            elif chanmodes.kind(letter) != "A":
                # type A without a parameter is a list query (e.g. "MODE #chan +b")
                logger.debug("Missing parameter for channel mode", mode=letter, modestring=modestring)
        changes.append(ModeChange(adding, letter, argument))

    if remaining:
        logger.debug("Unused MODE parameters", modestring=modestring, unused=remaining)
    return changes


def parse_user_modes(modestring: str) -> list[ModeChange]:
    """Split a user MODE string into individual changes; user modes take no parameters."""
    changes = []
    adding = True
    for letter in modestring:
        if letter in "+-":
            adding = letter == "+"
            continue
        changes.append(ModeChange(adding, letter))
    return changes
