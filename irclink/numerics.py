"""IRC numeric replies understood by the client.

Names and values follow the IRC definition files, https://defs.ircdocs.horse/
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import enum


class IRCNumeric(enum.Enum):
    """Base class for IRC numeric enums."""

    def __str__(self) -> str:
        """Return the numeric in the wire protocol format, e.g. 001."""
        return str(self.value).zfill(3)

    def __repr__(self) -> str:
        """Return the representation of the numeric, e.g. RPL_WELCOME."""
        return f"{self.__class__.__name__}_{self.name}"

    @classmethod
    def lookup(cls, command: str) -> IRCNumeric | None:
        """Return the member matching a wire command (e.g. "001"), or None."""
        if not command.isdigit():
            return None
        for numeric_cls in (RPL, ERR):
            try:
                return numeric_cls(int(command))
            except ValueError:
                continue
        return None


@enum.unique
class RPL(IRCNumeric):
    """Standard IRC RPL_* replies."""

    WELCOME = 1
    YOURHOST = 2
    CREATED = 3
    MYINFO = 4
    ISUPPORT = 5
    UMODEIS = 221
    AWAY = 301
    UNAWAY = 305
    NOWAWAY = 306
    CHANNELMODEIS = 324
    NOTOPIC = 331
    TOPIC = 332
    TOPICWHOTIME = 333
    NAMREPLY = 353
    ENDOFNAMES = 366
    MOTD = 372
    MOTDSTART = 375
    ENDOFMOTD = 376
    HOSTHIDDEN = 396
    LOGGEDIN = 900
    LOGGEDOUT = 901
    SASLSUCCESS = 903
    SASLALREADY = 907
    SASLMECHS = 908


@enum.unique
class ERR(IRCNumeric):
    """Erroneous IRC ERR_* replies."""

    NOSUCHNICK = 401
    NOSUCHCHANNEL = 403
    CANNOTSENDTOCHAN = 404
    UNKNOWNCOMMAND = 421
    NONICKNAMEGIVEN = 431
    ERRONEUSNICKNAME = 432
    NICKNAMEINUSE = 433
    NICKCOLLISION = 436
    NOTREGISTERED = 451
    NEEDMOREPARAMS = 461
    PASSWDMISMATCH = 464
    YOUREBANNEDCREEP = 465
    CHANNELISFULL = 471
    INVITEONLYCHAN = 473
    BANNEDFROMCHAN = 474
    BADCHANNELKEY = 475
    CHANOPRIVSNEEDED = 482
    NICKLOCKED = 902
    SASLFAIL = 904
    SASLTOOLONG = 905
    SASLABORTED = 906


# replies that make the registration sequencer pick another nickname
NICKNAME_REJECTED = frozenset(
    str(numeric)
    for numeric in (ERR.NONICKNAMEGIVEN, ERR.ERRONEUSNICKNAME, ERR.NICKNAMEINUSE, ERR.NICKCOLLISION)
)

# terminal SASL replies
SASL_SUCCESS = frozenset(str(numeric) for numeric in (RPL.SASLSUCCESS, RPL.SASLALREADY))
SASL_FAILURE = frozenset(str(numeric) for numeric in (ERR.NICKLOCKED, ERR.SASLFAIL, ERR.SASLTOOLONG, ERR.SASLABORTED))
