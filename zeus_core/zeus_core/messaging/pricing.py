"""Message unit and cost calculation.

Pricing is flat: every started block of :data:`UNIT_CHARACTERS` characters is
one billable unit at :data:`UNIT_PRICE`, whatever encoding the gateway ends up
using on the wire.  The encoding is still classified so callers can warn about
UCS-2 messages before they are sent.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal

from zeus_core.messaging.encoding import MessageEncoding, classify_encoding, encoded_length

UNIT_CHARACTERS = 155
UNIT_PRICE = Decimal("0.25")
MAX_MESSAGE_LENGTH = 300

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class MessageStats:
    """Size and encoding statistics for a rendered message."""

    encoding: MessageEncoding
    char_count: int
    encoded_length: int
    char_limit: int
    units: int
    max_length: int
    is_valid: bool


@dataclass(frozen=True)
class MessageCost:
    """Billable units and monetary cost of one message."""

    units: int
    cost: Decimal
    stats: MessageStats


def calculate_stats(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> MessageStats:
    """Classify *text* and compute its billable unit count.

    An empty message is zero units.
    """
    char_count = len(text)
    return MessageStats(
        encoding=classify_encoding(text),
        char_count=char_count,
        encoded_length=encoded_length(text),
        char_limit=UNIT_CHARACTERS,
        units=math.ceil(char_count / UNIT_CHARACTERS),
        max_length=max_length,
        is_valid=char_count <= max_length,
    )


def calculate_cost(
    text: str,
    unit_price: Decimal = UNIT_PRICE,
    max_length: int = MAX_MESSAGE_LENGTH,
) -> MessageCost:
    """Return the units and cost of sending *text*."""
    stats = calculate_stats(text, max_length=max_length)
    cost = (Decimal(stats.units) * unit_price).quantize(_CENTS)
    return MessageCost(units=stats.units, cost=cost, stats=stats)
