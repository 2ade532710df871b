"""SMS encoding, pricing and templating."""

from zeus_core.messaging.encoding import (
    MessageEncoding,
    WideCharacter,
    classify_encoding,
    detect_wide_characters,
    transliterate,
)
from zeus_core.messaging.pricing import (
    MAX_MESSAGE_LENGTH,
    UNIT_CHARACTERS,
    UNIT_PRICE,
    MessageCost,
    MessageStats,
    calculate_cost,
    calculate_stats,
)
from zeus_core.messaging.templates import (
    DEFAULT_TEMPLATE,
    preview_template,
    render_template,
    select_template,
    validate_template,
)

__all__ = [
    "DEFAULT_TEMPLATE",
    "MAX_MESSAGE_LENGTH",
    "MessageCost",
    "MessageEncoding",
    "MessageStats",
    "UNIT_CHARACTERS",
    "UNIT_PRICE",
    "WideCharacter",
    "calculate_cost",
    "calculate_stats",
    "classify_encoding",
    "detect_wide_characters",
    "preview_template",
    "render_template",
    "select_template",
    "transliterate",
    "validate_template",
]
