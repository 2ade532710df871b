"""GSM-7 alphabet classification and smart-punctuation transliteration.

A message whose every character is in the GSM 03.38 basic alphabet can be
sent as 7-bit text.  Characters from the extended table are still 7-bit but
need an escape septet, so they count double.  Anything else forces the whole
message into UCS-2 ("wide") encoding.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

GSM7_BASIC_ALPHABET = frozenset(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

GSM7_EXTENDED_ALPHABET = frozenset("^{}\\[~]|€")

# Common word-processor glyphs that silently switch a message to UCS-2.
TRANSLITERATIONS: dict[str, str] = {
    "‘": "'",
    "’": "'",
    "“": '"',
    "”": '"',
    "–": "-",
    "—": "-",
    "…": "...",
    "©": "(c)",
    "®": "(R)",
    "™": "(TM)",
}


class MessageEncoding(str, Enum):
    """Encoding class of a message body."""

    BASIC = "basic"
    EXTENDED = "extended"
    WIDE = "wide"


@dataclass(frozen=True)
class WideCharacter:
    """A character that cannot be represented in GSM-7."""

    char: str
    position: int
    code_point: str
    suggestion: str | None = None


def classify_encoding(text: str) -> MessageEncoding:
    """Return the encoding class required to send *text*."""
    has_extended = False
    for char in text:
        if char in GSM7_BASIC_ALPHABET:
            continue
        if char in GSM7_EXTENDED_ALPHABET:
            has_extended = True
            continue
        return MessageEncoding.WIDE
    return MessageEncoding.EXTENDED if has_extended else MessageEncoding.BASIC


def encoded_length(text: str) -> int:
    """Length in septets (extended characters count double).

    For wide messages this is simply the number of UCS-2 characters.
    """
    if classify_encoding(text) is MessageEncoding.WIDE:
        return len(text)
    return sum(2 if char in GSM7_EXTENDED_ALPHABET else 1 for char in text)


def detect_wide_characters(text: str) -> list[WideCharacter]:
    """List every character outside both GSM-7 tables, with replacement hints."""
    found: list[WideCharacter] = []
    for position, char in enumerate(text):
        if char in GSM7_BASIC_ALPHABET or char in GSM7_EXTENDED_ALPHABET:
            continue
        found.append(
            WideCharacter(
                char=char,
                position=position,
                code_point=f"{ord(char):04X}",
                suggestion=TRANSLITERATIONS.get(char),
            )
        )
    return found


def transliterate(text: str) -> str:
    """Replace common smart punctuation with basic-alphabet equivalents.

    Lossy and only meant for pre-flight cleanup; characters without a known
    replacement are left untouched.
    """
    return "".join(TRANSLITERATIONS.get(char, char) for char in text)
