"""Phone number normalisation to E.164.

Accounting contacts carry phone numbers in two shapes: a structured record
with separate country, area and subscriber fields (``PhoneCountryCode``,
``PhoneAreaCode``, ``PhoneNumber``), or a single free-text string typed by a
human.  Both are reduced to ``+<country code><digits>`` or ``None``.

The rules are applied in a fixed priority order and never guess.  Numbering
plan knowledge (possible lengths per country, valid subscriber ranges for
bare national numbers) comes from the ``phonenumbers`` metadata.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

# Home region default (Australia).
DEFAULT_COUNTRY_CODE = "61"

_NON_DIGITS = re.compile(r"\D")


def _digits(value: str) -> str:
    return _NON_DIGITS.sub("", value)


def _to_e164(number: str, region: str | None = None, *, require_valid: bool = False) -> str | None:
    """Parse *number* and format it as E.164, or return ``None``.

    Possible-length checks always apply; *require_valid* additionally
    demands a number inside an allocated range of its region.
    """
    try:
        parsed = phonenumbers.parse(number, region)
    except NumberParseException:
        return None
    if not phonenumbers.is_possible_number(parsed):
        return None
    if require_valid and not phonenumbers.is_valid_number(parsed):
        return None
    return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)


def _home_region(country_code: str) -> str | None:
    region = phonenumbers.region_code_for_country_code(int(country_code))
    if region == phonenumbers.UNKNOWN_REGION:
        return None
    return region


def _format_string(raw: str, country_code: str) -> str | None:
    """Apply the free-text rules to a single string."""
    text = raw.strip()
    if not text:
        return None

    if text.startswith("+"):
        return text

    digits = _digits(text)
    if not digits:
        return None

    if digits.startswith(country_code) and len(digits) > len(country_code):
        return _to_e164(f"+{digits}")

    if digits.startswith("0"):
        # ``00`` international prefixes differ per region and are not guessed at.
        if digits.startswith("00"):
            return None
        return _to_e164(f"+{country_code}{digits[1:]}")

    # A bare subscriber number must be a real number of the home region.
    region = _home_region(country_code)
    if region is None:
        return None
    return _to_e164(digits, region, require_valid=True)


def _format_components(phone: Mapping[str, Any], country_code: str) -> str | None:
    """Build a number from the accounting provider's component fields."""
    raw_number = str(phone.get("PhoneNumber") or "").strip()
    if raw_number.startswith("+"):
        return raw_number

    number = _digits(raw_number)
    if not number:
        return None

    cc = _digits(str(phone.get("PhoneCountryCode") or "")) or country_code
    area = _digits(str(phone.get("PhoneAreaCode") or ""))

    # National trunk zeros are dropped once a country code is attached.
    national = (area + number).lstrip("0")
    if not national:
        return None
    return _to_e164(f"+{cc}{national}")


def normalize_phone(
    value: str | Mapping[str, Any] | None,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
) -> str | None:
    """Normalise a phone representation to E.164.

    Parameters
    ----------
    value:
        Either a free-text phone string or a mapping with the accounting
        provider's ``PhoneCountryCode`` / ``PhoneAreaCode`` / ``PhoneNumber``
        fields.
    default_country_code:
        Home-region country code (digits only) used when the input carries
        none.

    Returns
    -------
    str | None
        ``+<digits>`` or ``None`` when the input cannot be formatted.
    """
    country_code = _digits(default_country_code) or DEFAULT_COUNTRY_CODE

    if value is None:
        return None
    if isinstance(value, Mapping):
        return _format_components(value, country_code)
    if not isinstance(value, str):
        return None
    return _format_string(value, country_code)
