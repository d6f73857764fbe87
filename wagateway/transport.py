from __future__ import annotations

import re
from typing import Iterable

from .errors import InvalidArgument, InvalidPhoneNumber

DEFAULT_PHONE_ID = "default"
DEFAULT_DOMAIN = "s.whatsapp.net"
GROUP_DOMAIN = "g.us"

_PHONE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")
_MIN_DIGITS = 7
_MAX_DIGITS = 15


def _strip_digits(raw: str) -> str:
    return re.sub(r"\D", "", raw)


def normalize_phone_number(value: str | int | None) -> str:
    """Normalize a phone number to bare digits.

    Parameters
    ----------
    value:
        Phone number in any human format (``+1 (234) 567-8901``, ``62812...``).

    Returns
    -------
    str
        Digits only, between 7 and 15 characters long.

    Raises
    ------
    InvalidPhoneNumber
        If the value is empty or has the wrong number of digits.
    """

    if value is None:
        raise InvalidPhoneNumber("", "Phone number is required")
    raw = str(value).strip()
    if not raw:
        raise InvalidPhoneNumber("", "Phone number is required")
    digits = _strip_digits(raw)
    if not (_MIN_DIGITS <= len(digits) <= _MAX_DIGITS):
        raise InvalidPhoneNumber(digits, f"Invalid phone number format: {digits or raw}")
    return digits


def normalize_phone_id(value: str | None) -> str:
    if value is None:
        return DEFAULT_PHONE_ID
    cleaned = str(value).strip()
    if not cleaned:
        return DEFAULT_PHONE_ID
    if not _PHONE_ID_RE.match(cleaned):
        raise InvalidArgument("Invalid phoneId: use letters, digits, '.', '_' or '-' (max 64)")
    return cleaned


def to_jid(value: str | int | None, *, domain: str = DEFAULT_DOMAIN) -> str:
    """Expand a destination into the canonical address form.

    Already-qualified addresses (``<local>@<domain>``) are returned unchanged;
    bare numbers are reduced to digits and suffixed with ``domain``.
    """

    if value is None:
        raise InvalidArgument("Destination number is required")
    raw = str(value).strip()
    if not raw:
        raise InvalidArgument("Destination number is required")
    if "@" in raw:
        local, _, host = raw.partition("@")
        if not local or not host or "@" in host:
            raise InvalidArgument(
                "Invalid destination address. Use international format or a full address like "
                f"<number>@{domain}."
            )
        return raw
    try:
        digits = normalize_phone_number(raw)
    except InvalidPhoneNumber as exc:
        raise InvalidArgument(
            "Invalid phone number format. Use international format without + or with "
            f"@{domain} suffix."
        ) from exc
    return f"{digits}@{domain}"


def participants_to_jids(values: Iterable[str], *, domain: str = DEFAULT_DOMAIN) -> list[str]:
    jids = [to_jid(value, domain=domain) for value in values]
    if not jids:
        raise InvalidArgument("At least one participant is required")
    return jids


def is_group_jid(jid: str) -> bool:
    return jid.endswith(f"@{GROUP_DOMAIN}")


__all__ = [
    "DEFAULT_PHONE_ID",
    "DEFAULT_DOMAIN",
    "GROUP_DOMAIN",
    "normalize_phone_number",
    "normalize_phone_id",
    "to_jid",
    "participants_to_jids",
    "is_group_jid",
]
