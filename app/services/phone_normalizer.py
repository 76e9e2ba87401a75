import re

from app.errors import InvalidPhone


DEFAULT_COUNTRY_CODE = "+1"
TRUNK_DIGIT = "1"

_SEPARATORS = re.compile(r"[\s\-().]")
_INTERNATIONAL = re.compile(r"^\+\d{10,15}$")
_PHONE_SHAPE = re.compile(r"^\+?\d{10,15}$")
_KNOWN_COUNTRY_CODES = ("+92", "+44", "+1")


def normalize_phone(raw) -> str:
    """
    Canonical form is ``+<country><number>``.

    A leading ``+`` means the caller already gave an international number,
    which is only stripped of separators. Anything else is reduced to digits
    and read as a national number of the default country.
    """
    value = "" if raw is None else str(raw).strip()
    if not value:
        raise InvalidPhone("Missing phone number", reason="MissingPhone", value=value)

    if value.startswith("+"):
        phone = _SEPARATORS.sub("", value)
        if not _INTERNATIONAL.match(phone):
            raise InvalidPhone(
                "Invalid international format (must be +[country code][number])",
                reason="InvalidInternationalFormat",
                value=value,
            )
        return phone

    digits = re.sub(r"\D", "", value)
    if len(digits) == 10:
        return DEFAULT_COUNTRY_CODE + digits
    if len(digits) == 11 and digits.startswith(TRUNK_DIGIT):
        return "+" + digits

    raise InvalidPhone(
        "Invalid format (must be 10 digits or 1 followed by 10 digits)",
        reason="InvalidFormat",
        value=value,
    )


def is_phone_shaped(value) -> bool:
    if value is None:
        return False
    return bool(_PHONE_SHAPE.match(_SEPARATORS.sub("", str(value).strip())))


def country_code_for(phone: str) -> str:
    for code in _KNOWN_COUNTRY_CODES:
        if phone.startswith(code):
            return code
    match = re.match(r"^\+(\d{1,3})", phone or "")
    if match:
        return "+" + match.group(1)
    return DEFAULT_COUNTRY_CODE
