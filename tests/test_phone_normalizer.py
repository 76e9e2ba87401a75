import pytest

from app.errors import InvalidPhone
from app.services.phone_normalizer import country_code_for, is_phone_shaped, normalize_phone


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("5551234567", "+15551234567"),
        ("(555) 123-4567", "+15551234567"),
        ("555.123.4567", "+15551234567"),
        ("15551234567", "+15551234567"),
        ("1-555-123-4567", "+15551234567"),
        ("+1 (555) 123-4567", "+15551234567"),
        ("+44 20 7946 0958", "+442079460958"),
        ("  +923001234567  ", "+923001234567"),
    ],
)
def test_normalize_phone_canonical_forms(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize(
    "raw,reason",
    [
        (None, "MissingPhone"),
        ("", "MissingPhone"),
        ("   ", "MissingPhone"),
        ("+12345", "InvalidInternationalFormat"),
        ("+1555abc4567", "InvalidInternationalFormat"),
        ("12345", "InvalidFormat"),
        ("25551234567", "InvalidFormat"),
        ("555123456789", "InvalidFormat"),
    ],
)
def test_normalize_phone_rejections_carry_reason(raw, reason):
    with pytest.raises(InvalidPhone) as exc:
        normalize_phone(raw)
    assert exc.value.reason == reason
    assert exc.value.status_code == 400
    assert exc.value.detail["reason"] == reason


@pytest.mark.parametrize("raw", ["5551234567", "1 555 123 4567", "+44 20 7946 0958", "+923001234567"])
def test_normalize_phone_is_idempotent(raw):
    once = normalize_phone(raw)
    assert normalize_phone(once) == once


def test_country_code_for_known_and_unknown_prefixes():
    assert country_code_for("+15551234567") == "+1"
    assert country_code_for("+442079460958") == "+44"
    assert country_code_for("+923001234567") == "+92"


def test_is_phone_shaped():
    assert is_phone_shaped("(555) 123-4567")
    assert is_phone_shaped("+15551234567")
    assert not is_phone_shaped("john@example.com")
    assert not is_phone_shaped("2024-01-05")
    assert not is_phone_shaped(None)
