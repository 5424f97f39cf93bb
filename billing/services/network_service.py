"""
Ghana phone normalization and carrier detection. Pure functions, no I/O.
"""
import re

from billing import config
from billing.exceptions import PurchaseValidationError

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw) -> str:
    """Return the number in 233XXXXXXXXX form where possible, else the bare digits."""
    digits = _NON_DIGITS.sub("", str(raw or ""))
    if digits.startswith(config.COUNTRY_CODE):
        return digits
    if digits.startswith("0"):
        return config.COUNTRY_CODE + digits[1:]
    if len(digits) == config.NATIONAL_NUMBER_LENGTH:
        return config.COUNTRY_CODE + digits
    return digits


def is_valid_phone(raw) -> bool:
    phone = normalize_phone(raw)
    return len(phone) == len(config.COUNTRY_CODE) + config.NATIONAL_NUMBER_LENGTH and phone.startswith(
        config.COUNTRY_CODE
    )


def detect_network(raw) -> str:
    """Carrier tag for a phone number, or UNKNOWN. Never raises."""
    prefix = normalize_phone(raw)[3:5]
    for network, prefixes in config.NETWORK_PREFIXES.items():
        if prefix in prefixes:
            return network
    return config.UNKNOWN_NETWORK


def ensure_network_matches(phone, bundle_network: str) -> str:
    """
    Reject numbers that are malformed, on an unknown carrier, or on a different
    carrier than the bundle. Returns the normalized phone.
    """
    if not is_valid_phone(phone):
        raise PurchaseValidationError(
            "Enter a valid Ghana phone number.",
            context={"recipient_phone": str(phone or "")},
        )
    detected = detect_network(phone)
    if detected == config.UNKNOWN_NETWORK:
        raise PurchaseValidationError(
            "Could not determine the network for this phone number.",
            context={"recipient_phone": str(phone)},
        )
    if detected != (bundle_network or "").upper():
        raise PurchaseValidationError(
            f"This number is on {detected}, but the bundle is for {bundle_network}.",
            context={"detected_network": detected, "bundle_network": bundle_network},
        )
    return normalize_phone(phone)
