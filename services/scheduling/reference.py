"""
services/scheduling/reference.py
Human-facing booking references such as MW-7KQ2XH9D.
"""

import random
from typing import Optional

from config.settings import settings

# Uppercase letters and digits without the look-alikes 0/O and 1/I/L
REFERENCE_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"


def generate_reference(
    prefix: Optional[str] = None,
    length: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> str:
    """
    Random reference: PREFIX-XXXXXXXX. URL-safe and already normalized.
    Not cryptographically unpredictable; uniqueness is enforced by storage.
    """
    prefix = settings.BOOKING_REFERENCE_PREFIX if prefix is None else prefix
    length = settings.BOOKING_REFERENCE_LENGTH if length is None else length
    suffix = "".join((rng or random).choices(REFERENCE_ALPHABET, k=length))
    return f"{prefix.upper()}-{suffix}"


def normalize_reference(reference: str) -> str:
    """References are case-insensitive; store and compare them upper-cased."""
    return reference.strip().upper()
