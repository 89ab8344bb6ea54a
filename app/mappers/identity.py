"""
app/mappers/identity.py

Business identity key normalization.
"""

from __future__ import annotations

import math
import re
from typing import Any

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]")


def normalize_identity_key(value: Any) -> str | None:
    """
    Reduce a raw container number to uppercase alphanumerics.

    ``"msku-123 4567"`` -> ``"MSKU1234567"``.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if value.is_integer():
            value = int(value)
    key = _NON_ALPHANUMERIC.sub("", str(value)).upper()
    return key or None


def is_valid_identity_key(key: str | None, *, min_length: int = 4) -> bool:
    return key is not None and len(key) >= min_length
