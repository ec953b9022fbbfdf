"""
Input sanitization utilities for uploaded file names.
"""

import re
from typing import Optional

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(value: Optional[str], default: str = "attachment") -> str:
    """Reduce a client-supplied file name to ``[A-Za-z0-9._-]``.

    Path components are dropped, spaces become underscores and leading
    dots are stripped so the result is a safe single URL path segment.
    """
    if not value:
        return default
    # Keep only the last path component (browsers may send C:\fakepath\x.jpg)
    value = re.split(r"[\\/]", value.strip())[-1]
    value = value.replace(" ", "_")
    value = _UNSAFE.sub("", value)
    value = re.sub(r"\.{2,}", ".", value).lstrip(".")
    # Keep names well under common filesystem limits
    if len(value) > 120:
        stem, dot, ext = value.rpartition(".")
        value = (stem[: 120 - len(ext) - 1] + dot + ext) if dot and len(ext) <= 10 else value[:120]
    return value or default
