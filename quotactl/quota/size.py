# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Human-friendly memory sizes."""

import re

_UNITS = {
    "K": 1024,
    "M": 1024 ** 2,
    "G": 1024 ** 3,
    "T": 1024 ** 4,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KkMmGgTt])?[Bb]?\s*$")


def parse_memory_size(s: str) -> int:
    """
    Parse a memory size such as ``'512M'``, ``'1G'`` or ``'4096'`` to bytes.

    Suffixes are binary and case-insensitive; a trailing ``B`` is allowed.

    Raises:
        ValueError: If the string cannot be parsed
    """
    m = _SIZE_RE.match(s)
    if m is None:
        raise ValueError(f"invalid memory size: {s!r}")
    value = float(m.group(1))
    suffix = m.group(2)
    if suffix is not None:
        value *= _UNITS[suffix.upper()]
    return int(value)


def format_memory_size(size: int) -> str:
    """Largest exact unit for size, e.g. ``1073741824`` -> ``'1G'``"""
    for suffix in ("T", "G", "M", "K"):
        unit = _UNITS[suffix]
        if size >= unit and size % unit == 0:
            return f"{size // unit}{suffix}"
    return str(size)
