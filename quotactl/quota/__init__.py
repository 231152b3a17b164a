# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Quota group model and cross-reference resolution."""

from .group import (
    MIN_MEMORY_LIMIT,
    QuotaGroup,
    new_group,
    validate_group_name,
    validate_memory_limit,
)
from .resolve import descendants, resolve_cross_references
from .size import format_memory_size, parse_memory_size

__all__ = [
    "MIN_MEMORY_LIMIT",
    "QuotaGroup",
    "new_group",
    "validate_group_name",
    "validate_memory_limit",
    "resolve_cross_references",
    "descendants",
    "parse_memory_size",
    "format_memory_size",
]
