# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Service manager wrappers: systemctl client and the unit layer."""

from .services import (
    SERVICE_UNIT,
    SLICE_UNIT,
    EnsureSnapServicesOptions,
    SnapServiceOptions,
    UnitWriter,
)
from .systemd import Systemd

__all__ = [
    "SERVICE_UNIT",
    "SLICE_UNIT",
    "EnsureSnapServicesOptions",
    "SnapServiceOptions",
    "UnitWriter",
    "Systemd",
]
