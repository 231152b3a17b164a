# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Snap metadata, service ordering and the package registry."""

from .info import AppInfo, SnapInfo, sort_services
from .registry import (
    StateRegistry,
    add_snap_info,
    all_snap_infos,
    current_info,
    remove_snap_info,
)

__all__ = [
    "AppInfo",
    "SnapInfo",
    "sort_services",
    "StateRegistry",
    "add_snap_info",
    "all_snap_infos",
    "current_info",
    "remove_snap_info",
]
