# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Experimental feature flags stored in the state document."""

import logging
from typing import Dict

from .exceptions import NoStateError
from .state import State

logger = logging.getLogger("quotactl.features")

QUOTA_GROUPS = "quota-groups"

KNOWN_FLAGS = (QUOTA_GROUPS,)


def _experimental(st: State) -> Dict[str, bool]:
    try:
        config = st.get("config")
    except NoStateError:
        return {}
    return config.get("core", {}).get("experimental", {})


def is_enabled(st: State, flag: str) -> bool:
    """Report whether ``experimental.<flag>`` is switched on"""
    return bool(_experimental(st).get(flag, False))


def set_flag(st: State, flag: str, enabled: bool):
    """Switch ``experimental.<flag>`` on or off"""
    if flag not in KNOWN_FLAGS:
        raise ValueError(f"unknown experimental feature {flag!r}")

    try:
        config = st.get("config")
    except NoStateError:
        config = {}

    config.setdefault("core", {}).setdefault("experimental", {})[flag] = enabled
    st.set("config", config)
    logger.info(f"experimental.{flag} set to {str(enabled).lower()}")


def all_flags(st: State) -> Dict[str, bool]:
    """Every known flag with its current value"""
    current = _experimental(st)
    return {flag: bool(current.get(flag, False)) for flag in KNOWN_FLAGS}


class StateFeatures:
    """Feature flag collaborator over the state document"""

    def is_enabled(self, st: State, flag: str) -> bool:
        return is_enabled(st, flag)
