# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Package registry backed by the ``snaps`` state key.

Maps an installed snap name to its current metadata.
"""

import logging
from typing import Dict

from ..core.exceptions import NoStateError, SnapNotFoundError
from ..core.state import State
from .info import SnapInfo

logger = logging.getLogger("quotactl.registry")


def _snaps(st: State) -> Dict[str, dict]:
    try:
        return st.get("snaps")
    except NoStateError:
        return {}


def current_info(st: State, name: str) -> SnapInfo:
    """
    Metadata of the current revision of snap name.

    Raises:
        SnapNotFoundError: If the snap is not installed
    """
    record = _snaps(st).get(name)
    if record is None:
        raise SnapNotFoundError(name)
    return SnapInfo.from_dict(record)


def all_snap_infos(st: State) -> Dict[str, SnapInfo]:
    return {name: SnapInfo.from_dict(record) for name, record in _snaps(st).items()}


def add_snap_info(st: State, info: SnapInfo):
    """Register (or replace) the current metadata of a snap"""
    snaps = _snaps(st)
    snaps[info.name] = info.to_dict()
    st.set("snaps", snaps)
    logger.info(f"Registered snap {info.name} revision {info.revision}")


def remove_snap_info(st: State, name: str):
    snaps = _snaps(st)
    if name not in snaps:
        raise SnapNotFoundError(name)
    del snaps[name]
    st.set("snaps", snaps)
    logger.info(f"Unregistered snap {name}")


class StateRegistry:
    """Package registry collaborator over the state document"""

    def current_info(self, st: State, name: str) -> SnapInfo:
        return current_info(st, name)
