# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Cross-reference resolution for a set of quota groups.

The persisted group set only stores names: ``parent_group`` and
``sub_groups``. Resolution checks that those links agree in both
directions, that the hierarchy is a forest, that every snap belongs to at
most one group, and then fills in each group's ancestor path.
"""

import logging
from typing import Dict, List

from ..core.exceptions import InconsistentQuotasError, InvalidQuotaGroupError
from .group import QuotaGroup

logger = logging.getLogger("quotactl.quota")


def resolve_cross_references(groups: Dict[str, QuotaGroup]):
    """
    Validate the group set and complete the derived bookkeeping.

    Args:
        groups: Mapping of group name to group; updated in place

    Raises:
        InconsistentQuotasError: If any cross-reference invariant is violated
    """
    for key, grp in groups.items():
        if key != grp.name:
            raise InconsistentQuotasError(
                f"group has name {grp.name!r}, but is referenced as {key!r}"
            )
        try:
            grp.validate_group()
        except InvalidQuotaGroupError as e:
            raise InconsistentQuotasError(
                f"group {key!r} is invalid: {e.message}", cause=e
            ) from e

    for name, grp in groups.items():
        if grp.parent_group:
            parent = groups.get(grp.parent_group)
            if parent is None:
                raise InconsistentQuotasError(
                    f"missing group {grp.parent_group!r} referenced as the "
                    f"parent of group {name!r}"
                )
            if name not in parent.sub_groups:
                raise InconsistentQuotasError(
                    f"group {grp.parent_group!r} does not reference necessary "
                    f"child group {name!r}"
                )

        for sub_name in grp.sub_groups:
            sub = groups.get(sub_name)
            if sub is None:
                raise InconsistentQuotasError(
                    f"missing group {sub_name!r} referenced as the sub-group "
                    f"of group {name!r}"
                )
            if sub.parent_group != name:
                raise InconsistentQuotasError(
                    f"group {sub_name!r} is referenced as a sub-group of "
                    f"{name!r}, but has parent {sub.parent_group!r}"
                )

    owners: Dict[str, str] = {}
    for name in sorted(groups):
        for snap in groups[name].snaps:
            if snap in owners:
                raise InconsistentQuotasError(
                    f"snap {snap!r} is in both group {owners[snap]!r} "
                    f"and group {name!r}"
                )
            owners[snap] = name

    for name, grp in groups.items():
        grp._path = _ancestor_path(groups, name)


def _ancestor_path(groups: Dict[str, QuotaGroup], name: str) -> List[str]:
    path = []
    seen = set()
    current = name
    while current:
        if current in seen:
            raise InconsistentQuotasError(
                f"group {name!r} has circular parent references"
            )
        seen.add(current)
        path.append(current)
        current = groups[current].parent_group
    path.reverse()
    return path


def descendants(groups: Dict[str, QuotaGroup], name: str) -> List[str]:
    """Names of every group nested (at any depth) under group name"""
    result = []
    stack = list(groups[name].sub_groups)
    while stack:
        current = stack.pop()
        if current in result:
            continue
        result.append(current)
        stack.extend(groups[current].sub_groups)
    return result
