# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Desired service options of a snap given the quota hierarchy."""

from typing import Dict, Optional

from ..core.exceptions import InconsistentQuotasError
from ..core.state import State
from ..quota.group import QuotaGroup
from ..wrappers.services import SnapServiceOptions
from .quotas import all_quotas


def snap_service_options(
    st: State, snap: str, all_grps: Optional[Dict[str, QuotaGroup]] = None
) -> SnapServiceOptions:
    """
    Options for the services of snap.

    A snap in a sub-group runs inside its group's slice, which is nested
    in the slices of every ancestor, so all of their limits apply.
    """
    if all_grps is None:
        all_grps = all_quotas(st)

    for grp in all_grps.values():
        if snap not in grp.snaps:
            continue
        try:
            path = [all_grps[name] for name in grp.path]
        except KeyError as e:
            raise InconsistentQuotasError(
                f"internal error: ancestor {e.args[0]!r} of group {grp.name!r} is missing"
            ) from None
        return SnapServiceOptions(quota_path=path)

    return SnapServiceOptions()


class HierarchyOptionsResolver:
    """Options resolver collaborator backed by snap_service_options"""

    def snap_service_options(
        self, st: State, snap: str, all_grps: Optional[Dict[str, QuotaGroup]]
    ) -> SnapServiceOptions:
        return snap_service_options(st, snap, all_grps)
