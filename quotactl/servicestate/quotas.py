# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Group set store.

The whole set of quota groups lives under the ``quotas`` state key as a
mapping of group name to group record. It is always read in full and
resolved before use, and always written in full after resolution, so the
persisted set never holds a half-applied mutation.
"""

import logging
from typing import Dict, Optional

from ..core.exceptions import InconsistentQuotasError, NoStateError
from ..core.state import State
from ..quota.group import QuotaGroup
from ..quota.resolve import resolve_cross_references

logger = logging.getLogger("quotactl.quotas")

QUOTAS_KEY = "quotas"


def all_quotas(st: State) -> Dict[str, QuotaGroup]:
    """
    Load and resolve every quota group.

    Returns:
        Mapping of group name to group (empty when none are stored)

    Raises:
        InconsistentQuotasError: If the stored set is malformed
    """
    try:
        raw = st.get(QUOTAS_KEY)
    except NoStateError:
        return {}

    if not isinstance(raw, dict):
        raise InconsistentQuotasError("stored quota groups are not a mapping")

    groups = {name: QuotaGroup.from_state(record) for name, record in raw.items()}
    resolve_cross_references(groups)
    return groups


def get_quota(st: State, name: str) -> Optional[QuotaGroup]:
    """The named group, or None if it does not exist"""
    return all_quotas(st).get(name)


def replace_quotas(st: State, groups: Dict[str, QuotaGroup]) -> Dict[str, QuotaGroup]:
    """
    Resolve groups and store them as the complete group set.

    Nothing is written when resolution fails.
    """
    resolve_cross_references(groups)
    st.set(QUOTAS_KEY, {name: groups[name].to_state() for name in sorted(groups)})
    return groups


def patch_quotas(st: State, *grps: QuotaGroup) -> Dict[str, QuotaGroup]:
    """
    Overlay grps on the stored set, resolve and store the result.

    The given group objects become members of the returned set, so their
    derived bookkeeping reflects the new hierarchy.
    """
    groups = all_quotas(st)
    for grp in grps:
        groups[grp.name] = grp
    logger.debug(f"Patching quota groups {', '.join(g.name for g in grps)}")
    return replace_quotas(st, groups)


def set_quota(st: State, grp: QuotaGroup):
    """Store a single group"""
    patch_quotas(st, grp)
