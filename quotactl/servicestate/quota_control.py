# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Quota group mutations.

Every operation follows the same three steps while the caller holds the
state lock:

1. validate the request against the current group set; a failure here
   leaves the state untouched;
2. persist every touched group as one patch (resolved first, so an
   inconsistent result is never written);
3. reconcile the unit layer for the mutated group.

A failure in step 3 does not undo step 2: the declared hierarchy is then
ahead of the live units until the next reconciliation of the group.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from ..core.exceptions import (
    ConflictingUpdateError,
    FeatureDisabledError,
    InconsistentQuotasError,
    QuotaGroupExistsError,
    QuotaGroupNotFoundError,
    QuotaGroupNotLeafError,
    QuotaValidationError,
    SnapAlreadyInGroupError,
    SnapNotFoundError,
    SnapNotInGroupError,
    SystemdTooOldError,
)
from ..core.features import QUOTA_GROUPS
from ..core.state import State
from ..quota.group import QuotaGroup, new_group, validate_memory_limit
from ..quota.resolve import descendants
from .backend import ServiceBackend, get_service_backend
from .quotas import all_quotas, patch_quotas, replace_quotas
from .reconcile import ReconcileReport, ensure_snap_services_for_group

logger = logging.getLogger("quotactl.quota_control")


# =============================================================================
# Update requests
# =============================================================================


@dataclass(frozen=True)
class AddSnaps:
    """Append snaps to the group"""
    snaps: List[str]


@dataclass(frozen=True)
class ReplaceSnaps:
    """Make snaps the complete membership of the group"""
    snaps: List[str]


@dataclass(frozen=True)
class Resize:
    """Set a new memory limit in bytes"""
    memory_limit: int


@dataclass(frozen=True)
class Reparent:
    """Move the group under another group"""
    parent: str


@dataclass(frozen=True)
class Orphan:
    """Detach the group from its parent"""


QuotaChange = Union[AddSnaps, ReplaceSnaps, Resize, Reparent, Orphan]


@dataclass
class QuotaGroupUpdate:
    """
    Flat form of an update, as front-ends collect it.

    ``new_memory_limit`` of zero means the limit is unchanged and
    ``replace_snaps`` turns ``add_snaps`` into the complete new membership,
    which must not be empty; removing every snap goes through
    remove_snap_from_quota or remove_quota.
    """
    add_snaps: List[str] = field(default_factory=list)
    new_memory_limit: int = 0
    replace_snaps: bool = False
    new_parent_group: str = ""
    orphan_sub_group: bool = False

    def changes(self) -> List[QuotaChange]:
        result: List[QuotaChange] = []
        if self.replace_snaps:
            if not self.add_snaps:
                raise QuotaValidationError("cannot replace the snaps of a quota group with no snaps")
            result.append(ReplaceSnaps(list(self.add_snaps)))
        elif self.add_snaps:
            result.append(AddSnaps(list(self.add_snaps)))
        if self.new_memory_limit != 0:
            result.append(Resize(self.new_memory_limit))
        if self.orphan_sub_group:
            result.append(Orphan())
        if self.new_parent_group:
            result.append(Reparent(self.new_parent_group))
        return result


@dataclass
class _UpdatePlan:
    membership: Optional[Union[AddSnaps, ReplaceSnaps]] = None
    resize: Optional[Resize] = None
    placement: Optional[Union[Reparent, Orphan]] = None


def _plan_changes(changes: Iterable[QuotaChange]) -> _UpdatePlan:
    plan = _UpdatePlan()
    for change in changes:
        if isinstance(change, (AddSnaps, ReplaceSnaps)):
            if plan.membership is not None:
                raise ConflictingUpdateError(
                    "cannot both add snaps to and replace the snaps of a quota group"
                    if type(plan.membership) is not type(change)
                    else "cannot change the snaps of a quota group twice in one update"
                )
            plan.membership = change
        elif isinstance(change, Resize):
            if plan.resize is not None:
                raise ConflictingUpdateError(
                    "cannot change the memory limit twice in one update"
                )
            plan.resize = change
        elif isinstance(change, (Reparent, Orphan)):
            if plan.placement is not None:
                if type(plan.placement) is not type(change):
                    raise ConflictingUpdateError(
                        "cannot both orphan a sub-group and move to a new parent group"
                    )
                raise ConflictingUpdateError(
                    "cannot move a quota group twice in one update"
                )
            plan.placement = change
        else:
            raise TypeError(f"unsupported quota change {change!r}")
    return plan


# =============================================================================
# Validation
# =============================================================================


def quota_groups_available(st: State, backend: ServiceBackend):
    """
    Check that quota groups can be used at all.

    Raises:
        FeatureDisabledError: If experimental.quota-groups is off
        SystemdTooOldError: If systemd is older than the configured minimum
    """
    if not backend.features.is_enabled(st, QUOTA_GROUPS):
        raise FeatureDisabledError(
            "experimental feature disabled - test it by setting "
            "'experimental.quota-groups' to true"
        )

    version = backend.systemd.version()
    if version < backend.min_systemd_version:
        raise SystemdTooOldError(
            f"systemd version too old: snap quotas requires systemd "
            f"{backend.min_systemd_version} and newer (currently have {version})",
            version=version,
            minimum=backend.min_systemd_version,
        )


def validate_snaps_for_group(
    st: State,
    snaps: Iterable[str],
    group: str,
    all_grps: Dict[str, QuotaGroup],
    backend: ServiceBackend,
    ignore_group: Optional[str] = None,
):
    """
    Check that every snap exists and is in no group (other than ignore_group).

    Raises:
        QuotaValidationError: If a snap is unknown or listed twice
        SnapAlreadyInGroupError: If a snap already belongs to a group
    """
    seen = set()
    for name in snaps:
        if name in seen:
            raise QuotaValidationError(
                f"cannot add snap {name!r} to group {group!r} more than once",
                group=group,
            )
        seen.add(name)

        try:
            backend.registry.current_info(st, name)
        except SnapNotFoundError as e:
            raise QuotaValidationError(
                f"cannot use snap {name!r} in group {group!r}: {e.message}",
                group=group,
                cause=e,
            ) from e

        for grp_name in sorted(all_grps):
            if grp_name == ignore_group:
                continue
            if name in all_grps[grp_name].snaps:
                raise SnapAlreadyInGroupError(
                    f"cannot add snap {name!r} to group {group!r}: "
                    f"snap already in quota group {grp_name!r}",
                    group=group,
                    snap=name,
                    existing_group=grp_name,
                )


def _without(names: List[str], name: str) -> List[str]:
    return [n for n in names if n != name]


# =============================================================================
# Operations
# =============================================================================


def create_quota(
    st: State,
    name: str,
    parent_name: str = "",
    snaps: Optional[List[str]] = None,
    memory_limit: int = 0,
    backend: Optional[ServiceBackend] = None,
) -> ReconcileReport:
    """
    Create quota group name with snaps in it, optionally under parent_name.

    Raises:
        QuotaValidationError: If the request is rejected (state untouched)
        ReconciliationError: If applying the new group to the units fails
            after it was persisted
    """
    backend = backend or get_service_backend()
    snaps = list(snaps or [])

    quota_groups_available(st, backend)

    all_grps = all_quotas(st)

    if name in all_grps:
        raise QuotaGroupExistsError(f"group {name!r} already exists", group=name)

    validate_snaps_for_group(st, snaps, name, all_grps, backend)

    updated = []
    if parent_name:
        parent = all_grps.get(parent_name)
        if parent is None:
            raise QuotaGroupNotFoundError(
                f"cannot create group under non-existent parent group {parent_name!r}",
                group=parent_name,
            )
        grp = parent.new_sub_group(name, memory_limit)
        updated.append(parent)
    else:
        grp = new_group(name, memory_limit)
    updated.append(grp)

    grp.snaps = snaps

    all_grps = patch_quotas(st, *updated)
    logger.info(
        f"Created quota group {name}"
        + (f" under {parent_name}" if parent_name else "")
        + f" with {len(snaps)} snaps"
    )

    return ensure_snap_services_for_group(st, grp, all_grps, backend=backend)


def remove_quota(
    st: State, name: str, backend: Optional[ServiceBackend] = None
) -> ReconcileReport:
    """
    Delete quota group name. Its snaps end up in no group.

    Only groups without sub-groups can be removed.

    Raises:
        QuotaGroupNotFoundError: If the group does not exist
        QuotaGroupNotLeafError: If the group still has sub-groups
        ReconciliationError: If tearing down the group's units fails
    """
    backend = backend or get_service_backend()

    all_grps = all_quotas(st)

    grp = all_grps.get(name)
    if grp is None:
        raise QuotaGroupNotFoundError(
            f"cannot remove non-existent quota group {name!r}", group=name
        )

    if grp.sub_groups:
        raise QuotaGroupNotLeafError(
            "cannot remove quota group with sub-groups, remove the sub-groups first",
            group=name,
        )

    if grp.parent_group:
        parent = all_grps.get(grp.parent_group)
        if parent is None:
            raise InconsistentQuotasError(
                f"internal error: parent group {grp.parent_group!r} of group "
                f"{name!r} does not exist"
            )
        parent.sub_groups = _without(parent.sub_groups, name)

    del all_grps[name]

    try:
        all_grps = replace_quotas(st, all_grps)
    except InconsistentQuotasError as e:
        raise InconsistentQuotasError(
            f"cannot remove quota {name!r}: {e.message}", cause=e
        ) from e
    logger.info(f"Removed quota group {name}")

    # grp is absent from all_grps now, so its slice gets torn down
    return ensure_snap_services_for_group(st, grp, all_grps, backend=backend)


def update_quota(
    st: State,
    name: str,
    *changes: QuotaChange,
    backend: Optional[ServiceBackend] = None,
) -> ReconcileReport:
    """
    Apply changes to quota group name in one step.

    Accepts at most one membership change (AddSnaps or ReplaceSnaps), one
    Resize and one placement change (Reparent or Orphan).

    Raises:
        ConflictingUpdateError: If changes cannot be combined or do not
            apply to the group's current placement
        QuotaValidationError: For unknown groups, snaps or invalid limits
        ReconciliationError: If applying the update to the units fails
            after it was persisted
    """
    backend = backend or get_service_backend()

    plan = _plan_changes(changes)

    quota_groups_available(st, backend)

    all_grps = all_quotas(st)

    grp = all_grps.get(name)
    if grp is None:
        raise QuotaGroupNotFoundError(f"group {name!r} does not exist", group=name)

    if isinstance(plan.placement, Orphan) and not grp.parent_group:
        raise ConflictingUpdateError(
            "cannot orphan a sub-group already without a parent", group=name
        )

    if isinstance(plan.placement, Reparent):
        new_parent_name = plan.placement.parent
        if new_parent_name not in all_grps:
            raise QuotaGroupNotFoundError(
                f"cannot move quota group {name!r} to non-existent parent "
                f"group {new_parent_name!r}",
                group=name,
            )
        if new_parent_name == name or new_parent_name in descendants(all_grps, name):
            raise ConflictingUpdateError(
                f"cannot move quota group {name!r} underneath itself or one "
                f"of its sub-groups",
                group=name,
            )
        if new_parent_name == grp.parent_group:
            raise ConflictingUpdateError(
                f"quota group {name!r} is already a sub-group of {new_parent_name!r}",
                group=name,
            )

    if isinstance(plan.membership, AddSnaps):
        validate_snaps_for_group(st, plan.membership.snaps, name, all_grps, backend)
    elif isinstance(plan.membership, ReplaceSnaps):
        validate_snaps_for_group(
            st, plan.membership.snaps, name, all_grps, backend, ignore_group=name
        )

    if plan.resize is not None:
        validate_memory_limit(name, plan.resize.memory_limit)

    # everything is validated, apply to the loaded copies
    modified: Dict[str, QuotaGroup] = {name: grp}
    dropped_snaps: List[str] = []

    if isinstance(plan.membership, AddSnaps):
        grp.snaps = grp.snaps + list(plan.membership.snaps)
    elif isinstance(plan.membership, ReplaceSnaps):
        dropped_snaps = [sn for sn in grp.snaps if sn not in plan.membership.snaps]
        grp.snaps = list(plan.membership.snaps)

    if plan.resize is not None:
        grp.memory_limit = plan.resize.memory_limit

    if plan.placement is not None and grp.parent_group:
        old_parent = all_grps.get(grp.parent_group)
        if old_parent is None:
            raise InconsistentQuotasError(
                f"internal error: existing parent group {grp.parent_group!r} "
                f"of group {name!r} does not exist"
            )
        old_parent.sub_groups = _without(old_parent.sub_groups, name)
        grp.parent_group = ""
        modified[old_parent.name] = old_parent

    if isinstance(plan.placement, Reparent):
        new_parent = all_grps[plan.placement.parent]
        new_parent.sub_groups = new_parent.sub_groups + [name]
        grp.parent_group = new_parent.name
        modified[new_parent.name] = new_parent

    all_grps = patch_quotas(st, *modified.values())
    logger.info(f"Updated quota group {name} ({len(changes)} changes)")

    return ensure_snap_services_for_group(
        st, grp, all_grps, extra_snaps=dropped_snaps, backend=backend
    )


def remove_snap_from_quota(
    st: State, group: str, snap: str, backend: Optional[ServiceBackend] = None
) -> ReconcileReport:
    """
    Take snap out of quota group group.

    The snap is reconciled along with the group: it is no longer a member,
    but its services must leave the group's slice.

    Raises:
        QuotaGroupNotFoundError: If the group does not exist
        SnapNotInGroupError: If snap is not a member of the group
    """
    backend = backend or get_service_backend()

    all_grps = all_quotas(st)

    grp = all_grps.get(group)
    if grp is None:
        raise QuotaGroupNotFoundError(f"quota group {group!r} does not exist", group=group)

    if snap not in grp.snaps:
        raise SnapNotInGroupError(
            f"snap {snap!r} is not in quota group {group!r}", group=group
        )

    grp.snaps = _without(grp.snaps, snap)

    all_grps = patch_quotas(st, grp)
    logger.info(f"Removed snap {snap} from quota group {group}")

    return ensure_snap_services_for_group(
        st, grp, all_grps, extra_snaps=[snap], backend=backend
    )
