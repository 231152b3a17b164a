# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Reconciliation of one quota group with the unit layer.

Given a freshly mutated (or just deleted) group and the current group
set, rewrite the units of every snap in the group plus any extra snaps,
collect which slices and services actually changed, and hand them to the
restart sequencer. Running it again without a mutation in between finds
no changed units and restarts nothing.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..core.state import State
from ..quota.group import QuotaGroup
from ..snap.info import AppInfo, SnapInfo
from ..wrappers.services import (
    SERVICE_UNIT,
    SLICE_UNIT,
    EnsureSnapServicesOptions,
    SnapServiceOptions,
)
from .backend import ServiceBackend, get_service_backend
from .sequencer import RestartPhase, RestartReport, RestartSequencer, SnapRestart

logger = logging.getLogger("quotactl.reconcile")


@dataclass
class ReconcileReport:
    """Outcome of reconciling one group"""
    group: str
    snaps: List[str] = field(default_factory=list)
    modified_slices: List[str] = field(default_factory=list)
    modified_services: Dict[str, List[str]] = field(default_factory=dict)
    restarts: RestartReport = field(default_factory=RestartReport)
    phases: List[RestartPhase] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.modified_slices or self.modified_services or self.restarts.changed)


def ensure_snap_services_for_group(
    st: State,
    grp: QuotaGroup,
    all_grps: Dict[str, QuotaGroup],
    extra_snaps: Optional[Iterable[str]] = None,
    backend: Optional[ServiceBackend] = None,
) -> ReconcileReport:
    """
    Make the units of grp's snaps (and extra_snaps) match all_grps.

    Args:
        st: Locked state
        grp: The group that was just mutated or deleted
        all_grps: The current, resolved group set
        extra_snaps: Snaps outside grp whose units must be re-synced too,
            e.g. a snap that was just removed from grp
        backend: Collaborators, defaults to the process-wide backend

    Returns:
        ReconcileReport describing changed units and restarts

    Raises:
        SnapNotFoundError: If a snap is no longer installed
        ReconciliationError: If writing units or restarting fails; units
            and restarts applied before the failure stay in place
    """
    backend = backend or get_service_backend()

    snap_names = list(grp.snaps)
    for name in extra_snaps or ():
        if name not in snap_names:
            snap_names.append(name)

    snap_svc_map: Dict[str, Tuple[SnapInfo, SnapServiceOptions]] = {}
    for name in snap_names:
        info = backend.registry.current_info(st, name)
        opts = backend.options.snap_service_options(st, name, all_grps)
        snap_svc_map[name] = (info, opts)

    ensure_opts = EnsureSnapServicesOptions(preseeding=backend.preseeding)

    slices_to_restart: Dict[str, QuotaGroup] = {}
    apps_to_restart: Dict[str, List[AppInfo]] = {}
    report = ReconcileReport(group=grp.name, snaps=snap_names)

    def collect_modified_units(
        app: Optional[AppInfo],
        unit_grp: Optional[QuotaGroup],
        unit_type: str,
        name: str,
        old: str,
        new: str,
    ):
        if unit_type == SLICE_UNIT:
            if unit_grp.name not in slices_to_restart:
                slices_to_restart[unit_grp.name] = unit_grp
                report.modified_slices.append(name)
        elif unit_type == SERVICE_UNIT:
            apps_to_restart.setdefault(app.snap, []).append(app)
            report.modified_services.setdefault(app.snap, []).append(name)

    backend.units.ensure_snap_services(snap_svc_map, ensure_opts, collect_modified_units)

    removed_group = grp if grp.name not in all_grps else None

    sequencer = RestartSequencer(
        backend,
        slices=list(slices_to_restart.values()),
        snaps=[
            SnapRestart(info=snap_svc_map[name][0], apps=apps_to_restart[name])
            for name in sorted(apps_to_restart)
        ],
        removed_group=removed_group,
        opts=ensure_opts,
    )
    report.restarts = sequencer.run()
    report.phases = list(sequencer.history)

    if report.changed:
        logger.info(
            f"Reconciled quota group {grp.name}: "
            f"{len(report.modified_slices)} slices, "
            f"{sum(len(v) for v in report.modified_services.values())} services changed"
        )
    else:
        logger.debug(f"Quota group {grp.name} already up to date")

    return report
