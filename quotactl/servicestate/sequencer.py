# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Restart sequencer.

Applies the restarts a reconciliation found necessary, in a fixed order:

    IDLE -> SLICES_RESTARTING -> SERVICES_STOPPING -> SERVICES_STARTING -> DONE

with FAILED reachable from every state. Slices are restarted first (and
the slice of a deleted group is stopped and removed). Then every affected
service of every snap is stopped, and finally each snap's full service
set is started in dependency order, skipping disabled services.

The first failure aborts the sequence. Restarts already applied stay
applied; nothing is rolled back or retried.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from ..core.exceptions import ErrorHandler
from ..quota.group import QuotaGroup
from ..snap.info import AppInfo, SnapInfo
from ..wrappers.services import EnsureSnapServicesOptions

logger = logging.getLogger("quotactl.sequencer")

STOP_REASON_QUOTA_GROUP_MODIFIED = "quota-group-modified"


class RestartPhase(Enum):
    """Restart sequence states"""
    IDLE = "idle"
    SLICES_RESTARTING = "slices-restarting"
    SERVICES_STOPPING = "services-stopping"
    SERVICES_STARTING = "services-starting"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    RestartPhase.IDLE: {RestartPhase.SLICES_RESTARTING},
    RestartPhase.SLICES_RESTARTING: {RestartPhase.SERVICES_STOPPING},
    RestartPhase.SERVICES_STOPPING: {RestartPhase.SERVICES_STARTING},
    RestartPhase.SERVICES_STARTING: {RestartPhase.DONE},
    RestartPhase.DONE: set(),
    RestartPhase.FAILED: set(),
}


@dataclass
class SnapRestart:
    """Services of one snap whose units changed"""
    info: SnapInfo
    apps: List[AppInfo]


@dataclass
class _StartPlan:
    restart: SnapRestart
    ordered: List[AppInfo]
    disabled: Set[str]


@dataclass
class RestartReport:
    """What a sequence actually did"""
    restarted_slices: List[str] = field(default_factory=list)
    removed_slice: Optional[str] = None
    stopped_services: Dict[str, List[str]] = field(default_factory=dict)
    started_services: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(
            self.restarted_slices
            or self.removed_slice
            or self.stopped_services
            or self.started_services
        )


class RestartSequencer:
    """One-shot restart state machine for a single reconciliation"""

    def __init__(
        self,
        backend,
        slices: List[QuotaGroup],
        snaps: List[SnapRestart],
        removed_group: Optional[QuotaGroup] = None,
        opts: Optional[EnsureSnapServicesOptions] = None,
    ):
        self.backend = backend
        self.slices = slices
        self.snaps = snaps
        self.removed_group = removed_group
        self.opts = opts or EnsureSnapServicesOptions()
        self.phase = RestartPhase.IDLE
        self.history: List[RestartPhase] = [RestartPhase.IDLE]
        self.report = RestartReport()

    def _enter(self, phase: RestartPhase):
        if phase != RestartPhase.FAILED and phase not in _TRANSITIONS[self.phase]:
            raise RuntimeError(
                f"invalid restart transition {self.phase.value} -> {phase.value}"
            )
        self.phase = phase
        self.history.append(phase)

    def run(self) -> RestartReport:
        """
        Run the whole sequence once.

        Raises:
            RuntimeError: If the sequencer was already run
            QuotactlError: Whatever the first failing step raised
        """
        if self.phase != RestartPhase.IDLE:
            raise RuntimeError(f"restart sequence already {self.phase.value}")

        try:
            self._enter(RestartPhase.SLICES_RESTARTING)
            self._restart_slices()

            self._enter(RestartPhase.SERVICES_STOPPING)
            plans = self._stop_services()

            self._enter(RestartPhase.SERVICES_STARTING)
            self._start_services(plans)

            self._enter(RestartPhase.DONE)
        except Exception as e:
            failed_in = self.phase
            self._enter(RestartPhase.FAILED)
            ErrorHandler.handle_exception(
                e, context={"restart_phase": failed_in.value}, reraise=False
            )
            raise

        return self.report

    def _restart_slices(self):
        timeout = self.backend.slice_timeout
        for grp in self.slices:
            slice_name = grp.slice_file_name()
            self.backend.systemd.restart(slice_name, timeout)
            self.report.restarted_slices.append(slice_name)
            logger.debug(f"Restarted slice {slice_name}")

        # a group missing from the current set was just deleted
        if self.removed_group is not None:
            slice_name = self.removed_group.slice_file_name()
            if not self.backend.units.has_slice(self.removed_group):
                logger.debug(f"Slice {slice_name} already removed")
                return
            self.backend.systemd.stop(slice_name, timeout)
            self.backend.units.remove_quota_group(self.removed_group, self.opts)
            self.report.removed_slice = slice_name
            logger.info(f"Stopped and removed slice {slice_name}")

    def _stop_services(self) -> List[_StartPlan]:
        plans = []
        for restart in self.snaps:
            # order and disabled set are computed before stopping anything so
            # a dependency cycle leaves the snap's services running
            disabled = self.backend.units.query_disabled_services(restart.info)
            ordered = self.backend.sort_services(restart.info.services())
            plans.append(_StartPlan(restart=restart, ordered=ordered, disabled=disabled))

        for plan in plans:
            name = plan.restart.info.name
            self.backend.units.stop_services(
                plan.restart.apps, STOP_REASON_QUOTA_GROUP_MODIFIED
            )
            self.report.stopped_services[name] = [
                app.service_name() for app in plan.restart.apps
            ]
        return plans

    def _start_services(self, plans: List[_StartPlan]):
        for plan in plans:
            name = plan.restart.info.name
            self.backend.units.start_services(plan.ordered, plan.disabled)
            self.report.started_services[name] = [
                app.service_name() for app in plan.ordered if app.name not in plan.disabled
            ]
