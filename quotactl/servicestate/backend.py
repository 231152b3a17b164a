# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Collaborators of the quota control plane.

The quota operations only talk to the outside world through the
protocols below. ``ServiceBackend`` bundles one implementation of each;
``ServiceBackend.from_config`` wires the default implementations
(state-backed registry and feature flags, systemctl, on-disk units).
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Set, Tuple

from ..core.config import QuotactlConfig, get_config
from ..core.features import StateFeatures
from ..core.state import State
from ..quota.group import QuotaGroup
from ..snap.info import AppInfo, SnapInfo, sort_services
from ..snap.registry import StateRegistry
from ..wrappers.services import (
    EnsureSnapServicesOptions,
    SnapServiceOptions,
    UnitObserver,
    UnitWriter,
)
from ..wrappers.systemd import Systemd
from .service_options import HierarchyOptionsResolver


class PackageRegistry(Protocol):
    def current_info(self, st: State, name: str) -> SnapInfo:
        ...


class OptionsResolver(Protocol):
    def snap_service_options(
        self, st: State, snap: str, all_grps: Optional[Dict[str, QuotaGroup]]
    ) -> SnapServiceOptions:
        ...


class UnitSync(Protocol):
    def ensure_snap_services(
        self,
        snap_svc_map: Dict[str, Tuple[SnapInfo, SnapServiceOptions]],
        opts: EnsureSnapServicesOptions,
        observe: Optional[UnitObserver] = None,
    ) -> None:
        ...

    def has_slice(self, grp: QuotaGroup) -> bool:
        ...

    def remove_quota_group(
        self, grp: QuotaGroup, opts: Optional[EnsureSnapServicesOptions] = None
    ) -> None:
        ...

    def query_disabled_services(self, info: SnapInfo) -> Set[str]:
        ...

    def stop_services(self, apps: List[AppInfo], reason: str) -> None:
        ...

    def start_services(self, apps: List[AppInfo], disabled: Set[str]) -> None:
        ...


class ServiceManager(Protocol):
    def restart(self, unit: str, timeout: float) -> None:
        ...

    def stop(self, unit: str, timeout: float) -> None:
        ...

    def version(self) -> int:
        ...


class FeatureFlags(Protocol):
    def is_enabled(self, st: State, flag: str) -> bool:
        ...


@dataclass
class ServiceBackend:
    """Everything the quota operations need from outside the core"""
    registry: PackageRegistry
    options: OptionsResolver
    units: UnitSync
    systemd: ServiceManager
    features: FeatureFlags
    sort_services: Callable[[List[AppInfo]], List[AppInfo]] = sort_services
    slice_timeout: float = 5.0
    min_systemd_version: int = 205
    preseeding: bool = False

    @classmethod
    def from_config(
        cls,
        config: Optional[QuotactlConfig] = None,
        runner: Optional[Callable] = None,
    ) -> "ServiceBackend":
        """
        Default collaborators for a configuration.

        Args:
            config: Configuration, defaults to the global one
            runner: Replacement for subprocess.run used by the systemctl client
        """
        config = config or get_config()
        systemd = Systemd(
            systemctl=config.systemd.systemctl,
            mode=config.systemd.mode,
            runner=runner,
        )
        return cls(
            registry=StateRegistry(),
            options=HierarchyOptionsResolver(),
            units=UnitWriter(
                unit_dir=config.paths.unit_dir,
                systemd=systemd,
                service_timeout=config.systemd.service_timeout_seconds,
            ),
            systemd=systemd,
            features=StateFeatures(),
            slice_timeout=config.systemd.slice_timeout_seconds,
            min_systemd_version=config.systemd.min_version,
            preseeding=config.systemd.preseeding,
        )


_backend: Optional[ServiceBackend] = None


def get_service_backend() -> ServiceBackend:
    """Get the process-wide ServiceBackend, built from config on first use"""
    global _backend
    if _backend is None:
        _backend = ServiceBackend.from_config()
    return _backend


def set_service_backend(backend: Optional[ServiceBackend]):
    """Replace the process-wide ServiceBackend (None resets to config defaults)"""
    global _backend
    _backend = backend
