# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Snap metadata and service start ordering.

A snap carries a set of apps; apps with a ``daemon`` type are services
managed as ``snap.<snap>.<app>.service`` units. Services declare ordering
against their siblings with ``after`` and ``before``.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from ..core.exceptions import ServiceCycleError


@dataclass
class AppInfo:
    """One app of a snap"""
    name: str
    snap: str
    daemon: Optional[str] = None
    after: List[str] = field(default_factory=list)
    before: List[str] = field(default_factory=list)

    @property
    def is_service(self) -> bool:
        return bool(self.daemon)

    def service_name(self) -> str:
        """Unit name of the service, e.g. ``snap.svc-a.server.service``"""
        return f"snap.{self.snap}.{self.name}.service"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "daemon": self.daemon,
            "after": list(self.after),
            "before": list(self.before),
        }


@dataclass
class SnapInfo:
    """Current metadata of an installed snap"""
    name: str
    revision: str = "1"
    apps: Dict[str, AppInfo] = field(default_factory=dict)

    def services(self) -> List[AppInfo]:
        """Service apps sorted by name"""
        return [self.apps[name] for name in sorted(self.apps) if self.apps[name].is_service]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "revision": self.revision,
            "apps": {name: app.to_dict() for name, app in self.apps.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapInfo":
        """Create SnapInfo from its state record or a snap.yaml document"""
        if not isinstance(data, dict) or not data.get("name"):
            raise ValueError("snap metadata must be a mapping with a name")

        name = data["name"]
        apps = {}
        for app_name, app_data in (data.get("apps") or {}).items():
            app_data = app_data or {}
            apps[app_name] = AppInfo(
                name=app_name,
                snap=name,
                daemon=app_data.get("daemon"),
                after=list(app_data.get("after") or []),
                before=list(app_data.get("before") or []),
            )
        return cls(name=name, revision=str(data.get("revision", "1")), apps=apps)

    @classmethod
    def from_yaml(cls, text: str) -> "SnapInfo":
        """Parse a snap.yaml-like document"""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"cannot parse snap metadata: {e}") from e
        return cls.from_dict(data)


def sort_services(apps: List[AppInfo]) -> List[AppInfo]:
    """
    Order services so that every service starts after the ones it
    declares ``after`` and before the ones it declares ``before``.

    Only ordering between the given apps is considered. Ties are broken
    by app name so the order is stable.

    Raises:
        ServiceCycleError: If the ordering constraints form a cycle
    """
    by_name = {app.name: app for app in apps}

    # edge a -> b means a must start before b
    successors: Dict[str, set] = {name: set() for name in by_name}
    for app in apps:
        for dep in app.after:
            if dep in by_name:
                successors[dep].add(app.name)
        for dep in app.before:
            if dep in by_name:
                successors[app.name].add(dep)

    in_degree = {name: 0 for name in by_name}
    for targets in successors.values():
        for target in targets:
            in_degree[target] += 1

    queue = deque(sorted(name for name, degree in in_degree.items() if degree == 0))
    ordered = []

    while queue:
        name = queue.popleft()
        ordered.append(by_name[name])

        ready = []
        for target in successors[name]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                ready.append(target)
        queue.extend(sorted(ready))

    if len(ordered) != len(by_name):
        cycle = sorted(name for name, degree in in_degree.items() if degree > 0)
        raise ServiceCycleError(
            f"cannot sort services: dependency cycle involving {', '.join(cycle)}",
            cycle=cycle,
        )

    return ordered
