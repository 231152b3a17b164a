# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Unit layer for snap services and quota group slices.

``UnitWriter.ensure_snap_services`` makes the on-disk units match the
desired options of a set of snaps:

- every quota group on the path of a snap's group gets a slice unit
  carrying its memory limit;
- every service of the snap gets a ``quota.conf`` drop-in placing it in
  its group's slice, or loses the drop-in when the snap is in no group.

Each unit whose content changes is reported to the observer callback
exactly once, tagged ``"slice"`` or ``"service"``. Units already matching
their desired content are left alone and not reported.
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

import jinja2

from ..core.exceptions import UnitSyncError
from ..quota.group import QuotaGroup
from ..snap.info import AppInfo, SnapInfo
from .systemd import Systemd

logger = logging.getLogger("quotactl.units")

SLICE_UNIT = "slice"
SERVICE_UNIT = "service"

DROP_IN_NAME = "quota.conf"

# observer(app, group, unit_type, unit_name, old_content, new_content)
UnitObserver = Callable[
    [Optional[AppInfo], Optional[QuotaGroup], str, str, str, str], None
]

_templates = jinja2.Environment(
    loader=jinja2.PackageLoader("quotactl.wrappers", "templates"),
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
)


@dataclass
class SnapServiceOptions:
    """Desired unit options for the services of one snap"""

    # groups from the top-level group down to the snap's own group
    quota_path: List[QuotaGroup] = field(default_factory=list)

    @property
    def quota_group(self) -> Optional[QuotaGroup]:
        return self.quota_path[-1] if self.quota_path else None


@dataclass
class EnsureSnapServicesOptions:
    """Options applying to a whole ensure_snap_services call"""
    preseeding: bool = False


class UnitWriter:
    """Writes slice units and service drop-ins and drives service control"""

    def __init__(
        self,
        unit_dir: Path,
        systemd: Systemd,
        service_timeout: float = 30.0,
    ):
        self.unit_dir = Path(unit_dir)
        self.systemd = systemd
        self.service_timeout = service_timeout

    # ==========================================================================
    # Unit files
    # ==========================================================================

    def _read(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as e:
            raise UnitSyncError(f"cannot read {path}", path=str(path), cause=e) from e

    def _write(self, path: Path, content: str):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_path, path)
        except OSError as e:
            raise UnitSyncError(f"cannot write {path}", path=str(path), cause=e) from e

    def _remove(self, path: Path):
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise UnitSyncError(f"cannot remove {path}", path=str(path), cause=e) from e

        # drop-in directories go away with their last file
        if path.name == DROP_IN_NAME:
            try:
                path.parent.rmdir()
            except OSError:
                logger.debug(f"Keeping non-empty {path.parent}")

    def slice_path(self, grp: QuotaGroup) -> Path:
        return self.unit_dir / grp.slice_file_name()

    def has_slice(self, grp: QuotaGroup) -> bool:
        return self.slice_path(grp).exists()

    def drop_in_path(self, app: AppInfo) -> Path:
        return self.unit_dir / f"{app.service_name()}.d" / DROP_IN_NAME

    def render_slice(self, grp: QuotaGroup) -> str:
        return _templates.get_template("slice.j2").render(group=grp)

    def render_drop_in(self, grp: QuotaGroup) -> str:
        return _templates.get_template("service-quota.conf.j2").render(
            group=grp, slice=grp.slice_file_name()
        )

    # ==========================================================================
    # Unit sync
    # ==========================================================================

    def ensure_snap_services(
        self,
        snap_svc_map: Dict[str, Tuple[SnapInfo, SnapServiceOptions]],
        opts: EnsureSnapServicesOptions,
        observe: Optional[UnitObserver] = None,
    ):
        """
        Bring slice units and service drop-ins in line with snap_svc_map.

        Args:
            snap_svc_map: snap name -> (current info, desired options)
            opts: Options for the whole call
            observe: Called once per unit whose content changed

        Raises:
            UnitSyncError: If a unit file cannot be read or written
            SystemdError: If reloading the service manager fails
        """
        changed = False
        seen_slices: Set[str] = set()

        for snap_name in sorted(snap_svc_map):
            info, svc_opts = snap_svc_map[snap_name]

            for grp in svc_opts.quota_path:
                slice_name = grp.slice_file_name()
                if slice_name in seen_slices:
                    continue
                seen_slices.add(slice_name)

                path = self.slice_path(grp)
                old = self._read(path)
                new = self.render_slice(grp)
                if old != new:
                    self._write(path, new)
                    changed = True
                    logger.debug(f"Updated slice unit {slice_name}")
                    if observe:
                        observe(None, grp, SLICE_UNIT, slice_name, old, new)

            grp = svc_opts.quota_group
            for app in info.services():
                path = self.drop_in_path(app)
                old = self._read(path)
                new = self.render_drop_in(grp) if grp is not None else ""
                if old == new:
                    continue

                if new:
                    self._write(path, new)
                else:
                    self._remove(path)
                changed = True
                logger.debug(f"Updated quota drop-in of {app.service_name()}")
                if observe:
                    observe(app, grp, SERVICE_UNIT, app.service_name(), old, new)

        if changed and not opts.preseeding:
            self.systemd.daemon_reload()

    def remove_quota_group(self, grp: QuotaGroup, opts: Optional[EnsureSnapServicesOptions] = None):
        """Remove the slice unit of a deleted quota group"""
        path = self.slice_path(grp)
        if not path.exists():
            return
        self._remove(path)
        logger.info(f"Removed slice unit {grp.slice_file_name()}")

        if opts is None or not opts.preseeding:
            self.systemd.daemon_reload()

    # ==========================================================================
    # Service control
    # ==========================================================================

    def query_disabled_services(self, info: SnapInfo) -> Set[str]:
        """Names of the snap's services that are administratively disabled"""
        services = info.services()
        enabled = self.systemd.is_enabled([app.service_name() for app in services])
        return {app.name for app in services if not enabled[app.service_name()]}

    def stop_services(self, apps: List[AppInfo], reason: str):
        if not apps:
            return
        units = [app.service_name() for app in apps]
        logger.info(f"Stopping {', '.join(units)} ({reason})")
        self.systemd.stop_units(units, timeout=self.service_timeout)

    def start_services(self, apps: List[AppInfo], disabled: Set[str]):
        """Start apps one at a time in the given order, skipping disabled ones"""
        for app in apps:
            if app.name in disabled:
                logger.debug(f"Not starting disabled service {app.service_name()}")
                continue
            self.systemd.start_units([app.service_name()], timeout=self.service_timeout)
