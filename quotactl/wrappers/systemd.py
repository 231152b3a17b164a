# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
systemctl client.

Thin synchronous wrapper over ``systemctl`` used for slice and service
control. Every call carries its own timeout; a call that runs over raises
SystemdTimeoutError and a non-zero exit raises SystemdError.

The runner is injectable (same call signature as ``subprocess.run``) so
tests can record invocations without a running service manager.
"""

import logging
import re
import subprocess
from typing import Callable, Dict, List, Optional, Sequence

from ..core.exceptions import SystemdError, SystemdTimeoutError

logger = logging.getLogger("quotactl.systemd")

_VERSION_RE = re.compile(r"^systemd\s+(\d+)")

# timeout for quick queries (version, is-enabled, daemon-reload)
QUERY_TIMEOUT = 30.0


class Systemd:
    """Service manager control through systemctl"""

    def __init__(
        self,
        systemctl: str = "systemctl",
        mode: str = "system",
        runner: Optional[Callable[..., subprocess.CompletedProcess]] = None,
    ):
        self.systemctl = systemctl
        self.mode = mode
        self._runner = runner or subprocess.run

    def _command(self, args: Sequence[str]) -> List[str]:
        cmd = [self.systemctl]
        if self.mode == "user":
            cmd.append("--user")
        cmd.extend(args)
        return cmd

    def _run(
        self, *args: str, timeout: float = QUERY_TIMEOUT, check: bool = True
    ) -> subprocess.CompletedProcess:
        cmd = self._command(args)
        logger.debug(f"Running command: {' '.join(cmd)}")

        try:
            result = self._runner(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise SystemdTimeoutError(
                f"{' '.join(cmd)} timed out after {timeout}s",
                timeout=timeout,
                command=cmd,
                cause=e,
            ) from e
        except FileNotFoundError as e:
            raise SystemdError(
                f"{self.systemctl} not found", command=cmd, cause=e
            ) from e

        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise SystemdError(
                stderr or f"{' '.join(cmd)} failed with exit code {result.returncode}",
                command=cmd,
                exit_code=result.returncode,
            )
        return result

    def version(self) -> int:
        """Major version of the running systemd"""
        result = self._run("--version")
        first_line = (result.stdout or "").splitlines()[:1]
        match = _VERSION_RE.match(first_line[0]) if first_line else None
        if match is None:
            raise SystemdError(
                f"cannot parse systemd version from {result.stdout!r}",
                command=self._command(["--version"]),
            )
        return int(match.group(1))

    def daemon_reload(self):
        self._run("daemon-reload")

    def restart(self, unit: str, timeout: float):
        logger.debug(f"Restarting {unit}")
        self._run("restart", unit, timeout=timeout)

    def stop(self, unit: str, timeout: float):
        logger.debug(f"Stopping {unit}")
        self._run("stop", unit, timeout=timeout)

    def stop_units(self, units: Sequence[str], timeout: float):
        if units:
            self._run("stop", *units, timeout=timeout)

    def start_units(self, units: Sequence[str], timeout: float):
        if units:
            self._run("start", *units, timeout=timeout)

    def is_enabled(self, units: Sequence[str]) -> Dict[str, bool]:
        """
        Enablement of each unit.

        ``systemctl is-enabled`` exits non-zero when any unit is disabled,
        so the exit code is ignored and the per-unit lines are parsed.
        """
        if not units:
            return {}
        result = self._run("is-enabled", *units, check=False)
        lines = (result.stdout or "").splitlines()
        if len(lines) != len(units):
            raise SystemdError(
                f"unexpected is-enabled output for {len(units)} units: {result.stdout!r}",
                command=self._command(["is-enabled", *units]),
                exit_code=result.returncode,
            )
        return {
            unit: line.strip() in ("enabled", "enabled-runtime", "static", "alias")
            for unit, line in zip(units, lines)
        }
