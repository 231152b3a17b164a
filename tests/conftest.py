# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Shared fixtures: locked state, fake systemctl, unit directory and backend."""

import subprocess
import sys
from pathlib import Path

import pytest

# Add the project root (quotactl and cli.py) to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from quotactl.core.config import (
    ObservabilityConfig,
    PathsConfig,
    QuotactlConfig,
    set_config,
)
from quotactl.core.features import QUOTA_GROUPS, set_flag
from quotactl.core.state import State
from quotactl.servicestate.backend import ServiceBackend, set_service_backend
from quotactl.snap.info import SnapInfo
from quotactl.snap.registry import add_snap_info

MiB = 1024 * 1024

SNAPS = {
    "svc-a": {
        "name": "svc-a",
        "apps": {
            "server": {"daemon": "simple"},
            "worker": {"daemon": "simple", "after": ["server"]},
            "cli": {},
        },
    },
    "svc-b": {
        "name": "svc-b",
        "apps": {"api": {"daemon": "notify"}},
    },
    "svc-c": {
        "name": "svc-c",
        "apps": {
            "db": {"daemon": "forking", "before": ["cache"]},
            "cache": {"daemon": "simple"},
        },
    },
}


class FakeSystemctl:
    """
    Stand-in for subprocess.run that records systemctl invocations.

    Every call is recorded without the binary name (and without --user);
    verbs listed in ``failures`` exit 1 with the given stderr.
    """

    def __init__(self, version: int = 249):
        self.version = version
        self.calls = []
        self.timeouts = []
        self.disabled = set()
        self.failures = {}

    def __call__(self, cmd, capture_output=True, text=True, timeout=None):
        args = list(cmd[1:])
        if args and args[0] == "--user":
            args = args[1:]
        self.calls.append(args)
        self.timeouts.append(timeout)

        verb = args[0]
        if verb in self.failures:
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr=self.failures[verb])

        stdout = ""
        if verb == "--version":
            stdout = f"systemd {self.version} ({self.version}.11-0ubuntu3)\n+PAM +AUDIT\n"
        elif verb == "is-enabled":
            stdout = "".join(
                "disabled\n" if unit in self.disabled else "enabled\n" for unit in args[1:]
            )
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    def commands(self, *verbs):
        """Recorded calls whose verb is one of verbs (all calls when none given)"""
        return [c for c in self.calls if not verbs or c[0] in verbs]

    def reset(self):
        self.calls.clear()
        self.timeouts.clear()


@pytest.fixture
def systemctl():
    return FakeSystemctl()


@pytest.fixture
def unit_dir(tmp_path):
    path = tmp_path / "units"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path, unit_dir):
    """Configuration pointing every path into tmp_path"""
    cfg = QuotactlConfig(
        paths=PathsConfig(
            home=tmp_path,
            state_file=tmp_path / "state.json",
            unit_dir=unit_dir,
            log_dir=tmp_path / "logs",
        ),
        observability=ObservabilityConfig(file_logging=False),
    )
    set_config(cfg)
    yield cfg
    set_config(None)


@pytest.fixture
def backend(config, systemctl):
    """Default collaborators wired to the fake systemctl and tmp unit dir"""
    be = ServiceBackend.from_config(config, runner=systemctl)
    set_service_backend(be)
    yield be
    set_service_backend(None)


def register_snaps(st: State):
    for record in SNAPS.values():
        add_snap_info(st, SnapInfo.from_dict(record))


@pytest.fixture
def st():
    """Locked in-memory state with the test snaps and quota groups enabled"""
    state = State()
    with state.locked():
        register_snaps(state)
        set_flag(state, QUOTA_GROUPS, True)
        yield state


@pytest.fixture
def bare_state():
    """Locked in-memory state with nothing in it"""
    state = State()
    with state.locked():
        yield state
