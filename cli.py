# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""quotactl CLI - manage memory quota groups for snap services"""

import json
import sys
from contextlib import contextmanager
from pathlib import Path

import click

from quotactl import __version__
from quotactl.core.config import load_config, set_config
from quotactl.core.exceptions import QuotactlError
from quotactl.core.features import all_flags, set_flag
from quotactl.core.logger import setup_logging
from quotactl.core.state import State
from quotactl.quota.size import format_memory_size, parse_memory_size
from quotactl.servicestate import (
    QuotaGroupUpdate,
    all_quotas,
    create_quota,
    get_quota,
    remove_quota,
    remove_snap_from_quota,
    update_quota,
)
from quotactl.snap.info import SnapInfo
from quotactl.snap.registry import add_snap_info, all_snap_infos


class MemorySize(click.ParamType):
    """Memory size with optional K/M/G/T suffix"""
    name = "size"

    def convert(self, value, param, ctx):
        if isinstance(value, int):
            return value
        try:
            return parse_memory_size(value)
        except ValueError as e:
            self.fail(str(e), param, ctx)


MEMORY_SIZE = MemorySize()


@contextmanager
def _locked_state(ctx: click.Context):
    st = State.load(ctx.obj.paths.state_file)
    with st.locked():
        yield st


def _fail(e: Exception):
    message = e.message if isinstance(e, QuotactlError) else str(e)
    click.echo(f"[-] Error: {message}", err=True)
    sys.exit(1)


def _echo_report(report):
    if not report.changed:
        click.echo("    Units already up to date")
        return
    for slice_name in report.restarts.restarted_slices:
        click.echo(f"    Restarted {slice_name}")
    if report.restarts.removed_slice:
        click.echo(f"    Removed {report.restarts.removed_slice}")
    for snap, services in sorted(report.restarts.started_services.items()):
        click.echo(f"    Restarted {len(services)} services of {snap}")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Extra YAML config file",
)
@click.pass_context
def cli(ctx: click.Context, config_file: str):
    """quotactl - memory quota groups for snap services.

    Groups form a tree; each group becomes a systemd slice and the
    services of its snaps run inside that slice.

    Examples:
        quotactl create web --memory-max 1G svc-a
        quotactl create api --parent web --memory-max 512M svc-b
        quotactl update web --add svc-c
        quotactl list
    """
    try:
        config = load_config(Path(config_file) if config_file else None)
    except QuotactlError as e:
        _fail(e)
    set_config(config)
    setup_logging(config)
    ctx.obj = config


# =============================================================================
# Quota groups
# =============================================================================


@cli.command()
@click.argument("name")
@click.argument("snaps", nargs=-1)
@click.option("--parent", "-p", default="", help="Create as sub-group of this group")
@click.option("--memory-max", "-m", type=MEMORY_SIZE, required=True, help="Memory limit, e.g. 512M")
@click.pass_context
def create(ctx: click.Context, name: str, snaps, parent: str, memory_max: int):
    """Create quota group NAME containing SNAPS."""
    try:
        with _locked_state(ctx) as st:
            report = create_quota(st, name, parent, list(snaps), memory_max)
    except QuotactlError as e:
        _fail(e)

    click.echo(f"[+] Created quota group {name}")
    _echo_report(report)


@cli.command()
@click.argument("name")
@click.option("--add", "-a", "add_snaps", multiple=True, help="Snap to add (repeatable)")
@click.option("--replace", is_flag=True, help="Make the --add snaps the complete membership")
@click.option("--memory-max", "-m", type=MEMORY_SIZE, default=0, help="New memory limit")
@click.option("--parent", "-p", default="", help="Move under this group")
@click.option("--orphan", is_flag=True, help="Detach from the current parent")
@click.pass_context
def update(
    ctx: click.Context,
    name: str,
    add_snaps,
    replace: bool,
    memory_max: int,
    parent: str,
    orphan: bool,
):
    """Change the snaps, limit or parent of quota group NAME.

    Examples:
        quotactl update web --add svc-c
        quotactl update web --replace --add svc-a --add svc-c
        quotactl update api --orphan
    """
    request = QuotaGroupUpdate(
        add_snaps=list(add_snaps),
        new_memory_limit=memory_max,
        replace_snaps=replace,
        new_parent_group=parent,
        orphan_sub_group=orphan,
    )
    try:
        changes = request.changes()
    except QuotactlError as e:
        _fail(e)
    if not changes:
        _fail(click.UsageError("nothing to update"))

    try:
        with _locked_state(ctx) as st:
            report = update_quota(st, name, *changes)
    except QuotactlError as e:
        _fail(e)

    click.echo(f"[+] Updated quota group {name}")
    _echo_report(report)


@cli.command()
@click.argument("name")
@click.pass_context
def remove(ctx: click.Context, name: str):
    """Remove quota group NAME (it must have no sub-groups)."""
    try:
        with _locked_state(ctx) as st:
            report = remove_quota(st, name)
    except QuotactlError as e:
        _fail(e)

    click.echo(f"[+] Removed quota group {name}")
    _echo_report(report)


@cli.command("remove-snap")
@click.argument("name")
@click.argument("snap")
@click.pass_context
def remove_snap(ctx: click.Context, name: str, snap: str):
    """Take SNAP out of quota group NAME."""
    try:
        with _locked_state(ctx) as st:
            report = remove_snap_from_quota(st, name, snap)
    except QuotactlError as e:
        _fail(e)

    click.echo(f"[+] Removed {snap} from quota group {name}")
    _echo_report(report)


@cli.command("list")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["text", "json"]),
    default="text",
    help="Output format",
)
@click.pass_context
def list_quotas(ctx: click.Context, output: str):
    """List all quota groups."""
    try:
        with _locked_state(ctx) as st:
            groups = all_quotas(st)
    except QuotactlError as e:
        _fail(e)

    if output == "json":
        click.echo(json.dumps([groups[n].to_state() for n in sorted(groups)], indent=2))
        return

    if not groups:
        click.echo("No quota groups")
        return

    click.echo(f"{'Quota':<24} {'Parent':<16} {'Memory':>8}  Snaps")
    for name in sorted(groups):
        grp = groups[name]
        click.echo(
            f"{name:<24} {grp.parent_group or '-':<16} "
            f"{format_memory_size(grp.memory_limit):>8}  {','.join(grp.snaps) or '-'}"
        )


@cli.command()
@click.argument("name")
@click.pass_context
def show(ctx: click.Context, name: str):
    """Show quota group NAME."""
    try:
        with _locked_state(ctx) as st:
            grp = get_quota(st, name)
    except QuotactlError as e:
        _fail(e)

    if grp is None:
        _fail(QuotactlError(f"quota group {name!r} does not exist"))

    click.echo(f"name:       {grp.name}")
    click.echo(f"slice:      {grp.slice_file_name()}")
    if grp.parent_group:
        click.echo(f"parent:     {grp.parent_group}")
    click.echo(f"memory-max: {format_memory_size(grp.memory_limit)}")
    if grp.sub_groups:
        click.echo(f"subgroups:  {', '.join(grp.sub_groups)}")
    click.echo(f"snaps:      {', '.join(grp.snaps) or '-'}")


# =============================================================================
# Feature flags
# =============================================================================


@cli.group()
def feature():
    """Experimental feature flags."""


def _set_feature(ctx: click.Context, flag: str, enabled: bool):
    try:
        with _locked_state(ctx) as st:
            set_flag(st, flag, enabled)
    except (QuotactlError, ValueError) as e:
        _fail(e)
    click.echo(f"[+] experimental.{flag}={str(enabled).lower()}")


@feature.command("enable")
@click.argument("flag")
@click.pass_context
def feature_enable(ctx: click.Context, flag: str):
    """Enable experimental FLAG, e.g. quota-groups."""
    _set_feature(ctx, flag, True)


@feature.command("disable")
@click.argument("flag")
@click.pass_context
def feature_disable(ctx: click.Context, flag: str):
    """Disable experimental FLAG."""
    _set_feature(ctx, flag, False)


@feature.command("list")
@click.pass_context
def feature_list(ctx: click.Context):
    """Show every experimental flag."""
    try:
        with _locked_state(ctx) as st:
            flags = all_flags(st)
    except QuotactlError as e:
        _fail(e)
    for flag, enabled in flags.items():
        click.echo(f"experimental.{flag}={str(enabled).lower()}")


# =============================================================================
# Installed snaps
# =============================================================================


@cli.group()
def snap():
    """Installed snaps known to quotactl."""


@snap.command("add")
@click.argument("snap_yaml", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def snap_add(ctx: click.Context, snap_yaml: str):
    """Register a snap from its snap.yaml."""
    try:
        info = SnapInfo.from_yaml(Path(snap_yaml).read_text(encoding="utf-8"))
        with _locked_state(ctx) as st:
            add_snap_info(st, info)
    except (QuotactlError, ValueError) as e:
        _fail(e)

    click.echo(f"[+] Registered {info.name} ({len(info.services())} services)")


@snap.command("list")
@click.pass_context
def snap_list(ctx: click.Context):
    """List registered snaps and their services."""
    try:
        with _locked_state(ctx) as st:
            infos = all_snap_infos(st)
    except QuotactlError as e:
        _fail(e)

    if not infos:
        click.echo("No snaps")
        return
    for name in sorted(infos):
        services = ", ".join(app.name for app in infos[name].services()) or "-"
        click.echo(f"{name:<24} {infos[name].revision:<8} {services}")


if __name__ == "__main__":
    cli()
