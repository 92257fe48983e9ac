"""
CrossVault CLI.

    crossvault reconcile replication.yaml [--dry-run] [--no-wait]
    crossvault plan replication.yaml
    crossvault validate replication.yaml
    crossvault status replication.yaml
    crossvault decommission replication.yaml SRC_DOMAIN SRC_PATH DEST_DOMAIN DEST_PATH

Exit codes: 0 when every target is Synced (Planned in a dry run),
1 when any target Failed, 2 on invalid configuration.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .audit import audit_event
from .config import ReplicationConfig, load_config
from .errors import ConfigError, StateError
from .models import PolicyScope, SecretRef, TargetKey
from .planner import PolicyPlanner
from .policy import render
from .reconciler import Reconciler, ReconcileResult
from .state_store import ReplicationStateStore

console = Console()
logger = logging.getLogger("crossvault.cli")

EXIT_FAILED = 1
EXIT_CONFIG = 2


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def _load(config_path: str) -> ReplicationConfig:
    try:
        return load_config(Path(config_path))
    except ConfigError as exc:
        console.print(f"[bold red]Invalid configuration:[/] {exc}")
        sys.exit(EXIT_CONFIG)


def _open_store(config: ReplicationConfig) -> ReplicationStateStore:
    try:
        return ReplicationStateStore(config.settings.state_path)
    except StateError as exc:
        console.print(f"[bold red]{exc}[/]")
        sys.exit(EXIT_FAILED)


def _state_markup(result: ReconcileResult) -> str:
    if result.ok:
        return f"[bold green]{result.state.value}[/]"
    kind = result.failure.value if result.failure else "?"
    return f"[bold red]Failed({kind})[/]"


def _patch_summary(result: ReconcileResult) -> str:
    parts = []
    for label, patch in (("key", result.key_patch), ("secret", result.secret_patch)):
        if patch is None:
            continue
        parts.append(f"{label} +{len(patch.to_add)}/-{len(patch.to_remove)}")
    return ", ".join(parts) or "-"


@click.group()
@click.version_option(version=__version__, prog_name="crossvault")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def main(verbose):
    """CrossVault: cross-account secret replication.

    Keeps replicas, their key policies and their resource policies
    convergent with the source secrets they copy.
    """
    _setup_logging(verbose)


@main.command("reconcile")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--dry-run", is_flag=True, help="Plan and diff only; write nothing.")
@click.option("--no-wait", is_flag=True, help="Fail targets already being reconciled instead of waiting.")
def reconcile_cmd(config_path, dry_run, no_wait):
    """Run one reconciliation pass over every configured target."""
    config = _load(config_path)
    store = _open_store(config)
    try:
        reconciler = Reconciler.from_config(config, store=store)
    except (ValueError, RuntimeError) as exc:
        console.print(f"[bold red]Cannot start:[/] {exc}")
        sys.exit(EXIT_CONFIG)

    logger.debug("Reconciling %d target(s)%s", len(config.targets), " (dry run)" if dry_run else "")
    results = reconciler.reconcile_all(
        config.replication_targets(),
        dry_run=dry_run,
        blocking=not no_wait,
        workers=config.settings.workers,
    )

    table = Table(title="Dry run" if dry_run else "Reconciliation")
    table.add_column("Target", style="cyan")
    table.add_column("Status")
    table.add_column("Source version")
    table.add_column("Policy patch")
    table.add_column("Writes")
    table.add_column("Attempts", justify="right")
    for r in results:
        table.add_row(
            str(r.target_key),
            _state_markup(r),
            r.source_version or "-",
            _patch_summary(r),
            ", ".join(r.writes) or "-",
            str(r.attempts),
        )
    console.print(table)

    failed = [r for r in results if not r.ok]
    for r in failed:
        console.print(f"  [red]{r.target_key}[/]: {r.error}")
    if failed:
        sys.exit(EXIT_FAILED)


@main.command("plan")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
def plan_cmd(config_path):
    """Print the planned key and secret policies for every target."""
    config = _load(config_path)
    planner = PolicyPlanner(config.settings.consumer_tag_key)
    domains = config.resolved_domains()
    output = {}
    for target in config.replication_targets():
        dest = domains[target.dest_domain]
        entry = {"secret_policy": render(planner.plan(target.consumer_tags, dest, PolicyScope.SECRET))}
        if target.dest_key_ref:
            entry["key_policy"] = render(planner.plan(target.consumer_tags, dest, PolicyScope.KEY))
        output[str(target.key)] = entry
    click.echo(json.dumps(output, indent=2, sort_keys=True))


@main.command("validate")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
def validate_cmd(config_path):
    """Validate configuration without contacting any service."""
    config = _load(config_path)
    console.print(
        f"[green]OK[/] {len(config.targets)} target(s) across {len(config.domains)} domain(s)"
    )


@main.command("status")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
def status_cmd(config_path):
    """Show the last recorded outcome of every target."""
    config = _load(config_path)
    store = _open_store(config)
    records = {r.target_key: r for r in store.records()}

    table = Table(title="Replication records")
    table.add_column("Target", style="cyan")
    table.add_column("Status")
    table.add_column("Source version")
    table.add_column("Dest version")
    table.add_column("Last attempt")
    table.add_column("Attempts", justify="right")

    keys = [t.key for t in config.replication_targets()]
    keys += [k for k in records if k not in keys]
    for key in keys:
        record = records.get(key)
        if record is None:
            table.add_row(str(key), "[dim]never replicated[/]", "-", "-", "-", "0")
            continue
        status = record.status.value if record.status else "-"
        if record.last_failure:
            status += f" ({record.last_failure.value})"
        table.add_row(
            str(key),
            status,
            record.last_source_version or "-",
            record.last_dest_version or "-",
            record.last_attempt_at.isoformat() if record.last_attempt_at else "-",
            str(record.attempt_count),
        )
    console.print(table)


@main.command("decommission")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("source_domain")
@click.argument("source_path")
@click.argument("dest_domain")
@click.argument("dest_path")
@click.option("--yes", is_flag=True, help="Skip confirmation.")
def decommission_cmd(config_path, source_domain, source_path, dest_domain, dest_path, yes):
    """Forget the replication record of one target.

    The replica itself is left untouched.
    """
    config = _load(config_path)
    store = _open_store(config)
    key = TargetKey(
        source=SecretRef(domain=source_domain, path=source_path),
        dest_domain=dest_domain,
        dest_path=dest_path,
    )
    if not yes:
        click.confirm(f"Forget replication record {key}?", abort=True)
    if not store.decommission(key):
        console.print(f"[yellow]No record for {key}[/]")
        sys.exit(EXIT_FAILED)
    audit_event(config.settings.audit_path, "RECORD_DECOMMISSIONED", str(key), "Record removed by operator")
    console.print(f"[green]Decommissioned[/] {key}")
