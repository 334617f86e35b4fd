"""
skillsync CLI -- thin, non-interactive entry point.

    skillsync configure github-gist -s token=ghp_...
    skillsync sync --direction push --dry-run
    skillsync status
    skillsync conflicts
    skillsync resolve <conflict-id> remote

Each invocation builds its own engine from the settings in SKILLSYNC_HOME.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import SKILLSYNC_HOME, __version__
from .adapters import AdapterError
from .engine import (
    ConflictNotFoundError,
    SyncEngine,
    SyncInProgressError,
    configure_sync_engine,
)
from .models import ConflictStrategy, SyncDirection, SyncStatus

console = Console()

_STATUS_STYLE = {
    SyncStatus.IDLE: "[bold green]IDLE[/]",
    SyncStatus.SYNCING: "[bold cyan]SYNCING[/]",
    SyncStatus.CONFLICT: "[bold yellow]CONFLICT[/]",
    SyncStatus.ERROR: "[bold red]ERROR[/]",
}


def _parse_settings(pairs: tuple[str, ...]) -> dict[str, str]:
    credentials = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--set")
        credentials[key.strip().replace("-", "_")] = value
    return credentials


def _engine(home: str) -> SyncEngine:
    return SyncEngine.from_home(Path(home).expanduser())


@click.group()
@click.version_option(version=__version__, prog_name="skillsync")
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity to stderr.")
def main(verbose):
    """skillsync -- keep skills, workflows and settings in sync across machines."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")


@main.command()
@click.argument("provider", type=click.Choice(["local", "github-gist", "webdav", "s3"]))
@click.option("--set", "-s", "pairs", multiple=True, metavar="KEY=VALUE",
              help="Provider setting, e.g. -s token=... (repeatable).")
@click.option("--home", default=SKILLSYNC_HOME, type=click.Path())
@click.option("--test/--no-test", default=True, help="Try connecting afterwards.")
def configure(provider, pairs, home, test):
    """Store provider credentials and check the connection."""
    try:
        engine = configure_sync_engine(provider, _parse_settings(pairs), home=Path(home))
    except ValidationError as exc:
        console.print(f"[bold red]Invalid {provider} settings:[/]")
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"])
            console.print(f"  [red]{field}[/]: {error['msg']}")
        sys.exit(1)

    console.print(f"\n  Provider [cyan]{provider}[/] saved.")
    if test:
        console.print("  Testing connection...", end=" ")
        ok = engine.test_connection()
        engine.shutdown()
        console.print("[green]ok[/]" if ok else "[red]failed[/]")
        if not ok:
            sys.exit(1)
    console.print()


@main.command()
@click.option("--home", default=SKILLSYNC_HOME, type=click.Path())
@click.option("--direction", type=click.Choice([d.value for d in SyncDirection]),
              default=None, help="Override the configured direction.")
@click.option("--strategy", type=click.Choice([s.value for s in ConflictStrategy]),
              default=None, help="Override the conflict strategy.")
@click.option("--dry-run", is_flag=True, help="Show the plan without changing anything.")
@click.option("--force", is_flag=True, help="Apply the strategy without recording conflicts.")
def sync(home, direction, strategy, dry_run, force):
    """Run one sync pass."""
    engine = _engine(home)
    if engine.adapter is None:
        console.print("[bold red]No provider configured.[/] Run skillsync configure first.")
        sys.exit(1)

    overrides = {}
    if direction:
        overrides["direction"] = SyncDirection(direction)
    if strategy:
        overrides["conflict_strategy"] = ConflictStrategy(strategy)
    config = engine.config.model_copy(update=overrides)

    try:
        result = engine.perform_sync(config, dry_run=dry_run, force=force)
    except SyncInProgressError as exc:
        console.print(f"[yellow]{exc}[/]")
        sys.exit(1)
    finally:
        engine.shutdown()

    title = "Sync plan" if dry_run else "Sync result"
    console.print(f"\n  [bold]{title}[/] ({result.direction.value}, {result.duration_ms} ms)")
    for item in result.pushed:
        console.print(f"    [green]push[/]   {item.type.value}/{item.id}  v{item.version}")
    for item in result.pulled:
        console.print(f"    [cyan]pull[/]   {item.type.value}/{item.id}  v{item.version}")
    for item_id in result.deleted:
        console.print(f"    [magenta]delete[/] {item_id}")
    for conflict in result.conflicts:
        outcome = conflict.resolution.value if conflict.resolution else "pending"
        console.print(f"    [yellow]conflict[/] {conflict.item_id} -> {outcome}")
    for error in result.errors:
        console.print(f"    [red]{error.code.value}[/] {error.item_id or ''} {error.message}")
    if not (result.pushed or result.pulled or result.deleted or result.conflicts):
        console.print("    [dim]Everything up to date.[/]")
    console.print()

    if not result.success:
        sys.exit(1)


@main.command()
@click.option("--home", default=SKILLSYNC_HOME, type=click.Path())
def status(home):
    """Show sync state and cumulative statistics."""
    state = _engine(home).get_sync_state()
    stats = state.stats
    last = state.last_sync_at.strftime("%Y-%m-%d %H:%M:%S UTC") if state.last_sync_at else "never"

    console.print(f"\n  Status:     {_STATUS_STYLE.get(state.status, state.status.value)}")
    console.print(f"  Last sync:  {last}")
    if state.last_error:
        console.print(f"  Last error: [red]{state.last_error}[/]")
    console.print(
        f"  Synced:     {stats.total_synced} "
        f"([green]{stats.pushed}[/] pushed, [cyan]{stats.pulled}[/] pulled)"
    )
    console.print(f"  Conflicts:  {len(state.conflicts)} pending, "
                  f"{stats.conflicts_resolved} resolved")
    console.print(f"  Failures:   {stats.failures}\n")


@main.command()
@click.option("--home", default=SKILLSYNC_HOME, type=click.Path())
@click.option("--diff", "show_diff", is_flag=True,
              help="Show each conflict's changes and what every strategy would do.")
def conflicts(home, show_diff):
    """List conflicts awaiting a decision."""
    engine = _engine(home)
    pending = engine.get_conflicts()
    if not pending:
        console.print("\n  [green]No conflicts.[/]\n")
        return

    table = Table(title="Conflicts", show_lines=False)
    table.add_column("ID", style="dim")
    table.add_column("Item", style="cyan")
    table.add_column("Local", justify="right")
    table.add_column("Remote", justify="right")
    table.add_column("State")
    for conflict in pending:
        state = (
            f"[green]{conflict.resolution.value}[/] (next sync)"
            if conflict.resolved else f"[yellow]pending[/] {conflict.reason or ''}"
        )
        table.add_row(
            conflict.id,
            f"{conflict.item_type.value}/{conflict.item_id}",
            f"v{conflict.local_item.version}",
            f"v{conflict.remote_item.version}",
            state,
        )
    console.print()
    console.print(table)
    console.print()

    if show_diff:
        try:
            for conflict in pending:
                _print_preview(engine, conflict)
        finally:
            engine.shutdown()


def _print_preview(engine: SyncEngine, conflict) -> None:
    console.print(f"  [bold cyan]{conflict.item_id}[/]")
    try:
        preview = engine.preview_conflict(conflict.id)
    except (AdapterError, ValueError) as exc:
        console.print(f"    [red]Preview unavailable:[/] {exc}\n")
        return
    if preview.diff is not None:
        console.print(f"    Changes: {preview.diff.summary}")
        for sign, entries in (
            ("+", preview.diff.additions),
            ("-", preview.diff.deletions),
            ("~", preview.diff.modifications),
        ):
            for entry in entries:
                console.print(f"      {sign} {escape(entry)}")
    for strategy, resolution in preview.outcomes.items():
        if resolution.is_manual:
            verdict = f"[yellow]manual[/] ({resolution.reason})"
        elif resolution.item is None:
            verdict = f"{resolution.outcome.value} (deleted)"
        else:
            verdict = f"{resolution.outcome.value} v{resolution.item.version}"
        console.print(f"    {strategy.value:<12} -> {verdict}")
    console.print()


@main.command()
@click.argument("conflict_id")
@click.argument("outcome", type=click.Choice(["local", "remote", "merged"]))
@click.option("--home", default=SKILLSYNC_HOME, type=click.Path())
def resolve(conflict_id, outcome, home):
    """Decide a conflict; the choice is applied on the next sync."""
    engine = _engine(home)
    try:
        conflict = engine.resolve_conflict(conflict_id, outcome)
    except ConflictNotFoundError as exc:
        console.print(f"[bold red]{exc}[/]")
        sys.exit(1)
    except (AdapterError, ValueError, SyncInProgressError) as exc:
        console.print(f"[red]Cannot resolve:[/] {exc}")
        sys.exit(1)
    finally:
        engine.shutdown()
    console.print(
        f"\n  [green]Resolved[/] {conflict.item_id} as [cyan]{outcome}[/]. "
        "Run skillsync sync to apply.\n"
    )


if __name__ == "__main__":
    main()
