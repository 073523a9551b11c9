"""Thin CLI wrapper for goldenimage.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from goldenimage import __version__
from goldenimage.config import get_settings, print_settings_json

app = typer.Typer(
    name="goldenimage",
    help="Golden image builder - synthesize media, build and package VM boxes",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Route log records through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"goldenimage version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """Golden image builder - synthesize media, build and package VM boxes."""
    configure_logging(log_level or get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Config document:     {settings.config_path}")
        console.print(f"  Scratch root:        {settings.scratch_root}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]External tools:[/bold]")
        console.print(f"  Build engine:        {' '.join(settings.engine_command)}")
        console.print(f"  Compositor:          {' '.join(settings.compositor_command)}")
        console.print(f"  Passphrase:          {' '.join(settings.passphrase_command)}")
        console.print(f"  Registry:            {' '.join(settings.registry_command)}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Disk format:         {settings.disk_format}")
        console.print(f"  Stale grace (hours): {settings.stale_workspace_grace_hours}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Compositor timeout:  {settings.compositor_timeout}")
        console.print(f"  Registry timeout:    {settings.registry_timeout}")
        console.print(f"  Lease wait:          {settings.lease_timeout}")


@app.command()
def versions(
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Configuration document"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List OS versions defined in the configuration document."""
    from goldenimage.catalog import load_config_document, resolve_paths
    from goldenimage.errors import GoldenImageError

    path = config_path or get_settings().config_path
    try:
        document = load_config_document(path)
        resolved = [
            resolve_paths(document, v, base_dir=path.parent, check_inputs=False)
            for v in sorted(document.versions)
        ]
    except GoldenImageError as e:
        console.print(f"[red]Error ({e.code}): {e.message}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print_json(data=[p.model_dump(mode="json") for p in resolved])
        return

    if not resolved:
        console.print("[yellow]No versions defined[/yellow]")
        return

    table = Table(title="Configured versions")
    table.add_column("Version", style="green")
    table.add_column("Artifact")
    table.add_column("Source media")
    table.add_column("Box")
    for p in resolved:
        box_state = "present" if p.box_path.exists() else "missing"
        table.add_row(p.version, p.artifact_name, str(p.source_image), box_state)
    console.print(table)


@app.command()
def build(
    version: Annotated[str, typer.Argument(help="OS version tag to build")],
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Rebuild even if the box is fresh"),
    ] = False,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Configuration document"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build the golden box for an OS version."""
    from goldenimage.builds.service import build_golden_image
    from goldenimage.db import open_history
    from goldenimage.errors import GoldenImageError

    settings = get_settings()
    factory = open_history(settings.db_url)

    try:
        outcome = build_golden_image(
            version,
            settings=settings,
            force=force,
            session_factory=factory,
            config_path=config_path,
        )
    except GoldenImageError as e:
        console.print(f"[red]Error ({e.code}): {e.message}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        output = {
            "version": outcome.version,
            "state": outcome.state.value,
            "short_circuited": outcome.short_circuited,
            "media_strategy": (
                outcome.media_strategy.value if outcome.media_strategy else None
            ),
            "box_path": str(outcome.box_path) if outcome.box_path else None,
            "record_path": str(outcome.record_path) if outcome.record_path else None,
            "log_path": str(outcome.log_path) if outcome.log_path else None,
            "error": (
                {"code": outcome.error.code, "message": outcome.error.message}
                if outcome.error
                else None
            ),
            "warnings": [str(w) for w in outcome.warnings],
        }
        console.print_json(data=output)
    elif outcome.short_circuited:
        console.print(
            f"[green]Box for {outcome.version} is up to date: {outcome.box_path}[/green]"
        )
    elif outcome.succeeded:
        console.print(f"[green]Built {outcome.version}[/green]")
        console.print(f"  Box:         {outcome.box_path}")
        console.print(f"  Credentials: {outcome.record_path}")
        console.print(f"  Engine log:  {outcome.log_path}")
    else:
        console.print(f"[red]Build of {outcome.version} failed[/red]")
        if outcome.error is not None:
            console.print(f"[red]{outcome.error.code}: {outcome.error.message}[/red]")
        if outcome.record_path:
            console.print(f"  Credentials: {outcome.record_path}")

    if not json_output:
        for warning in outcome.warnings:
            console.print(f"[yellow]Warning: {warning}[/yellow]")

    if not outcome.succeeded:
        raise typer.Exit(code=1)


@app.command()
def history(
    version: Annotated[
        str | None,
        typer.Option("--version", "-v", help="Filter by OS version"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show build history."""
    from goldenimage.builds.service import list_builds
    from goldenimage.db import open_history

    factory = open_history()

    with factory() as session:
        builds = list_builds(session, version=version, limit=limit)

        if not builds:
            if json_output:
                console.print_json(data=[])
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "id": b.id,
                    "version": b.version,
                    "artifact_name": b.artifact_name,
                    "state": b.state,
                    "media_strategy": b.media_strategy,
                    "short_circuited": b.short_circuited,
                    "box_path": b.box_path,
                    "error_type": b.error_type,
                    "requested_at": (
                        b.requested_at.isoformat() if b.requested_at else None
                    ),
                    "finished_at": b.finished_at.isoformat() if b.finished_at else None,
                }
                for b in builds
            ]
            console.print_json(data=output)
            return

        table = Table(title="Build history")
        table.add_column("ID", justify="right")
        table.add_column("Version", style="green")
        table.add_column("State")
        table.add_column("Media")
        table.add_column("Requested")
        table.add_column("Error")
        for b in builds:
            state = "skipped (fresh)" if b.short_circuited else b.state
            table.add_row(
                str(b.id),
                b.version,
                state,
                b.media_strategy or "-",
                b.requested_at.strftime("%Y-%m-%d %H:%M") if b.requested_at else "-",
                b.error_type or "",
            )
        console.print(table)


@app.command()
def boxes(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List registered golden boxes."""
    from goldenimage.errors import GoldenImageError
    from goldenimage.packaging.registry import VagrantRegistry

    settings = get_settings()
    registry = VagrantRegistry(
        settings.registry_command, timeout=settings.registry_timeout
    )
    try:
        golden = registry.list_golden_boxes()
    except GoldenImageError as e:
        console.print(f"[red]Error ({e.code}): {e.message}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print_json(
            data=[
                {
                    "name": b.name,
                    "version": b.version,
                    "os_name": b.os_name,
                    "provider": b.provider,
                    "box_version": b.box_version,
                }
                for b in golden
            ]
        )
        return

    if not golden:
        console.print("[yellow]No golden boxes registered[/yellow]")
        return

    console.print(f"[bold]Found {len(golden)} golden box(es):[/bold]")
    for b in golden:
        console.print(f"  [green]{b.name}[/green] ({b.provider}, OS {b.version})")


@app.command()
def clean() -> None:
    """Remove scratch directories left by interrupted runs."""
    from goldenimage.builds.service import clean_scratch

    removed, failed = clean_scratch()
    for path in removed:
        console.print(f"  Removed {path}")
    for path in failed:
        console.print(f"  [yellow]Could not remove {path}[/yellow]")
    console.print(f"[bold]{len(removed)} removed, {len(failed)} left[/bold]")
    if failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
