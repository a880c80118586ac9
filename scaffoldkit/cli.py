#!/usr/bin/env python3
"""scaffoldkit CLI - generate project trees from blueprints."""
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from scaffoldkit.cli_support import (
    handle_cli_error,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_file_logging,
)
from scaffoldkit.core.blueprint_loader import BlueprintLoader
from scaffoldkit.core.config import get_config
from scaffoldkit.core.errors import ScaffoldError
from scaffoldkit.core.logger import get_logger, set_verbose
from scaffoldkit.core.schema import parse_assignments
from scaffoldkit.core.session import generate as generate_project

app = typer.Typer(
    name="scaffoldkit",
    help="""scaffoldkit - Generate project trees from blueprints

Quick start:
  scaffoldkit list                                  # Browse blueprints
  scaffoldkit show cli-standard                     # Variables and files
  scaffoldkit generate cli-standard --var ProjectName=demo --output ./demo
""",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


def _loader(blueprints_dir: Optional[Path]) -> BlueprintLoader:
    if blueprints_dir is not None:
        return BlueprintLoader(blueprints_dir)
    try:
        return BlueprintLoader(get_config().blueprints_dir)
    except ScaffoldError as e:
        handle_cli_error(e, console)


@app.command()
def generate(
    blueprint_id: str = typer.Argument(..., help="Blueprint id (see 'scaffoldkit list')"),
    var: Optional[List[str]] = typer.Option(None, "--var", "-v", help="Variable binding KEY=VALUE (repeatable)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Destination project root"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite files that already exist"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Render in memory and list the files, write nothing"),
    blueprints_dir: Optional[Path] = typer.Option(None, "--blueprints-dir", help="Directory holding blueprints"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", min=1, help="Render worker threads"),
    verbose: bool = typer.Option(False, "--verbose", help="Show per-file decisions"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also log to this file"),
):
    """Generate a project from a blueprint.

    Examples:
        scaffoldkit generate cli-standard --var ProjectName=demo --var Logger=zap -o demo
        scaffoldkit generate workspace --var EnableCLI=false --dry-run
    """
    set_verbose(verbose)
    try:
        config = get_config()
        if log_file or config.log_file:
            setup_file_logging(log_file or config.log_file, verbose=verbose)

        raw_vars = parse_assignments(var or [])
        dest_root = output
        if dest_root is None and not dry_run:
            dest_root = Path.cwd() / blueprint_id
        result = generate_project(
            blueprint_id,
            raw_vars,
            dest_root,
            loader=_loader(blueprints_dir),
            overwrite=force,
            dry_run=dry_run,
            max_workers=workers,
        )
    except ScaffoldError as e:
        handle_cli_error(e, console, verbose)
    except KeyboardInterrupt:
        print_error(console, "Interrupted")
        raise typer.Exit(130)

    if result.dry_run:
        print_info(console, f"Dry run: {len(result.files)} file(s) would be generated")
        for path in result.files:
            size = len(result.contents[path])
            console.print(f"  • {path} [dim]({size} bytes)[/dim]")
    else:
        print_success(console, f"Generated {len(result.files)} file(s) in {result.dest_root}")
        if verbose:
            for path in result.files:
                console.print(f"  • {path}")

    if result.workspace is not None:
        console.print(f"[dim]Workspace modules: {', '.join(result.workspace.modules)}[/dim]")
    for scope, manifest in sorted(result.manifests.items()):
        packages = manifest.packages()
        console.print(f"[dim]{manifest.module_name} ({scope}): {len(packages)} requirement(s)[/dim]")
    if result.dropped:
        print_warning(console, f"Skipped {len(result.dropped)} blank file(s): {', '.join(result.dropped)}")


@app.command("list")
def list_blueprints(
    blueprint_type: Optional[str] = typer.Option(None, "--type", "-t", help="Filter by blueprint type"),
    blueprints_dir: Optional[Path] = typer.Option(None, "--blueprints-dir", help="Directory holding blueprints"),
):
    """List available blueprints."""
    loader = _loader(blueprints_dir)
    blueprints = loader.list_blueprints(blueprint_type)

    if not blueprints:
        if blueprint_type:
            console.print(f"[yellow]No blueprints found of type: {blueprint_type}[/yellow]")
        else:
            console.print(f"[yellow]No blueprints found in {loader.blueprints_dir}[/yellow]")
        return

    table = Table(title="Available Blueprints")
    table.add_column("ID", style="bold", no_wrap=True)
    table.add_column("Type", style="cyan", no_wrap=True)
    table.add_column("Architecture")
    table.add_column("Description")
    for blueprint in blueprints:
        table.add_row(blueprint.id, blueprint.type, blueprint.architecture or "-", blueprint.description)
    console.print(table)
    console.print(f"[dim]Total: {len(blueprints)} blueprint(s)[/dim]")
    console.print("[dim]Use 'scaffoldkit show <id>' for details[/dim]")


@app.command()
def search(
    query: str = typer.Argument(..., help="Text to find in id, name, description or tags"),
    blueprints_dir: Optional[Path] = typer.Option(None, "--blueprints-dir", help="Directory holding blueprints"),
):
    """Search blueprints."""
    results = _loader(blueprints_dir).search(query)
    if not results:
        console.print(f"[yellow]No blueprints found matching: {query}[/yellow]")
        return

    console.print(f"[bold cyan]Search Results ({len(results)}):[/bold cyan]\n")
    for blueprint in results:
        console.print(f"  [bold]{blueprint.id}[/bold] ({blueprint.type})")
        console.print(f"    {blueprint.description}")
        if blueprint.tags:
            console.print(f"    [dim]Tags: {', '.join(blueprint.tags)}[/dim]")


@app.command()
def show(
    blueprint_id: str = typer.Argument(..., help="Blueprint id"),
    blueprints_dir: Optional[Path] = typer.Option(None, "--blueprints-dir", help="Directory holding blueprints"),
):
    """Show a blueprint's variables and files."""
    try:
        blueprint = _loader(blueprints_dir).load_blueprint(blueprint_id)
    except ScaffoldError as e:
        handle_cli_error(e, console)

    console.print(f"[bold cyan]{blueprint.name}[/bold cyan]")
    console.print(f"[dim]{blueprint.id} v{blueprint.version}[/dim]\n")
    if blueprint.description:
        console.print(blueprint.description)
        console.print()

    if blueprint.variables:
        table = Table(title="Variables")
        table.add_column("Name", style="bold", no_wrap=True)
        table.add_column("Kind", style="cyan")
        table.add_column("Required")
        table.add_column("Default")
        table.add_column("Description")
        for variable in blueprint.variables:
            kind = variable.kind
            if variable.allowed_values:
                kind = f"enum({', '.join(repr(v) for v in variable.allowed_values)})"
            table.add_row(
                variable.name,
                kind,
                "yes" if variable.required else "no",
                "" if variable.default is None else str(variable.default),
                variable.description,
            )
        console.print(table)

    console.print("\n[bold]Files:[/bold]")
    for entry in blueprint.files:
        console.print(f"  • {blueprint.describe_entry(entry)}", highlight=False, markup=False)

    if blueprint.manifest is not None:
        modules = ", ".join(module.path for module in blueprint.manifest.modules)
        console.print(f"\n[bold]Modules:[/bold] {modules}")
    if blueprint.dependencies:
        console.print("\n[bold]Dependencies:[/bold]")
        for dependency in blueprint.dependencies:
            when = f" [dim]{dependency.module}[/dim]" if dependency.module != "." else ""
            console.print(f"  • {dependency.package} {dependency.version}{when}", highlight=False)


if __name__ == "__main__":
    app()
