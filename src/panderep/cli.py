from __future__ import annotations

import platform
import sys

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from panderep import __version__
from panderep.commands import build, cluster, dereplicate, dist

console = Console()

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
    help=(
        "panderep: dereplicate bacterial genomes by ANI clustering and keep the "
        "representatives that grow each cluster's pangenome."
    ),
)

app.add_typer(dereplicate.app, name="dereplicate", help="Cluster genomes and select pangenome representatives.")
app.add_typer(dist.app, name="dist", help="Compute pairwise ANI edges.")
app.add_typer(cluster.app, name="cluster", help="Single-linkage clustering of an ANI table.")
app.add_typer(build.app, name="build", help="Build pangenome graphs for an existing clustering.")


def _print_startup_intro(command_name: str) -> None:
    banner = Panel(
        f"[bold cyan]panderep {__version__}[/bold cyan]\n"
        "[white]Pangenome-aware genome dereplication[/white]",
        title="[bold]CLI Start[/bold]",
        border_style="cyan",
        expand=False,
    )
    console.print(banner)

    stats = Table(
        title="[bold]Session Summary[/bold]",
        box=box.SIMPLE_HEAVY,
        show_header=False,
        expand=False,
    )
    stats.add_column("Key", style="bold cyan")
    stats.add_column("Value", style="white")
    stats.add_row("Command", command_name)
    stats.add_row("Python", sys.version.split()[0])
    stats.add_row("Platform", f"{platform.system()} {platform.release()}")
    console.print(stats)


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show panderep version and exit."),
) -> None:
    if version:
        console.print(f"panderep {__version__}")
        raise typer.Exit()

    if ctx.invoked_subcommand:
        _print_startup_intro(ctx.invoked_subcommand)
