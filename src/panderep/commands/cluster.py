from __future__ import annotations

import sys
from pathlib import Path

import typer
from rich.console import Console

from panderep.config import ClusterConfig, merge_command_config
from panderep.derep.linkage import cut_dendrogram, single_linkage
from panderep.derep.tables import read_distance_table, write_assignment_table, write_dendrogram
from panderep.exceptions import ConfigurationError, PanDerepError
from panderep.logging import configure_logging, get_logger
from panderep.manifest import create_run_manifest, finalize_manifest, write_manifest
from panderep.paths import create_output_layout
from panderep.utils.io import ensure_outputs_absent

app = typer.Typer(help="Single-linkage clustering of a precomputed ANI table.")
console = Console()


def run_cluster(
    *,
    config_path: Path | None,
    dist_file: Path | None,
    outdir: Path | None,
    ani_threshold: float | None,
    tie_break: str | None,
    write_tree: bool | None,
    dry_run: bool | None,
    force: bool | None,
    log_file: Path | None,
    verbose: bool | None,
    quiet: bool | None,
) -> int:
    try:
        cfg = merge_command_config(
            config_path=config_path,
            section="cluster",
            model_cls=ClusterConfig,
            cli_overrides={
                "dist_file": dist_file,
                "outdir": outdir,
                "ani_threshold": ani_threshold,
                "tie_break": tie_break,
                "write_dendrogram": write_tree,
                "dry_run": dry_run,
                "force": force,
                "log_file": log_file,
                "verbose": verbose,
                "quiet": quiet,
            },
        )

        configure_logging(verbose=cfg.verbose, quiet=cfg.quiet, log_file=cfg.log_file)
        logger = get_logger("panderep.cluster")

        if cfg.dist_file is None:
            raise ConfigurationError("Provide a distance table with --dist-file.")

        matrix = read_distance_table(cfg.dist_file)
        layout = create_output_layout(cfg.outdir)
        if not cfg.dry_run:
            planned = [layout.clusters_tsv, *(layout.dendrogram_paths() if cfg.write_dendrogram else [])]
            ensure_outputs_absent(planned, force=cfg.force)

        manifest = create_run_manifest(
            command="cluster",
            argv=sys.argv,
            outdir=layout.root,
            dry_run=cfg.dry_run,
            threads=cfg.threads,
            config_path=config_path,
            input_paths=[cfg.dist_file],
            parameters=cfg.model_dump(mode="json"),
        )
        write_manifest(layout.root, manifest)

        if cfg.dry_run:
            console.print(
                f"[bold]Cluster plan[/bold]: {matrix.n_genomes} genomes, {len(matrix)} edges, "
                f"cut at ANI >= {cfg.ani_threshold}"
            )
            finalize_manifest(manifest, status="dry-run", output_paths=[])
            write_manifest(layout.root, manifest)
            return 0

        dendrogram = single_linkage(matrix, tie_break=cfg.tie_break)
        dendrogram.validate()
        assignment = cut_dendrogram(dendrogram, 1.0 - cfg.ani_threshold)

        outputs = [write_assignment_table(layout.clusters_tsv, assignment, force=cfg.force)]
        if cfg.write_dendrogram:
            outputs.extend(
                write_dendrogram(layout.dendrogram_json, layout.dendrogram_newick, dendrogram, force=cfg.force)
            )

        finalize_manifest(
            manifest,
            status="completed",
            output_paths=outputs,
            summary={
                "genomes": matrix.n_genomes,
                "edges": len(matrix),
                "merges": len(dendrogram.nodes),
                "clusters": len(assignment),
                "singleton_clusters": len(assignment.singletons()),
            },
        )
        write_manifest(layout.root, manifest)
        logger.info("Created %d clusters from %d genomes.", len(assignment), matrix.n_genomes)
        return 0

    except PanDerepError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return exc.exit_code
    except Exception as exc:  # pragma: no cover - defensive catch-all
        get_logger("panderep.cluster").exception("Unhandled cluster error")
        console.print(f"[red]Unexpected error:[/red] {exc}")
        return 1


@app.callback(invoke_without_command=True)
def cluster_callback(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="YAML config file."),
    dist_file: Path | None = typer.Option(
        None, "--dist-file", "-d", help="TSV of genome_a, genome_b, ANI (e.g. `panderep dist` or skani output)."
    ),
    outdir: Path | None = typer.Option(None, "--outdir", "-o", help="Output directory."),
    ani_threshold: float | None = typer.Option(
        None, "--ani-threshold", min=0.0, max=1.0, help="Genomes linked at ANI >= threshold share a cluster."
    ),
    tie_break: str | None = typer.Option(
        None, "--tie-break", help="Order of equal-distance merges: id or input."
    ),
    write_tree: bool | None = typer.Option(
        None, "--write-dendrogram", help="Also write dendrogram.json and dendrogram.nwk."
    ),
    dry_run: bool | None = typer.Option(None, "--dry-run", help="Plan only, do not cluster."),
    force: bool | None = typer.Option(None, "--force", help="Overwrite existing output files."),
    log_file: Path | None = typer.Option(None, "--log-file", help="Write JSON logs to this file."),
    verbose: bool | None = typer.Option(None, "--verbose", help="Enable verbose logging."),
    quiet: bool | None = typer.Option(None, "--quiet", help="Only show errors."),
) -> None:
    if ctx.invoked_subcommand is not None:
        return

    exit_code = run_cluster(
        config_path=config,
        dist_file=dist_file,
        outdir=outdir,
        ani_threshold=ani_threshold,
        tie_break=tie_break,
        write_tree=write_tree,
        dry_run=dry_run,
        force=force,
        log_file=log_file,
        verbose=verbose,
        quiet=quiet,
    )
    raise typer.Exit(exit_code)
