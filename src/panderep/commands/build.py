from __future__ import annotations

import sys
from pathlib import Path

import typer
from rich.console import Console

from panderep.commands.dereplicate import make_graph_builder
from panderep.commands.dist import print_plan, split_genome_files
from panderep.config import BuildConfig, merge_command_config
from panderep.derep.build import build_cluster_graphs, group_genomes
from panderep.derep.context import RunContext
from panderep.derep.tables import read_group_table, write_build_table
from panderep.exceptions import ConfigurationError, PanDerepError
from panderep.logging import configure_logging, get_logger
from panderep.manifest import create_run_manifest, finalize_manifest, write_manifest
from panderep.paths import create_output_layout
from panderep.progress import RichProgress
from panderep.runners.ggcat import GgcatRunner
from panderep.utils.io import ensure_outputs_absent, write_tsv
from panderep.utils.validation import resolve_genomes

app = typer.Typer(help="Build one pangenome graph per cluster of an existing clustering.")
console = Console()


def run_build(
    *,
    config_path: Path | None,
    genomes_files: list[str] | None,
    input_list: Path | None,
    genomes_tsv: Path | None,
    clusters: Path | None,
    target_cluster: str | None,
    outdir: Path | None,
    priority: str | None,
    graph_kmer_size: int | None,
    kmer_min_multiplicity: int | None,
    no_reverse_complement: bool | None,
    unitig_type: str | None,
    memory: int | None,
    tmp_dir: Path | None,
    mock: bool | None,
    threads: int | None,
    dry_run: bool | None,
    force: bool | None,
    log_file: Path | None,
    verbose: bool | None,
    quiet: bool | None,
) -> int:
    progress: RichProgress | None = None
    try:
        cfg = merge_command_config(
            config_path=config_path,
            section="build",
            model_cls=BuildConfig,
            cli_overrides={
                "seq_files": split_genome_files(genomes_files),
                "input_list": input_list,
                "genomes_tsv": genomes_tsv,
                "clusters": clusters,
                "target_cluster": target_cluster,
                "outdir": outdir,
                "priority": priority,
                "graph_kmer_size": graph_kmer_size,
                "kmer_min_multiplicity": kmer_min_multiplicity,
                "no_reverse_complement": no_reverse_complement,
                "unitig_type": unitig_type,
                "memory": memory,
                "tmp_dir": tmp_dir,
                "mock": mock,
                "threads": threads,
                "dry_run": dry_run,
                "force": force,
                "log_file": log_file,
                "verbose": verbose,
                "quiet": quiet,
            },
        )

        configure_logging(verbose=cfg.verbose, quiet=cfg.quiet, log_file=cfg.log_file)
        logger = get_logger("panderep.build")

        if cfg.clusters is None:
            raise ConfigurationError("Provide a genome to cluster table with --clusters.")

        genomes = resolve_genomes(seq_files=cfg.seq_files, input_list=cfg.input_list, genomes_tsv=cfg.genomes_tsv)
        labels = read_group_table(cfg.clusters, genomes)
        groups = group_genomes(genomes, labels, target=cfg.target_cluster)

        if cfg.mock:
            tool_versions = {"ggcat": "mock"}
        else:
            ggcat = GgcatRunner()
            ggcat.require()
            tool_versions = {"ggcat": ggcat.version(dry_run=cfg.dry_run)}

        layout = create_output_layout(cfg.outdir)
        if not cfg.dry_run:
            ensure_outputs_absent(
                [layout.build_tsv, layout.diagnostics_tsv],
                force=cfg.force,
                directories=[layout.graphs_dir],
            )

        n_graphs = sum(1 for members in groups.values() if len(members) > 1)
        step_plan = [
            "Resolve and validate input genomes",
            f"Read cluster labels from {cfg.clusters}"
            + (f" (only `{cfg.target_cluster}` is grouped)" if cfg.target_cluster is not None else ""),
            f"Build {n_graphs} pangenome graphs (singleton clusters are skipped)",
            "Write build.tsv and diagnostics",
        ]
        manifest = create_run_manifest(
            command="build",
            argv=sys.argv,
            outdir=layout.root,
            dry_run=cfg.dry_run,
            threads=cfg.threads,
            config_path=config_path,
            input_paths=[genome.fasta_path for genome in genomes] + [cfg.clusters],
            parameters=cfg.model_dump(mode="json"),
            tool_versions=tool_versions,
        )
        write_manifest(layout.root, manifest)
        print_plan(step_plan, "Build step plan")

        if cfg.dry_run:
            logger.info("Dry-run requested; stopping before any graph is built.")
            finalize_manifest(manifest, status="dry-run", output_paths=[])
            write_manifest(layout.root, manifest)
            return 0

        progress = RichProgress(console)
        context = RunContext(threads=cfg.threads, progress=progress)
        graphs = build_cluster_graphs(
            groups,
            make_graph_builder(cfg, layout),
            priority=cfg.priority,
            context=context,
        )
        progress.close()

        outputs = [
            write_build_table(layout.build_tsv, graphs, force=cfg.force),
            write_tsv(
                layout.diagnostics_tsv,
                ["stage", "subject", "message"],
                ([item.stage, item.subject, item.message] for item in context.diagnostics),
                force=cfg.force,
            ),
        ]
        summary = {
            "genomes": len(genomes),
            "clusters": len(groups),
            "graphs": len(graphs),
            "inserted": sum(graph.inserted for graph in graphs),
            "diagnostics": len(context.diagnostics),
        }
        finalize_manifest(manifest, status="completed", output_paths=outputs, summary=summary)
        write_manifest(layout.root, manifest)
        console.print(
            f"[green]Done:[/green] {summary['graphs']} pangenome graphs from {summary['genomes']} genomes "
            f"in {summary['clusters']} clusters."
        )
        return 0

    except PanDerepError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return exc.exit_code
    except Exception as exc:  # pragma: no cover - defensive catch-all
        get_logger("panderep.build").exception("Unhandled build error")
        console.print(f"[red]Unexpected error:[/red] {exc}")
        return 1
    finally:
        if progress is not None:
            progress.close()


@app.callback(invoke_without_command=True)
def build_callback(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="YAML config file."),
    genomes_files: list[str] | None = typer.Option(
        None, "--genomes-files", help="FASTA files (comma-separated and/or repeated)."
    ),
    input_list: Path | None = typer.Option(None, "--input-list", "-l", help="File listing one FASTA path per line."),
    genomes_tsv: Path | None = typer.Option(
        None, "--genomes-tsv", help="Genome manifest TSV with columns: genome_id, fasta_path, size."
    ),
    clusters: Path | None = typer.Option(
        None, "--clusters", "--external-clustering", help="TSV of genome and cluster label."
    ),
    target_cluster: str | None = typer.Option(
        None, "--target-cluster", "--target", help="Only build the graph of this cluster."
    ),
    outdir: Path | None = typer.Option(None, "--outdir", "-o", help="Output directory."),
    priority: str | None = typer.Option(
        None, "--priority", help="Insertion order within a cluster: size, alphabetical or input."
    ),
    graph_kmer_size: int | None = typer.Option(None, "--graph-kmer-size", "-k", min=1, help="Graph k-mer length."),
    kmer_min_multiplicity: int | None = typer.Option(
        None, "--kmer-min-multiplicity", min=1, help="Minimum k-mer multiplicity kept by ggcat."
    ),
    no_reverse_complement: bool | None = typer.Option(
        None, "--no-reverse-complement", help="Treat k-mers as forward-only."
    ),
    unitig_type: str | None = typer.Option(
        None, "--unitig-type", help="ggcat output: greedymatchtigs, eulertigs, pathtigs or unitiglinks."
    ),
    memory: int | None = typer.Option(None, "--memory", min=1, help="ggcat memory hint in GB."),
    tmp_dir: Path | None = typer.Option(None, "--tmp-dir", help="Temporary directory for ggcat."),
    mock: bool | None = typer.Option(None, "--mock/--no-mock", help="In-process graphs instead of ggcat."),
    threads: int | None = typer.Option(None, "--threads", "-t", min=1, help="Worker threads."),
    dry_run: bool | None = typer.Option(None, "--dry-run", help="Plan only, do not build graphs."),
    force: bool | None = typer.Option(None, "--force", help="Overwrite existing output files."),
    log_file: Path | None = typer.Option(None, "--log-file", help="Write JSON logs to this file."),
    verbose: bool | None = typer.Option(None, "--verbose", help="Enable verbose logging."),
    quiet: bool | None = typer.Option(None, "--quiet", help="Only show errors."),
) -> None:
    if ctx.invoked_subcommand is not None:
        return

    exit_code = run_build(
        config_path=config,
        genomes_files=genomes_files,
        input_list=input_list,
        genomes_tsv=genomes_tsv,
        clusters=clusters,
        target_cluster=target_cluster,
        outdir=outdir,
        priority=priority,
        graph_kmer_size=graph_kmer_size,
        kmer_min_multiplicity=kmer_min_multiplicity,
        no_reverse_complement=no_reverse_complement,
        unitig_type=unitig_type,
        memory=memory,
        tmp_dir=tmp_dir,
        mock=mock,
        threads=threads,
        dry_run=dry_run,
        force=force,
        log_file=log_file,
        verbose=verbose,
        quiet=quiet,
    )
    raise typer.Exit(exit_code)
