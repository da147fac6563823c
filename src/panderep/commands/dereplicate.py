from __future__ import annotations

import sys
from pathlib import Path

import typer
from rich.console import Console

from panderep.commands.dist import check_tools, make_estimator, print_plan, screen_candidate_pairs, split_genome_files
from panderep.config import DereplicateConfig, GraphConfig, merge_command_config
from panderep.derep.batching import BatchSettings
from panderep.derep.context import RunContext
from panderep.derep.graph import GgcatGraphBuilder, GgcatParams, KmerGraphBuilder, PangenomeGraphBuilder
from panderep.derep.pipeline import PipelineSettings, run_pipeline
from panderep.derep.select import SelectionPolicy
from panderep.derep.similarity import SimilarityEstimator, SkaniEstimator, SkaniParams, SketchEstimator
from panderep.derep.tables import read_group_table, write_report
from panderep.exceptions import PanDerepError
from panderep.logging import configure_logging, get_logger
from panderep.manifest import create_run_manifest, finalize_manifest, write_manifest
from panderep.paths import OutputLayout, create_output_layout
from panderep.progress import RichProgress
from panderep.utils.io import ensure_dir, ensure_outputs_absent
from panderep.utils.validation import resolve_genomes

app = typer.Typer(help="Cluster genomes by ANI and keep pangenome-novel representatives.")
console = Console()


def make_graph_builder(cfg: GraphConfig, layout: OutputLayout) -> PangenomeGraphBuilder:
    if cfg.mock:
        return KmerGraphBuilder(k=cfg.graph_kmer_size, canonical=not cfg.no_reverse_complement)
    return GgcatGraphBuilder(
        work_dir=ensure_dir(layout.graphs_dir),
        params=GgcatParams(
            kmer_size=cfg.graph_kmer_size,
            kmer_min_multiplicity=cfg.kmer_min_multiplicity,
            minimizer_length=cfg.minimizer_length,
            no_reverse_complement=cfg.no_reverse_complement,
            unitig_type=cfg.unitig_type,
            # Clusters are built concurrently; each ggcat call gets one thread.
            threads=1,
            memory=cfg.memory,
            intermediate_compression_level=cfg.intermediate_compression_level,
        ),
        temp_dir=cfg.tmp_dir,
    )


def settings_from_config(cfg: DereplicateConfig) -> PipelineSettings:
    return PipelineSettings(
        min_ani=cfg.min_ani,
        ani_threshold=cfg.ani_threshold,
        tie_break=cfg.tie_break,
        policy=SelectionPolicy(
            priority=cfg.priority,
            novelty_threshold=cfg.novelty_threshold,
            novelty_mode=cfg.novelty_mode,
        ),
        batching=(
            None
            if cfg.batch_step is None
            else BatchSettings(
                batch_step=cfg.batch_step,
                strategy=cfg.batch_step_strategy,
                max_iters=cfg.max_iters,
                guided=cfg.guided,
            )
        ),
    )


def make_guide_estimator(cfg: DereplicateConfig) -> SimilarityEstimator:
    """Coarse, fast ANI used only to order groups before guided batching."""

    if cfg.mock:
        return SketchEstimator(k=cfg.mash_k, sketch_size=min(cfg.mash_sketch_size, 1000))
    return SkaniEstimator(
        SkaniParams(
            kmer_subsampling_rate=2500,
            marker_compression_factor=2500,
            clip_tails=True,
            min_aligned_frac=cfg.min_aligned_frac,
        )
    )


def run_dereplicate(
    *,
    config_path: Path | None,
    genomes_files: list[str] | None,
    input_list: Path | None,
    genomes_tsv: Path | None,
    outdir: Path | None,
    min_ani: float | None,
    ani_threshold: float | None,
    tie_break: str | None,
    priority: str | None,
    novelty_mode: str | None,
    novelty_threshold: float | None,
    min_aligned_frac: float | None,
    marker_compression_factor: int | None,
    kmer_subsampling_rate: int | None,
    mash_threshold: float | None,
    batch_step: int | None,
    batch_step_strategy: str | None,
    max_iters: int | None,
    guided: bool | None,
    initial_batches: Path | None,
    external_clustering: Path | None,
    graph_kmer_size: int | None,
    kmer_min_multiplicity: int | None,
    no_reverse_complement: bool | None,
    unitig_type: str | None,
    memory: int | None,
    tmp_dir: Path | None,
    write_tree: bool | None,
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
            section="dereplicate",
            model_cls=DereplicateConfig,
            cli_overrides={
                "seq_files": split_genome_files(genomes_files),
                "input_list": input_list,
                "genomes_tsv": genomes_tsv,
                "outdir": outdir,
                "min_ani": min_ani,
                "ani_threshold": ani_threshold,
                "tie_break": tie_break,
                "priority": priority,
                "novelty_mode": novelty_mode,
                "novelty_threshold": novelty_threshold,
                "min_aligned_frac": min_aligned_frac,
                "marker_compression_factor": marker_compression_factor,
                "kmer_subsampling_rate": kmer_subsampling_rate,
                "mash_threshold": mash_threshold,
                "batch_step": batch_step,
                "batch_step_strategy": batch_step_strategy,
                "max_iters": max_iters,
                "guided": guided,
                "initial_batches": initial_batches,
                "external_clustering": external_clustering,
                "graph_kmer_size": graph_kmer_size,
                "kmer_min_multiplicity": kmer_min_multiplicity,
                "no_reverse_complement": no_reverse_complement,
                "unitig_type": unitig_type,
                "memory": memory,
                "tmp_dir": tmp_dir,
                "write_dendrogram": write_tree,
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
        logger = get_logger("panderep.dereplicate")

        genomes = resolve_genomes(seq_files=cfg.seq_files, input_list=cfg.input_list, genomes_tsv=cfg.genomes_tsv)
        settings = settings_from_config(cfg)
        settings.validate()
        tool_versions = check_tools(cfg, need_graph=True)
        layout = create_output_layout(cfg.outdir)
        if not cfg.dry_run:
            ensure_outputs_absent(
                layout.report_paths(include_dendrogram=cfg.write_dendrogram),
                force=cfg.force,
                directories=[layout.graphs_dir],
            )

        initial_groups = (
            None
            if cfg.external_clustering is None
            else read_group_table(cfg.external_clustering, genomes, label="External clustering")
        )
        initial_batches = (
            None
            if cfg.initial_batches is None
            else read_group_table(cfg.initial_batches, genomes, label="Initial batches")
        )

        if cfg.batch_step is not None:
            pair_step = (
                f"Batched ANI over group proxies (step {cfg.batch_step}, {cfg.batch_step_strategy}, "
                f"at most {cfg.max_iters} rounds{', guided' if cfg.guided else ''}), then a final round"
            )
        elif initial_groups is not None:
            pair_step = "Compare one proxy per external cluster"
        elif cfg.mash_threshold is not None:
            pair_step = "Pre-screen candidate pairs with Mash"
        else:
            pair_step = "Use all genome pairs"
        step_plan = [
            "Resolve and validate input genomes",
            pair_step,
            f"Estimate pairwise ANI (retain ANI >= {cfg.min_ani})",
            f"Single-linkage clustering, cut at ANI >= {cfg.ani_threshold}",
            f"Select representatives by pangenome growth ({cfg.novelty_mode} > {cfg.novelty_threshold})",
            "Write clusters, representatives, distances, diagnostics and report",
        ]
        manifest = create_run_manifest(
            command="dereplicate",
            argv=sys.argv,
            outdir=layout.root,
            dry_run=cfg.dry_run,
            threads=cfg.threads,
            config_path=config_path,
            input_paths=[genome.fasta_path for genome in genomes],
            parameters=cfg.model_dump(mode="json"),
            tool_versions=tool_versions,
        )
        write_manifest(layout.root, manifest)
        print_plan(step_plan, "Dereplicate step plan")

        if cfg.dry_run:
            logger.info("Dry-run requested; stopping before any genome is compared.")
            finalize_manifest(manifest, status="dry-run", output_paths=[])
            write_manifest(layout.root, manifest)
            return 0

        progress = RichProgress(console)
        context = RunContext(threads=cfg.threads, progress=progress)
        pairs = screen_candidate_pairs(cfg, genomes, context=context, work_dir=layout.prefilter_dir)
        report = run_pipeline(
            genomes,
            settings=settings,
            estimator=make_estimator(cfg),
            graph_builder=make_graph_builder(cfg, layout),
            context=context,
            candidate_pairs=pairs,
            initial_groups=initial_groups,
            initial_batches=initial_batches,
            guide_estimator=make_guide_estimator(cfg) if cfg.guided else None,
        )
        progress.close()

        outputs = write_report(
            layout,
            report,
            parameters=cfg.model_dump(mode="json"),
            include_dendrogram=cfg.write_dendrogram,
            force=cfg.force,
        )
        summary = report.summary()
        finalize_manifest(manifest, status="completed", output_paths=outputs, summary=summary)
        write_manifest(layout.root, manifest)

        console.print(
            f"[green]Done:[/green] {summary['representatives']} representatives from "
            f"{summary['genomes']} genomes in {summary['clusters']} clusters."
        )
        if summary["diagnostics"]:
            console.print(f"[yellow]{summary['diagnostics']} diagnostics written to {layout.diagnostics_tsv}[/yellow]")
        return 0

    except PanDerepError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return exc.exit_code
    except Exception as exc:  # pragma: no cover - defensive catch-all
        get_logger("panderep.dereplicate").exception("Unhandled dereplicate error")
        console.print(f"[red]Unexpected error:[/red] {exc}")
        return 1
    finally:
        if progress is not None:
            progress.close()


@app.callback(invoke_without_command=True)
def dereplicate_callback(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="YAML config file."),
    genomes_files: list[str] | None = typer.Option(
        None, "--genomes-files", help="FASTA files (comma-separated and/or repeated)."
    ),
    input_list: Path | None = typer.Option(None, "--input-list", "-l", help="File listing one FASTA path per line."),
    genomes_tsv: Path | None = typer.Option(
        None, "--genomes-tsv", help="Genome manifest TSV with columns: genome_id, fasta_path, size."
    ),
    outdir: Path | None = typer.Option(None, "--outdir", "-o", help="Output directory."),
    min_ani: float | None = typer.Option(None, "--min-ani", min=0.0, max=1.0, help="Discard ANI edges below this value."),
    ani_threshold: float | None = typer.Option(
        None, "--ani-threshold", min=0.0, max=1.0, help="Dendrogram cut (ANI) defining clusters."
    ),
    tie_break: str | None = typer.Option(None, "--tie-break", help="Order of equal-distance merges: id or input."),
    priority: str | None = typer.Option(
        None, "--priority", help="Insertion order within a cluster: size, alphabetical or input."
    ),
    novelty_mode: str | None = typer.Option(
        None, "--novelty-mode", help="Growth measure compared to the threshold: absolute or fraction."
    ),
    novelty_threshold: float | None = typer.Option(
        None, "--novelty-threshold", min=0.0, help="Keep a genome only if its growth exceeds this value."
    ),
    min_aligned_frac: float | None = typer.Option(None, "--min-af", min=0.0, max=1.0, help="Minimum aligned fraction."),
    marker_compression_factor: int | None = typer.Option(
        None, "--marker-compression-factor", min=1, help="skani marker compression factor."
    ),
    kmer_subsampling_rate: int | None = typer.Option(
        None, "--kmer-subsampling-rate", min=1, help="skani k-mer subsampling rate."
    ),
    mash_threshold: float | None = typer.Option(
        None, "--mash-threshold", min=0.0, max=1.0, help="Only compare pairs within this Mash distance."
    ),
    batch_step: int | None = typer.Option(
        None, "--batch-step", "-b", min=1, help="Dereplicate in batches of this many groups, growing every round."
    ),
    batch_step_strategy: str | None = typer.Option(
        None, "--batch-step-strategy", help="Batch growth between rounds: linear or double."
    ),
    max_iters: int | None = typer.Option(
        None, "--max-iters", min=0, help="Maximum batched rounds before the final one."
    ),
    guided: bool | None = typer.Option(None, "--guided", help="Order batches by a coarse ANI clustering."),
    initial_batches: Path | None = typer.Option(
        None, "--initial-batches", help="TSV of genome and batch label used for the first round."
    ),
    external_clustering: Path | None = typer.Option(
        None, "--external-clustering", help="TSV of genome and cluster label; each cluster starts as one group."
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
    write_tree: bool | None = typer.Option(
        None, "--write-dendrogram", help="Also write dendrogram.json and dendrogram.nwk."
    ),
    mock: bool | None = typer.Option(None, "--mock/--no-mock", help="In-process ANI and graphs instead of external binaries."),
    threads: int | None = typer.Option(None, "--threads", "-t", min=1, help="Worker threads."),
    dry_run: bool | None = typer.Option(None, "--dry-run", help="Plan only, do not compare genomes."),
    force: bool | None = typer.Option(None, "--force", help="Overwrite existing output files."),
    log_file: Path | None = typer.Option(None, "--log-file", help="Write JSON logs to this file."),
    verbose: bool | None = typer.Option(None, "--verbose", help="Enable verbose logging."),
    quiet: bool | None = typer.Option(None, "--quiet", help="Only show errors."),
) -> None:
    if ctx.invoked_subcommand is not None:
        return

    exit_code = run_dereplicate(
        config_path=config,
        genomes_files=genomes_files,
        input_list=input_list,
        genomes_tsv=genomes_tsv,
        outdir=outdir,
        min_ani=min_ani,
        ani_threshold=ani_threshold,
        tie_break=tie_break,
        priority=priority,
        novelty_mode=novelty_mode,
        novelty_threshold=novelty_threshold,
        min_aligned_frac=min_aligned_frac,
        marker_compression_factor=marker_compression_factor,
        kmer_subsampling_rate=kmer_subsampling_rate,
        mash_threshold=mash_threshold,
        batch_step=batch_step,
        batch_step_strategy=batch_step_strategy,
        max_iters=max_iters,
        guided=guided,
        initial_batches=initial_batches,
        external_clustering=external_clustering,
        graph_kmer_size=graph_kmer_size,
        kmer_min_multiplicity=kmer_min_multiplicity,
        no_reverse_complement=no_reverse_complement,
        unitig_type=unitig_type,
        memory=memory,
        tmp_dir=tmp_dir,
        write_tree=write_tree,
        mock=mock,
        threads=threads,
        dry_run=dry_run,
        force=force,
        log_file=log_file,
        verbose=verbose,
        quiet=quiet,
    )
    raise typer.Exit(exit_code)
