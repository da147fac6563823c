from __future__ import annotations

import sys
from pathlib import Path
from typing import Sequence

import typer
from rich.console import Console

from panderep.config import DistConfig, merge_command_config
from panderep.derep.context import RunContext
from panderep.derep.distances import build_distance_matrix
from panderep.derep.genome import Genome
from panderep.derep.prefilter import mash_candidate_pairs, sketch_candidate_pairs
from panderep.derep.similarity import SimilarityEstimator, SkaniEstimator, SkaniParams, SketchEstimator
from panderep.derep.tables import write_distance_table
from panderep.exceptions import PanDerepError
from panderep.logging import configure_logging, get_logger
from panderep.manifest import create_run_manifest, finalize_manifest, write_manifest
from panderep.paths import create_output_layout
from panderep.progress import RichProgress
from panderep.runners.ggcat import GgcatRunner
from panderep.runners.mash import MashRunner
from panderep.runners.skani import SkaniRunner
from panderep.utils.io import ensure_outputs_absent
from panderep.utils.validation import resolve_genomes

app = typer.Typer(help="Estimate pairwise ANI between genomes.")
console = Console()


def split_genome_files(values: Sequence[str] | None) -> list[Path] | None:
    """Accept repeated and/or comma-separated FASTA paths."""

    if not values:
        return None
    paths = [Path(part.strip()) for value in values for part in value.split(",") if part.strip()]
    return paths or None


def make_estimator(cfg: DistConfig) -> SimilarityEstimator:
    if cfg.mock:
        return SketchEstimator(k=cfg.mash_k, sketch_size=cfg.mash_sketch_size)
    return SkaniEstimator(
        SkaniParams(
            marker_compression_factor=cfg.marker_compression_factor,
            kmer_subsampling_rate=cfg.kmer_subsampling_rate,
            rescue_small=cfg.rescue_small,
            clip_tails=cfg.clip_tails,
            median=cfg.median,
            adjust_ani=cfg.adjust_ani,
            bootstrap_ci=cfg.bootstrap_ci,
            min_aligned_frac=cfg.min_aligned_frac,
        )
    )


def check_tools(cfg: DistConfig, *, need_graph: bool = False) -> dict[str, str]:
    """Verify external binaries and collect their versions for the manifest."""

    if cfg.mock:
        versions = {"skani": "mock", "mash": "mock" if cfg.mash_threshold is not None else "not-used"}
        if need_graph:
            versions["ggcat"] = "mock"
        return versions

    required: list[tuple[str, SkaniRunner | MashRunner | GgcatRunner]] = [("skani", SkaniRunner())]
    if cfg.mash_threshold is not None:
        required.append(("mash", MashRunner()))
    if need_graph:
        required.append(("ggcat", GgcatRunner()))

    versions: dict[str, str] = {"mash": "not-used"}
    for tool_name, runner in required:
        runner.require()
        versions[tool_name] = runner.version(dry_run=cfg.dry_run)
    return versions


def screen_candidate_pairs(
    cfg: DistConfig,
    genomes: Sequence[Genome],
    *,
    context: RunContext,
    work_dir: Path,
) -> set[tuple[str, str]] | None:
    if cfg.mash_threshold is None:
        return None
    if cfg.mock:
        return sketch_candidate_pairs(
            genomes,
            max_distance=cfg.mash_threshold,
            estimator=SketchEstimator(k=cfg.mash_k, sketch_size=cfg.mash_sketch_size),
            context=context,
        )
    return mash_candidate_pairs(
        genomes,
        max_distance=cfg.mash_threshold,
        kmer_size=cfg.mash_k,
        sketch_size=cfg.mash_sketch_size,
        work_dir=work_dir,
        threads=cfg.threads,
    )


def print_plan(step_plan: list[str], title: str) -> None:
    console.print(f"[bold]{title}[/bold]")
    for idx, step in enumerate(step_plan, start=1):
        console.print(f"  {idx}. {step}")


def run_dist(
    *,
    config_path: Path | None,
    genomes_files: list[str] | None,
    input_list: Path | None,
    genomes_tsv: Path | None,
    outdir: Path | None,
    min_ani: float | None,
    min_aligned_frac: float | None,
    marker_compression_factor: int | None,
    kmer_subsampling_rate: int | None,
    rescue_small: bool | None,
    clip_tails: bool | None,
    median: bool | None,
    adjust_ani: bool | None,
    bootstrap_ci: bool | None,
    mash_threshold: float | None,
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
            section="dist",
            model_cls=DistConfig,
            cli_overrides={
                "seq_files": split_genome_files(genomes_files),
                "input_list": input_list,
                "genomes_tsv": genomes_tsv,
                "outdir": outdir,
                "min_ani": min_ani,
                "min_aligned_frac": min_aligned_frac,
                "marker_compression_factor": marker_compression_factor,
                "kmer_subsampling_rate": kmer_subsampling_rate,
                "rescue_small": rescue_small,
                "clip_tails": clip_tails,
                "median": median,
                "adjust_ani": adjust_ani,
                "bootstrap_ci": bootstrap_ci,
                "mash_threshold": mash_threshold,
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
        logger = get_logger("panderep.dist")

        genomes = resolve_genomes(seq_files=cfg.seq_files, input_list=cfg.input_list, genomes_tsv=cfg.genomes_tsv)
        tool_versions = check_tools(cfg)
        layout = create_output_layout(cfg.outdir)
        if not cfg.dry_run:
            ensure_outputs_absent([layout.distances_tsv], force=cfg.force)

        step_plan = [
            "Resolve and validate input genomes",
            "Pre-screen candidate pairs with Mash" if cfg.mash_threshold is not None else "Use all genome pairs",
            "Estimate pairwise ANI",
            "Write distances.tsv",
        ]
        manifest = create_run_manifest(
            command="dist",
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
        print_plan(step_plan, "Dist step plan")

        if cfg.dry_run:
            logger.info("Dry-run requested; stopping before distances are computed.")
            finalize_manifest(manifest, status="dry-run", output_paths=[])
            write_manifest(layout.root, manifest)
            return 0

        progress = RichProgress(console)
        context = RunContext(threads=cfg.threads, progress=progress)
        pairs = screen_candidate_pairs(cfg, genomes, context=context, work_dir=layout.prefilter_dir)
        matrix = build_distance_matrix(
            genomes,
            min_ani=cfg.min_ani,
            estimator=make_estimator(cfg),
            context=context,
            pairs=pairs,
        )
        progress.close()

        distances_path = write_distance_table(layout.distances_tsv, matrix, force=cfg.force)
        finalize_manifest(
            manifest,
            status="completed",
            output_paths=[distances_path],
            summary={"genomes": len(genomes), "retained_edges": len(matrix), "diagnostics": len(context.diagnostics)},
        )
        write_manifest(layout.root, manifest)
        logger.info("Wrote %d ANI edges to %s.", len(matrix), distances_path)
        return 0

    except PanDerepError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return exc.exit_code
    except Exception as exc:  # pragma: no cover - defensive catch-all
        get_logger("panderep.dist").exception("Unhandled dist error")
        console.print(f"[red]Unexpected error:[/red] {exc}")
        return 1
    finally:
        if progress is not None:
            progress.close()


@app.callback(invoke_without_command=True)
def dist_callback(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="YAML config file."),
    genomes_files: list[str] | None = typer.Option(
        None,
        "--genomes-files",
        help="FASTA files (comma-separated and/or repeated).",
    ),
    input_list: Path | None = typer.Option(None, "--input-list", "-l", help="File listing one FASTA path per line."),
    genomes_tsv: Path | None = typer.Option(
        None, "--genomes-tsv", help="Genome manifest TSV with columns: genome_id, fasta_path, size."
    ),
    outdir: Path | None = typer.Option(None, "--outdir", "-o", help="Output directory."),
    min_ani: float | None = typer.Option(None, "--min-ani", min=0.0, max=1.0, help="Only report pairs at or above this ANI."),
    min_aligned_frac: float | None = typer.Option(None, "--min-af", min=0.0, max=1.0, help="Minimum aligned fraction."),
    marker_compression_factor: int | None = typer.Option(
        None, "--marker-compression-factor", min=1, help="skani marker compression factor."
    ),
    kmer_subsampling_rate: int | None = typer.Option(
        None, "--kmer-subsampling-rate", min=1, help="skani k-mer subsampling rate."
    ),
    rescue_small: bool | None = typer.Option(None, "--rescue-small", help="Use skani small-genome settings."),
    clip_tails: bool | None = typer.Option(None, "--clip-tails", help="Clip ANI tails (skani --robust)."),
    median: bool | None = typer.Option(None, "--median", help="Use median ANI (skani --median)."),
    adjust_ani: bool | None = typer.Option(None, "--adjust-ani/--no-adjust-ani", help="Apply skani's learned ANI."),
    bootstrap_ci: bool | None = typer.Option(None, "--bootstrap-ci", help="Compute ANI confidence intervals."),
    mash_threshold: float | None = typer.Option(
        None, "--mash-threshold", min=0.0, max=1.0, help="Only compare pairs within this Mash distance."
    ),
    mock: bool | None = typer.Option(None, "--mock/--no-mock", help="In-process sketches instead of external binaries."),
    threads: int | None = typer.Option(None, "--threads", "-t", min=1, help="Worker threads."),
    dry_run: bool | None = typer.Option(None, "--dry-run", help="Plan only, do not compute distances."),
    force: bool | None = typer.Option(None, "--force", help="Overwrite existing output files."),
    log_file: Path | None = typer.Option(None, "--log-file", help="Write JSON logs to this file."),
    verbose: bool | None = typer.Option(None, "--verbose", help="Enable verbose logging."),
    quiet: bool | None = typer.Option(None, "--quiet", help="Only show errors."),
) -> None:
    if ctx.invoked_subcommand is not None:
        return

    exit_code = run_dist(
        config_path=config,
        genomes_files=genomes_files,
        input_list=input_list,
        genomes_tsv=genomes_tsv,
        outdir=outdir,
        min_ani=min_ani,
        min_aligned_frac=min_aligned_frac,
        marker_compression_factor=marker_compression_factor,
        kmer_subsampling_rate=kmer_subsampling_rate,
        rescue_small=rescue_small,
        clip_tails=clip_tails,
        median=median,
        adjust_ani=adjust_ani,
        bootstrap_ci=bootstrap_ci,
        mash_threshold=mash_threshold,
        mock=mock,
        threads=threads,
        dry_run=dry_run,
        force=force,
        log_file=log_file,
        verbose=verbose,
        quiet=quiet,
    )
    raise typer.Exit(exit_code)
