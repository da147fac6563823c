"""Candidate-pair pre-screen with Mash distances.

Only pairs within `max_distance` are passed on to the (slower) ANI estimator.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Sequence

from panderep.derep.context import RunContext
from panderep.derep.distances import pair_key, plan_pair_jobs
from panderep.derep.genome import Genome, genome_id_from_path
from panderep.derep.similarity import SketchEstimator
from panderep.exceptions import EstimationFailure, PanDerepError
from panderep.runners.mash import MashRunner
from panderep.utils.subprocess import CommandExecutionError

logger = logging.getLogger(__name__)

STAGE = "prefilter"


def parse_mash_dist_output(stdout: str, id_by_path: Mapping[str, str]) -> dict[tuple[str, str], float]:
    """Parse `mash dist` rows (reference, query, distance, p-value, shared hashes)."""

    distances: dict[tuple[str, str], float] = {}

    for raw_line in stdout.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        fields = line.split("\t")
        if len(fields) < 3:
            continue

        reference = id_by_path.get(fields[0], genome_id_from_path(Path(fields[0])))
        query = id_by_path.get(fields[1], genome_id_from_path(Path(fields[1])))
        if query == reference:
            continue

        try:
            distance = float(fields[2])
        except ValueError:
            continue

        key = pair_key(query, reference)
        distances[key] = min(distance, distances.get(key, distance))

    return distances


def mash_candidate_pairs(
    genomes: Sequence[Genome],
    *,
    max_distance: float,
    kmer_size: int,
    sketch_size: int,
    work_dir: Path,
    threads: int = 1,
    runner: MashRunner | None = None,
) -> set[tuple[str, str]]:
    mash = runner if runner is not None else MashRunner()
    work_dir.mkdir(parents=True, exist_ok=True)
    out_prefix = work_dir / "genomes"
    id_by_path = {str(genome.fasta_path): genome.genome_id for genome in genomes}

    try:
        mash.sketch(
            input_fastas=[genome.fasta_path for genome in genomes],
            out_prefix=out_prefix,
            kmer_size=kmer_size,
            sketch_size=sketch_size,
            threads=threads,
        )
        result = mash.dist(sketch_path=out_prefix.with_suffix(".msh"), max_distance=max_distance, threads=threads)
    except CommandExecutionError as exc:
        raise PanDerepError(f"Mash pre-screen failed: {exc}") from exc

    distances = parse_mash_dist_output(result.stdout, id_by_path)
    pairs = {pair for pair, distance in distances.items() if distance <= max_distance}
    logger.info("Mash pre-screen kept %d candidate pairs.", len(pairs), extra={"stage": STAGE})
    return pairs


def sketch_candidate_pairs(
    genomes: Sequence[Genome],
    *,
    max_distance: float,
    estimator: SketchEstimator,
    context: RunContext | None = None,
) -> set[tuple[str, str]]:
    """In-process equivalent of the Mash pre-screen."""

    run_context = context if context is not None else RunContext()
    jobs, total = plan_pair_jobs([genome.genome_id for genome in genomes])

    def _screen(job: tuple[int, int]) -> bool:
        genome_a, genome_b = genomes[job[0]], genomes[job[1]]
        try:
            result = estimator.estimate(genome_a, genome_b)
        except EstimationFailure as exc:
            run_context.record(STAGE, f"{genome_a.genome_id}|{genome_b.genome_id}", exc.reason)
            return False
        return result.distance is not None and result.distance <= max_distance

    pairs = {
        pair_key(genomes[left].genome_id, genomes[right].genome_id)
        for (left, right), kept in run_context.iter_tasks(STAGE, jobs, _screen, total=total)
        if kept
    }
    logger.info("Sketch pre-screen kept %d of %d pairs.", len(pairs), total, extra={"stage": STAGE})
    return pairs
