from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from panderep.derep.batching import BatchRound, BatchSettings, batched_distance_matrix
from panderep.derep.context import Diagnostic, RunContext
from panderep.derep.distances import DistanceMatrix, build_distance_matrix
from panderep.derep.fasta import genome_size
from panderep.derep.genome import Genome
from panderep.derep.graph import PangenomeGraphBuilder
from panderep.derep.linkage import (
    TIE_BREAKS,
    ClusterAssignment,
    Dendrogram,
    coarsen_assignment,
    cut_dendrogram,
    single_linkage,
)
from panderep.derep.select import RepresentativeSet, SelectionPolicy, select_representatives
from panderep.derep.similarity import SimilarityEstimator
from panderep.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    min_ani: float = 0.95
    ani_threshold: float = 0.97
    tie_break: str = "id"
    policy: SelectionPolicy = field(default_factory=SelectionPolicy)
    batching: BatchSettings | None = None

    @property
    def cut_distance(self) -> float:
        return 1.0 - self.ani_threshold

    def validate(self) -> None:
        if not 0.0 <= self.min_ani <= 1.0:
            raise ConfigurationError(f"min_ani must be within [0, 1], got {self.min_ani}")
        if not 0.0 <= self.ani_threshold <= 1.0:
            raise ConfigurationError(f"ani_threshold must be within [0, 1], got {self.ani_threshold}")
        if self.tie_break not in TIE_BREAKS:
            raise ConfigurationError(f"Unknown tie-break rule `{self.tie_break}`.")
        if self.batching is not None:
            self.batching.validate()


@dataclass(frozen=True)
class DereplicationReport:
    genomes: tuple[Genome, ...]
    matrix: DistanceMatrix
    dendrogram: Dendrogram
    assignment: ClusterAssignment
    representative_sets: dict[str, RepresentativeSet]
    diagnostics: list[Diagnostic]
    rounds: tuple[BatchRound, ...] = ()

    def representatives(self) -> list[str]:
        return [
            genome_id
            for cluster_id in self.assignment.cluster_ids()
            for genome_id in self.representative_sets[cluster_id].representatives
        ]

    def summary(self) -> dict[str, Any]:
        excluded = sum(len(rep_set.excluded) for rep_set in self.representative_sets.values())
        return {
            "genomes": len(self.genomes),
            "retained_edges": len(self.matrix),
            "merges": len(self.dendrogram.nodes),
            "clusters": len(self.assignment),
            "singleton_clusters": len(self.assignment.singletons()),
            "representatives": len(self.representatives()),
            "excluded": excluded,
            "diagnostics": len(self.diagnostics),
            "batch_rounds": len(self.rounds),
        }


def validate_inputs(genomes: Sequence[Genome], settings: PipelineSettings, context: RunContext) -> None:
    if not genomes:
        raise ConfigurationError("No genomes to dereplicate.")
    if context.threads < 1:
        raise ConfigurationError(f"Worker pool size must be at least 1, got {context.threads}")
    seen: set[str] = set()
    for genome in genomes:
        if genome.genome_id in seen:
            raise ConfigurationError(f"Duplicated genome id `{genome.genome_id}`.")
        seen.add(genome.genome_id)
    settings.validate()


def run_pipeline(
    genomes: Sequence[Genome],
    *,
    settings: PipelineSettings,
    estimator: SimilarityEstimator,
    graph_builder: PangenomeGraphBuilder,
    context: RunContext | None = None,
    candidate_pairs: Iterable[tuple[str, str]] | None = None,
    initial_groups: Mapping[str, str] | None = None,
    initial_batches: Mapping[str, str] | None = None,
    guide_estimator: SimilarityEstimator | None = None,
    size_of: Callable[[Genome], int] = genome_size,
) -> DereplicationReport:
    """Distances, single linkage, cut, then per-cluster representative selection.

    With batching settings or `initial_groups` (an external clustering mapping
    genome ids to labels), distances come from iterative batched rounds over
    group proxies instead of all pairs, and genomes sharing an external label
    always end up in the same cluster.
    """

    run_context = context if context is not None else RunContext()
    validate_inputs(genomes, settings, run_context)

    if settings.cut_distance > 1.0 - settings.min_ani:
        logger.warning(
            "Clustering ANI threshold %.4f is below min_ani %.4f; pairs between them were not retained.",
            settings.ani_threshold,
            settings.min_ani,
        )

    rounds: list[BatchRound] = []
    batched = settings.batching is not None or initial_groups is not None
    if batched and candidate_pairs is not None:
        raise ConfigurationError("Candidate pair pre-screening cannot be combined with batched dereplication.")

    logger.info("Calculating ANIs for %d genomes...", len(genomes))
    if batched:
        matrix, rounds = batched_distance_matrix(
            genomes,
            min_ani=settings.min_ani,
            cut_distance=settings.cut_distance,
            estimator=estimator,
            batching=settings.batching,
            context=run_context,
            priority=settings.policy.priority,
            tie_break=settings.tie_break,
            initial_groups=initial_groups,
            initial_batches=initial_batches,
            guide_estimator=guide_estimator,
            size_of=size_of,
        )
    else:
        if initial_batches is not None:
            raise ConfigurationError("Initial batches require batched dereplication (--batch-step).")
        matrix = build_distance_matrix(
            genomes,
            min_ani=settings.min_ani,
            estimator=estimator,
            context=run_context,
            pairs=candidate_pairs,
        )

    logger.info("Building dendrogram...")
    dendrogram = single_linkage(matrix, tie_break=settings.tie_break)
    dendrogram.validate()
    assignment = cut_dendrogram(dendrogram, settings.cut_distance)
    if initial_groups is not None:
        assignment = coarsen_assignment(assignment, dendrogram.labels, initial_groups)
    logger.info(
        "Created %d clusters (%d singletons) at ANI >= %.4f.",
        len(assignment),
        len(assignment.singletons()),
        settings.ani_threshold,
    )

    by_id = {genome.genome_id: genome for genome in genomes}
    cluster_ids = assignment.cluster_ids()

    def _select(cluster_id: str) -> RepresentativeSet:
        return select_representatives(
            cluster_id,
            [by_id[genome_id] for genome_id in assignment.members[cluster_id]],
            graph_builder,
            settings.policy,
            size_of=size_of,
            on_failure=lambda genome_id, reason: run_context.record("selection", genome_id, reason),
        )

    logger.info("Selecting representatives with pangenome graphs...")
    selected = run_context.run_tasks("selection", cluster_ids, _select)
    representative_sets = dict(zip(cluster_ids, selected))

    for cluster_id, rep_set in representative_sets.items():
        if not rep_set.representatives:
            run_context.record("selection", cluster_id, "no member could be inserted into the pangenome graph")

    report = DereplicationReport(
        genomes=tuple(genomes),
        matrix=matrix,
        dendrogram=dendrogram,
        assignment=assignment,
        representative_sets=representative_sets,
        diagnostics=run_context.diagnostics,
        rounds=tuple(rounds),
    )
    logger.info("Kept %d representatives out of %d genomes.", len(report.representatives()), len(genomes))
    return report
