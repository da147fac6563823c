"""Iterative batched dereplication.

Comparing every pair of a large collection is quadratic. Batching splits the
current groups into chunks, estimates ANI only between one proxy genome per
group within each chunk, and merges groups whose proxies cluster together.
Chunks grow every round, and a final round compares the proxies of all groups
that are left.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import combinations
from typing import Callable, Literal, Mapping, Sequence

from panderep.derep.context import RunContext
from panderep.derep.distances import DistanceMatrix, build_distance_matrix, pair_key
from panderep.derep.fasta import genome_size
from panderep.derep.genome import Genome
from panderep.derep.linkage import cut_dendrogram, single_linkage
from panderep.derep.select import order_members
from panderep.derep.similarity import SimilarityEstimator
from panderep.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

STAGE = "distances"
GUIDE_STAGE = "guide"

BatchStrategy = Literal["linear", "double"]


@dataclass(frozen=True, slots=True)
class BatchSettings:
    batch_step: int = 50
    strategy: BatchStrategy = "double"
    max_iters: int = 10
    guided: bool = False

    def validate(self) -> None:
        if self.batch_step < 1:
            raise ConfigurationError(f"Batch step must be at least 1, got {self.batch_step}")
        if self.strategy not in ("linear", "double"):
            raise ConfigurationError(f"Unknown batch step strategy `{self.strategy}`; expected linear or double.")
        if self.max_iters < 0:
            raise ConfigurationError(f"max_iters must be non-negative, got {self.max_iters}")

    def grow(self, batch_size: int) -> int:
        if self.strategy == "double":
            return batch_size * 2
        return batch_size + self.batch_step


@dataclass(frozen=True, slots=True)
class BatchRound:
    iteration: int
    batch_size: int
    batches: int
    groups_before: int
    groups_after: int
    final: bool = False

    def to_dict(self) -> dict[str, int | bool]:
        return {
            "iteration": self.iteration,
            "batch_size": self.batch_size,
            "batches": self.batches,
            "groups_before": self.groups_before,
            "groups_after": self.groups_after,
            "final": self.final,
        }


class _Groups:
    """Current genome groups, each represented by its highest-priority member."""

    def __init__(
        self,
        genomes: Sequence[Genome],
        initial_groups: Mapping[str, str] | None,
        priority: str,
        size_of: Callable[[Genome], int],
    ) -> None:
        self.position = {genome.genome_id: idx for idx, genome in enumerate(genomes)}
        self.priority = priority
        self._sizes: dict[str, int] = {}
        self._size_of = size_of

        by_label: dict[str, list[Genome]] = {}
        for genome in genomes:
            label = genome.genome_id if initial_groups is None else initial_groups[genome.genome_id]
            by_label.setdefault(label, []).append(genome)
        self.members: list[list[Genome]] = list(by_label.values())

    def _cached_size(self, genome: Genome) -> int:
        if genome.genome_id not in self._sizes:
            self._sizes[genome.genome_id] = self._size_of(genome)
        return self._sizes[genome.genome_id]

    def __len__(self) -> int:
        return len(self.members)

    def proxy(self, group: int) -> Genome:
        return order_members(self.members[group], self.priority, size_of=self._cached_size)[0]

    def merge(self, partitions: Sequence[Sequence[int]]) -> None:
        merged: list[list[Genome]] = []
        for partition in partitions:
            combined = [genome for group in partition for genome in self.members[group]]
            merged.append(sorted(combined, key=lambda genome: self.position[genome.genome_id]))
        self.members = sorted(merged, key=lambda group: self.position[group[0].genome_id])


def _chunk(items: Sequence[int], size: int) -> list[list[int]]:
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


def _batches_from_labels(groups: _Groups, labels: Mapping[str, str]) -> list[list[int]]:
    """One batch per label; a group follows the label of its first member."""

    batches: dict[str, list[int]] = {}
    for group, members in enumerate(groups.members):
        batches.setdefault(labels[members[0].genome_id], []).append(group)
    return list(batches.values())


def _guided_order(
    groups: _Groups,
    *,
    estimator: SimilarityEstimator,
    cut_distance: float,
    context: RunContext,
    tie_break: str,
) -> list[int]:
    """Order groups so that proxies falling in the same coarse cluster are adjacent."""

    proxies = [groups.proxy(group) for group in range(len(groups))]
    guide = build_distance_matrix(
        proxies,
        min_ani=1.0 - cut_distance,
        estimator=estimator,
        context=context,
        stage=GUIDE_STAGE,
    )
    assignment = cut_dendrogram(single_linkage(guide, tie_break=tie_break), cut_distance)
    return sorted(
        range(len(groups)),
        key=lambda group: (assignment.cluster_of[proxies[group].genome_id], proxies[group].genome_id),
    )


def batched_distance_matrix(
    genomes: Sequence[Genome],
    *,
    min_ani: float,
    cut_distance: float,
    estimator: SimilarityEstimator,
    batching: BatchSettings | None = None,
    context: RunContext | None = None,
    priority: str = "size",
    tie_break: str = "id",
    initial_groups: Mapping[str, str] | None = None,
    initial_batches: Mapping[str, str] | None = None,
    guide_estimator: SimilarityEstimator | None = None,
    size_of: Callable[[Genome], int] = genome_size,
) -> tuple[DistanceMatrix, list[BatchRound]]:
    """Estimate a sparse distance matrix by iterative batched merging of groups.

    Returns every retained edge between the genomes that were compared, and one
    `BatchRound` per round including the final one. Groups only ever merge, and
    a pair of genomes is estimated at most once across all rounds. With
    `batching=None` only the final round runs, which compares one proxy per
    initial group.
    """

    run_context = context if context is not None else RunContext()
    if batching is not None:
        batching.validate()
    if initial_batches is not None and batching is None:
        raise ConfigurationError("Initial batches require batched dereplication (--batch-step).")

    groups = _Groups(genomes, initial_groups, priority, size_of)
    matrix = DistanceMatrix([genome.genome_id for genome in genomes])
    compared: set[tuple[str, str]] = set()
    rounds: list[BatchRound] = []

    def _run_round(batches: list[list[int]], iteration: int, batch_size: int, final: bool) -> None:
        groups_before = len(groups)
        partitions: list[list[int]] = []
        for batch in batches:
            proxies = [groups.proxy(group) for group in batch]
            if len(proxies) < 2:
                partitions.append(list(batch))
                continue
            local = build_distance_matrix(
                proxies,
                min_ani=min_ani,
                estimator=estimator,
                context=run_context,
                exclude=compared,
                stage=STAGE,
            )
            compared.update(pair_key(a.genome_id, b.genome_id) for a, b in combinations(proxies, 2))
            for pair in local.pairs():
                matrix.add_pair(pair.genome_a, pair.genome_b, pair.distance)

            # Earlier rounds may already hold edges between these proxies.
            known = DistanceMatrix(local.genome_ids)
            for left, right in combinations(range(len(proxies)), 2):
                distance = matrix.distance(proxies[left].genome_id, proxies[right].genome_id)
                if distance is not None:
                    known.add(left, right, distance)
            assignment = cut_dendrogram(single_linkage(known, tie_break=tie_break), cut_distance)
            for cluster_id in assignment.cluster_ids():
                partitions.append([batch[known.index_of(genome_id)] for genome_id in assignment.members[cluster_id]])

        groups.merge(partitions)
        round_info = BatchRound(
            iteration=iteration,
            batch_size=batch_size,
            batches=len(batches),
            groups_before=groups_before,
            groups_after=len(groups),
            final=final,
        )
        rounds.append(round_info)
        logger.info(
            "Round %d: %d groups in %d batches reduced to %d groups.",
            iteration,
            groups_before,
            len(batches),
            len(groups),
            extra={"stage": STAGE},
        )

    if batching is not None:
        batch_size = batching.batch_step
        iteration = 0
        while iteration < batching.max_iters and (
            batch_size < len(groups) or (iteration == 0 and initial_batches is not None)
        ):
            logger.info(
                "Iteration %d processing %d groups in batches of %d...",
                iteration + 1,
                len(groups),
                batch_size,
                extra={"stage": STAGE},
            )
            if iteration == 0 and initial_batches is not None:
                batches = _batches_from_labels(groups, initial_batches)
                size = max(len(batch) for batch in batches)
            else:
                if batching.guided:
                    order = _guided_order(
                        groups,
                        estimator=guide_estimator if guide_estimator is not None else estimator,
                        cut_distance=cut_distance,
                        context=run_context,
                        tie_break=tie_break,
                    )
                else:
                    order = list(range(len(groups)))
                batches = _chunk(order, batch_size)
                size = batch_size
            _run_round(batches, iteration + 1, size, final=False)

            iteration += 1
            batch_size = batching.grow(batch_size)
            # Avoid a last chunk holding a single group.
            while len(groups) > 1 and batch_size < len(groups) and len(groups) % batch_size == 1:
                batch_size += 1

    logger.info("Final iteration processing %d groups...", len(groups), extra={"stage": STAGE})
    _run_round([list(range(len(groups)))], len(rounds) + 1, len(groups), final=True)
    return matrix, rounds
