from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from itertools import combinations
from typing import Collection, Iterable, Iterator, Sequence

from panderep.derep.context import RunContext
from panderep.derep.genome import Genome
from panderep.derep.similarity import SimilarityEstimator
from panderep.exceptions import ClusteringInconsistency, ConfigurationError, EstimationFailure

logger = logging.getLogger(__name__)

STAGE = "distances"


@dataclass(frozen=True, slots=True)
class PairDistance:
    genome_a: str
    genome_b: str
    distance: float

    @property
    def ani(self) -> float:
        return 1.0 - self.distance


def validate_distance(distance: float, *, subject: str) -> float:
    if not isinstance(distance, (int, float)) or math.isnan(distance):
        raise ClusteringInconsistency(f"Distance for {subject} is not a number: {distance!r}")
    if distance < 0.0 or distance > 1.0:
        raise ClusteringInconsistency(f"Distance for {subject} is outside [0, 1]: {distance!r}")
    return float(distance)


class DistanceMatrix:
    """Sparse, symmetric distances between genomes, keyed by ordered index pairs.

    Only defined distances are stored; a missing pair means "no edge". Each
    unordered pair is stored once with the smaller index first.
    """

    def __init__(self, genome_ids: Sequence[str]) -> None:
        self.genome_ids: tuple[str, ...] = tuple(genome_ids)
        self._index = {genome_id: idx for idx, genome_id in enumerate(self.genome_ids)}
        if len(self._index) != len(self.genome_ids):
            raise ConfigurationError("Genome identifiers must be unique.")
        self._edges: dict[tuple[int, int], float] = {}

    def __len__(self) -> int:
        return len(self._edges)

    @property
    def n_genomes(self) -> int:
        return len(self.genome_ids)

    def index_of(self, genome_id: str) -> int:
        try:
            return self._index[genome_id]
        except KeyError:
            raise ClusteringInconsistency(f"Unknown genome in distance structure: {genome_id}") from None

    def add(self, left: int, right: int, distance: float) -> None:
        if left == right:
            raise ClusteringInconsistency(f"Self edge for genome index {left}.")
        for idx in (left, right):
            if not 0 <= idx < self.n_genomes:
                raise ClusteringInconsistency(f"Genome index {idx} out of range.")
        key = (left, right) if left < right else (right, left)
        value = validate_distance(
            distance, subject=f"{self.genome_ids[key[0]]} vs {self.genome_ids[key[1]]}"
        )
        current = self._edges.get(key)
        if current is None or value < current:
            self._edges[key] = value

    def add_pair(self, genome_a: str, genome_b: str, distance: float) -> None:
        self.add(self.index_of(genome_a), self.index_of(genome_b), distance)

    def distance(self, genome_a: str, genome_b: str) -> float | None:
        left, right = self.index_of(genome_a), self.index_of(genome_b)
        key = (left, right) if left < right else (right, left)
        return self._edges.get(key)

    def edges(self) -> Iterator[tuple[int, int, float]]:
        for (left, right), distance in sorted(self._edges.items()):
            yield left, right, distance

    def pairs(self) -> list[PairDistance]:
        return [
            PairDistance(self.genome_ids[left], self.genome_ids[right], distance)
            for left, right, distance in self.edges()
        ]




def pair_key(genome_a: str, genome_b: str) -> tuple[str, str]:
    return (genome_a, genome_b) if genome_a <= genome_b else (genome_b, genome_a)


def candidate_index_pairs(
    genome_ids: Sequence[str],
    pairs: Iterable[tuple[str, str]],
) -> list[tuple[int, int]]:
    """Normalise and de-duplicate explicit id pairs into ordered index pairs."""

    index = {genome_id: idx for idx, genome_id in enumerate(genome_ids)}
    selected: set[tuple[int, int]] = set()
    for genome_a, genome_b in pairs:
        if genome_a == genome_b:
            continue
        try:
            left, right = index[genome_a], index[genome_b]
        except KeyError as exc:
            raise ConfigurationError(f"Candidate pair references unknown genome: {exc.args[0]}") from None
        selected.add((left, right) if left < right else (right, left))
    return sorted(selected)


def plan_pair_jobs(
    genome_ids: Sequence[str],
    pairs: Iterable[tuple[str, str]] | None = None,
    exclude: Collection[tuple[str, str]] = (),
) -> tuple[Iterator[tuple[int, int]], int]:
    """Return a lazy iterator over the index pairs to estimate, and how many it yields.

    Without explicit `pairs` every unordered pair `i < j` is generated on demand.
    `exclude` holds `pair_key` tuples that were already estimated.
    """

    if pairs is not None:
        jobs = [
            (left, right)
            for left, right in candidate_index_pairs(genome_ids, pairs)
            if pair_key(genome_ids[left], genome_ids[right]) not in exclude
        ]
        return iter(jobs), len(jobs)

    n_genomes = len(genome_ids)
    present = set(genome_ids)
    skipped = sum(
        1 for genome_a, genome_b in exclude if genome_a != genome_b and genome_a in present and genome_b in present
    )
    total = n_genomes * (n_genomes - 1) // 2 - skipped
    if not exclude:
        return combinations(range(n_genomes), 2), total
    jobs = (
        (left, right)
        for left, right in combinations(range(n_genomes), 2)
        if pair_key(genome_ids[left], genome_ids[right]) not in exclude
    )
    return jobs, total


def build_distance_matrix(
    genomes: Sequence[Genome],
    *,
    min_ani: float,
    estimator: SimilarityEstimator,
    context: RunContext | None = None,
    pairs: Iterable[tuple[str, str]] | None = None,
    exclude: Collection[tuple[str, str]] = (),
    stage: str = STAGE,
) -> DistanceMatrix:
    """Estimate pair distances on the worker pool and keep those within `1 - min_ani`.

    Pair jobs are generated lazily and each retained edge is merged as its
    result arrives, so memory follows the number of retained edges.
    """

    if not 0.0 <= min_ani <= 1.0:
        raise ConfigurationError(f"min_ani must be within [0, 1], got {min_ani}")

    run_context = context if context is not None else RunContext()
    matrix = DistanceMatrix([genome.genome_id for genome in genomes])
    jobs, total = plan_pair_jobs(matrix.genome_ids, pairs, exclude)
    max_distance = 1.0 - min_ani

    logger.info(
        "Estimating ANI for %d genome pairs with %d worker(s).",
        total,
        run_context.threads,
        extra={"stage": stage},
    )

    def _estimate(job: tuple[int, int]) -> float | None:
        left, right = job
        genome_a, genome_b = genomes[left], genomes[right]
        try:
            result = estimator.estimate(genome_a, genome_b)
        except EstimationFailure as exc:
            run_context.record(stage, f"{genome_a.genome_id}|{genome_b.genome_id}", exc.reason)
            return None
        if result.distance is None:
            return None
        return validate_distance(result.distance, subject=f"{genome_a.genome_id} vs {genome_b.genome_id}")

    for (left, right), distance in run_context.iter_tasks(stage, jobs, _estimate, total=total):
        if distance is not None and distance <= max_distance:
            matrix.add(left, right, distance)

    logger.info(
        "Retained %d of %d pairs at ANI >= %.4f.",
        len(matrix),
        total,
        min_ani,
        extra={"stage": stage},
    )
    return matrix
