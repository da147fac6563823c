from __future__ import annotations

import math
import threading
from pathlib import Path

import pytest

from panderep.derep.context import IN_FLIGHT_PER_WORKER, RunContext
from panderep.derep.distances import (
    DistanceMatrix,
    build_distance_matrix,
    candidate_index_pairs,
    pair_key,
    plan_pair_jobs,
)
from panderep.derep.genome import Genome
from panderep.derep.similarity import UNDEFINED, DistanceResult
from panderep.exceptions import ClusteringInconsistency, ConfigurationError, EstimationFailure


class CannedEstimator:
    def __init__(self, distances: dict[frozenset[str], float | None], failing: set[frozenset[str]] | None = None):
        self.distances = distances
        self.failing = failing or set()
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def estimate(self, genome_a: Genome, genome_b: Genome) -> DistanceResult:
        key = frozenset((genome_a.genome_id, genome_b.genome_id))
        with self._lock:
            self.calls.append((genome_a.genome_id, genome_b.genome_id))
        if key in self.failing:
            raise EstimationFailure(genome_a.genome_id, genome_b.genome_id, "skani crashed")
        distance = self.distances.get(key)
        if distance is None:
            return UNDEFINED
        return DistanceResult(distance=distance)


def _genomes(*names: str) -> list[Genome]:
    return [Genome(genome_id=name, fasta_path=Path(f"{name}.fna")) for name in names]


def test_builder_drops_pairs_below_min_ani() -> None:
    estimator = CannedEstimator(
        {
            frozenset("AB"): 0.01,
            frozenset("BC"): 0.02,
            frozenset("AC"): 0.5,
        }
    )

    matrix = build_distance_matrix(_genomes("A", "B", "C"), min_ani=0.95, estimator=estimator)

    assert matrix.distance("A", "B") == 0.01
    assert matrix.distance("C", "B") == 0.02
    assert matrix.distance("A", "C") is None
    assert len(matrix) == 2
    assert len(estimator.calls) == 3


def test_builder_keeps_edge_exactly_at_min_ani() -> None:
    estimator = CannedEstimator({frozenset("AB"): 0.25})
    matrix = build_distance_matrix(_genomes("A", "B"), min_ani=0.75, estimator=estimator)
    assert matrix.distance("A", "B") == 0.25


def test_undefined_pairs_are_not_edges() -> None:
    estimator = CannedEstimator({frozenset("AB"): None})
    matrix = build_distance_matrix(_genomes("A", "B"), min_ani=0.0, estimator=estimator)
    assert len(matrix) == 0


def test_failed_pair_becomes_diagnostic_without_aborting() -> None:
    estimator = CannedEstimator(
        {frozenset("AB"): 0.01, frozenset("BC"): 0.01},
        failing={frozenset("AC")},
    )
    context = RunContext(threads=3)

    matrix = build_distance_matrix(_genomes("A", "B", "C"), min_ani=0.9, estimator=estimator, context=context)

    assert len(matrix) == 2
    assert len(context.diagnostics) == 1
    diagnostic = context.diagnostics[0]
    assert diagnostic.stage == "distances"
    assert diagnostic.subject == "A|C"
    assert diagnostic.message == "skani crashed"


def test_out_of_range_distance_is_an_inconsistency() -> None:
    estimator = CannedEstimator({frozenset("AB"): 1.5})
    with pytest.raises(ClusteringInconsistency):
        build_distance_matrix(_genomes("A", "B"), min_ani=0.0, estimator=estimator)


def test_result_is_independent_of_pool_size() -> None:
    names = [f"g{idx}" for idx in range(8)]
    distances = {
        frozenset((left, right)): ((idx_left * 7 + idx_right * 3) % 10) / 100
        for idx_left, left in enumerate(names)
        for idx_right, right in enumerate(names)
        if idx_left < idx_right
    }

    serial = build_distance_matrix(
        _genomes(*names), min_ani=0.95, estimator=CannedEstimator(distances), context=RunContext(threads=1)
    )
    pooled = build_distance_matrix(
        _genomes(*names), min_ani=0.95, estimator=CannedEstimator(distances), context=RunContext(threads=4)
    )

    assert list(serial.edges()) == list(pooled.edges())


def test_candidate_pairs_restrict_estimation() -> None:
    estimator = CannedEstimator({frozenset("AB"): 0.01, frozenset("BC"): 0.01})

    matrix = build_distance_matrix(
        _genomes("A", "B", "C"),
        min_ani=0.9,
        estimator=estimator,
        pairs=[("B", "A"), ("A", "B"), ("C", "C")],
    )

    assert estimator.calls == [("A", "B")]
    assert len(matrix) == 1


def test_candidate_index_pairs_rejects_unknown_genome() -> None:
    with pytest.raises(ConfigurationError):
        candidate_index_pairs(["A", "B"], [("A", "Z")])


def test_builder_rejects_min_ani_outside_unit_interval() -> None:
    with pytest.raises(ConfigurationError):
        build_distance_matrix(_genomes("A", "B"), min_ani=1.2, estimator=CannedEstimator({}))


def test_matrix_keeps_smaller_duplicate_and_rejects_bad_edges() -> None:
    matrix = DistanceMatrix(["A", "B"])
    matrix.add_pair("A", "B", 0.3)
    matrix.add_pair("B", "A", 0.1)
    matrix.add_pair("A", "B", 0.2)

    assert matrix.distance("B", "A") == 0.1
    assert [(pair.genome_a, pair.genome_b, pair.distance) for pair in matrix.pairs()] == [("A", "B", 0.1)]

    with pytest.raises(ClusteringInconsistency):
        matrix.add(0, 0, 0.1)
    with pytest.raises(ClusteringInconsistency):
        matrix.add(0, 5, 0.1)
    with pytest.raises(ClusteringInconsistency):
        matrix.add_pair("A", "B", math.nan)
    with pytest.raises(ClusteringInconsistency):
        matrix.add_pair("A", "Z", 0.1)


def test_matrix_requires_unique_ids() -> None:
    with pytest.raises(ConfigurationError):
        DistanceMatrix(["A", "A"])


def test_pair_jobs_are_generated_lazily() -> None:
    ids = [f"g{idx}" for idx in range(2000)]

    jobs, total = plan_pair_jobs(ids)

    assert not isinstance(jobs, list)
    assert total == 2000 * 1999 // 2
    assert next(jobs) == (0, 1)


def test_excluded_pairs_are_not_estimated_again() -> None:
    estimator = CannedEstimator({frozenset("AB"): 0.01, frozenset("BC"): 0.02})

    jobs, total = plan_pair_jobs(["A", "B", "C"], exclude={pair_key("B", "A")})
    assert list(jobs) == [(0, 2), (1, 2)]
    assert total == 2

    matrix = build_distance_matrix(
        _genomes("A", "B", "C"), min_ani=0.9, estimator=estimator, exclude={pair_key("A", "B")}
    )

    assert sorted(estimator.calls) == [("A", "C"), ("B", "C")]
    assert matrix.distance("A", "B") is None
    assert matrix.distance("B", "C") == pytest.approx(0.02)


def test_pool_keeps_a_bounded_number_of_tasks_in_flight() -> None:
    context = RunContext(threads=2)
    pulled: list[int] = []

    def _items():
        for value in range(10_000):
            pulled.append(value)
            yield value

    stream = context.iter_tasks("distances", _items(), lambda value: value * 2, total=10_000)
    first_item, first_result = next(stream)
    stream.close()

    assert first_result == first_item * 2
    assert len(pulled) <= 2 * IN_FLIGHT_PER_WORKER
    assert not context.cancelled

    results = dict(RunContext(threads=3).iter_tasks("distances", range(500), lambda value: value + 1, total=500))
    assert results == {value: value + 1 for value in range(500)}
