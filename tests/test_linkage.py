from __future__ import annotations

import random

import pytest

from panderep.derep.distances import DistanceMatrix
from panderep.derep.linkage import Dendrogram, MergeNode, coarsen_assignment, cut_dendrogram, single_linkage
from panderep.exceptions import ClusteringInconsistency, ConfigurationError


def _abc_matrix() -> DistanceMatrix:
    matrix = DistanceMatrix(["A", "B", "C"])
    matrix.add_pair("A", "B", 0.01)
    matrix.add_pair("B", "C", 0.02)
    return matrix


def _random_matrix(seed: int, n_genomes: int = 12, density: float = 0.4) -> DistanceMatrix:
    rng = random.Random(seed)
    matrix = DistanceMatrix([f"g{idx:02d}" for idx in range(n_genomes)])
    for left in range(n_genomes):
        for right in range(left + 1, n_genomes):
            if rng.random() < density:
                # Coarse values so that ties are common.
                matrix.add(left, right, rng.choice([0.0, 0.01, 0.02, 0.02, 0.05, 0.1, 0.3]))
    return matrix


def test_chained_genomes_form_one_cluster() -> None:
    dendrogram = single_linkage(_abc_matrix())
    assignment = cut_dendrogram(dendrogram, 0.05)

    assert len(assignment) == 1
    assert assignment.members["cluster_000001"] == ("A", "B", "C")


def test_tight_cut_splits_chain() -> None:
    assignment = cut_dendrogram(single_linkage(_abc_matrix()), 0.015)

    assert len(assignment) == 2
    assert assignment.cluster_of["A"] == assignment.cluster_of["B"]
    assert assignment.cluster_of["C"] != assignment.cluster_of["A"]
    assert assignment.singletons() == [assignment.cluster_of["C"]]


def test_cut_includes_merges_at_exact_threshold() -> None:
    assignment = cut_dendrogram(single_linkage(_abc_matrix()), 0.02)
    assert len(assignment) == 1


def test_every_genome_is_assigned_exactly_once() -> None:
    matrix = _random_matrix(seed=7)
    assignment = cut_dendrogram(single_linkage(matrix), 0.02)

    assert sorted(assignment.cluster_of) == sorted(matrix.genome_ids)
    listed = [genome_id for members in assignment.members.values() for genome_id in members]
    assert sorted(listed) == sorted(matrix.genome_ids)


def test_no_edges_yields_only_singletons() -> None:
    matrix = DistanceMatrix(["x", "y", "z"])
    dendrogram = single_linkage(matrix)

    assert dendrogram.nodes == []
    assert dendrogram.roots() == [0, 1, 2]
    assignment = cut_dendrogram(dendrogram, 1.0)
    assert len(assignment) == 3
    assert len(assignment.singletons()) == 3


@pytest.mark.parametrize("seed", range(10))
def test_merge_heights_never_decrease(seed: int) -> None:
    dendrogram = single_linkage(_random_matrix(seed))
    dendrogram.validate()

    for offset, node in enumerate(dendrogram.nodes):
        assert node.distance >= dendrogram.height(node.left)
        assert node.distance >= dendrogram.height(node.right)
        if offset:
            assert node.distance >= dendrogram.nodes[offset - 1].distance


@pytest.mark.parametrize("seed", range(5))
def test_looser_cut_only_merges_clusters(seed: int) -> None:
    dendrogram = single_linkage(_random_matrix(seed))
    thresholds = [0.0, 0.01, 0.02, 0.05, 0.1, 0.3, 1.0]

    for tight, loose in zip(thresholds, thresholds[1:]):
        fine = cut_dendrogram(dendrogram, tight)
        coarse = cut_dendrogram(dendrogram, loose)
        assert len(coarse) <= len(fine)
        for members in fine.members.values():
            assert len({coarse.cluster_of[genome_id] for genome_id in members}) == 1


def test_connected_matrix_reaches_single_root_at_max_distance() -> None:
    matrix = DistanceMatrix(["a", "b", "c", "d"])
    matrix.add_pair("a", "b", 0.2)
    matrix.add_pair("c", "d", 0.1)
    matrix.add_pair("b", "c", 0.4)

    dendrogram = single_linkage(matrix)

    assert len(dendrogram.roots()) == 1
    assert len(cut_dendrogram(dendrogram, 0.4)) == 1
    assert dendrogram.size(dendrogram.roots()[0]) == 4


def test_tie_break_by_id_ignores_input_order() -> None:
    forward = DistanceMatrix(["a", "b", "c"])
    reverse = DistanceMatrix(["c", "b", "a"])
    for matrix in (forward, reverse):
        matrix.add_pair("a", "b", 0.01)
        matrix.add_pair("b", "c", 0.01)

    first = single_linkage(forward, tie_break="id")
    second = single_linkage(reverse, tie_break="id")

    def _merged_labels(dendrogram: Dendrogram) -> list[set[str]]:
        return [
            {dendrogram.labels[leaf] for leaf in dendrogram.leaves(dendrogram.n_leaves + offset)}
            for offset in range(len(dendrogram.nodes))
        ]

    assert _merged_labels(first) == _merged_labels(second) == [{"a", "b"}, {"a", "b", "c"}]


def test_tie_break_by_input_follows_index_order() -> None:
    matrix = DistanceMatrix(["c", "b", "a"])
    matrix.add_pair("a", "b", 0.01)
    matrix.add_pair("b", "c", 0.01)

    dendrogram = single_linkage(matrix, tie_break="input")

    first_merge = dendrogram.nodes[0]
    assert {dendrogram.labels[first_merge.left], dendrogram.labels[first_merge.right]} == {"c", "b"}


def test_unknown_tie_break_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        single_linkage(_abc_matrix(), tie_break="random")


def test_cut_threshold_outside_unit_interval_is_rejected() -> None:
    dendrogram = single_linkage(_abc_matrix())
    with pytest.raises(ConfigurationError):
        cut_dendrogram(dendrogram, 1.5)
    with pytest.raises(ConfigurationError):
        cut_dendrogram(dendrogram, -0.1)


def test_cluster_ids_follow_first_member_in_input_order() -> None:
    matrix = DistanceMatrix(["z", "y", "x", "w"])
    matrix.add_pair("x", "w", 0.01)

    assignment = cut_dendrogram(single_linkage(matrix), 0.05)

    assert assignment.cluster_of == {
        "z": "cluster_000001",
        "y": "cluster_000002",
        "x": "cluster_000003",
        "w": "cluster_000003",
    }


def test_dendrogram_rejects_cycles_and_inversions() -> None:
    dendrogram = Dendrogram(labels=("a", "b", "c"))
    node = dendrogram.append(0, 1, 0.2)

    with pytest.raises(ClusteringInconsistency, match="cycle"):
        dendrogram.append(0, 2, 0.3)
    with pytest.raises(ClusteringInconsistency, match="Inversion"):
        dendrogram.append(node, 2, 0.1)
    with pytest.raises(ClusteringInconsistency):
        dendrogram.append(2, 2, 0.3)
    with pytest.raises(ClusteringInconsistency):
        dendrogram.append(2, 9, 0.3)


def test_dendrogram_replays_nodes_on_construction() -> None:
    with pytest.raises(ClusteringInconsistency):
        Dendrogram(labels=("a", "b", "c"), nodes=[MergeNode(0, 1, 0.5, 2), MergeNode(3, 2, 0.1, 3)])


def test_dendrogram_dict_round_trip_and_newick() -> None:
    dendrogram = single_linkage(_abc_matrix())

    restored = Dendrogram.from_dict(dendrogram.to_dict())

    assert restored.nodes == dendrogram.nodes
    assert restored.labels == dendrogram.labels
    assert dendrogram.to_newick() == "(C:0.02,(A:0.01,B:0.01):0.01);\n"


def test_newick_writes_one_tree_per_root() -> None:
    matrix = DistanceMatrix(["a", "b", "c"])
    matrix.add_pair("a", "b", 0.1)

    newick = single_linkage(matrix).to_newick()

    assert newick.splitlines() == ["c;", "(a:0.1,b:0.1);"]


def test_coarsen_assignment_joins_clusters_sharing_a_group() -> None:
    matrix = DistanceMatrix(["A", "B", "C", "D"])
    matrix.add_pair("A", "B", 0.01)
    assignment = cut_dendrogram(single_linkage(matrix), 0.05)
    assert len(assignment) == 3

    coarse = coarsen_assignment(assignment, matrix.genome_ids, {"A": "x", "B": "y", "C": "y", "D": "z"})

    assert coarse.members == {"cluster_000001": ("A", "B", "C"), "cluster_000002": ("D",)}
    assert coarse.threshold == assignment.threshold
