"""Sparse single-linkage clustering.

Single linkage over a sparse edge set is a minimum spanning forest: edges are
visited in increasing distance and every edge that joins two different
components becomes one merge. The dendrogram is stored as an arena where
leaves are the genome indices `0..n-1` and the k-th merge is node `n + k`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from panderep.derep.distances import DistanceMatrix, validate_distance
from panderep.exceptions import ClusteringInconsistency, ConfigurationError

logger = logging.getLogger(__name__)

TIE_BREAKS = ("id", "input")


class _UnionFind:
    def __init__(self, size: int) -> None:
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, item: int) -> int:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, left: int, right: int) -> int:
        root_left, root_right = self.find(left), self.find(right)
        if root_left == root_right:
            return root_left
        if self.rank[root_left] < self.rank[root_right]:
            root_left, root_right = root_right, root_left
        self.parent[root_right] = root_left
        if self.rank[root_left] == self.rank[root_right]:
            self.rank[root_left] += 1
        return root_left


@dataclass(frozen=True, slots=True)
class MergeNode:
    left: int
    right: int
    distance: float
    size: int


@dataclass
class Dendrogram:
    """Append-only merge forest over `labels`."""

    labels: tuple[str, ...]
    nodes: list[MergeNode] = field(default_factory=list)
    _parent: list[int | None] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self.labels = tuple(self.labels)
        self._parent = [None] * len(self.labels)
        merges, self.nodes = list(self.nodes), []
        for node in merges:
            self.append(node.left, node.right, node.distance)

    @property
    def n_leaves(self) -> int:
        return len(self.labels)

    @property
    def n_nodes(self) -> int:
        return self.n_leaves + len(self.nodes)

    def is_leaf(self, node_id: int) -> bool:
        return node_id < self.n_leaves

    def height(self, node_id: int) -> float:
        if self.is_leaf(node_id):
            return 0.0
        return self.nodes[node_id - self.n_leaves].distance

    def size(self, node_id: int) -> int:
        if self.is_leaf(node_id):
            return 1
        return self.nodes[node_id - self.n_leaves].size

    def parent(self, node_id: int) -> int | None:
        return self._parent[node_id]

    def append(self, left: int, right: int, distance: float) -> int:
        """Record a merge of two current roots and return the new node id."""

        for child in (left, right):
            if not 0 <= child < self.n_nodes:
                raise ClusteringInconsistency(f"Merge references unknown node {child}.")
            if self._parent[child] is not None:
                raise ClusteringInconsistency(
                    f"Node {child} already merged into node {self._parent[child]}; merge would form a cycle."
                )
        if left == right:
            raise ClusteringInconsistency(f"Node {left} cannot merge with itself.")

        value = validate_distance(distance, subject=f"merge of nodes {left} and {right}")
        for child in (left, right):
            if value < self.height(child):
                raise ClusteringInconsistency(
                    f"Inversion: merge at {value} is below child node {child} at {self.height(child)}."
                )

        node_id = self.n_nodes
        self.nodes.append(MergeNode(left=left, right=right, distance=value, size=self.size(left) + self.size(right)))
        self._parent.append(None)
        self._parent[left] = node_id
        self._parent[right] = node_id
        return node_id

    def roots(self) -> list[int]:
        return [node_id for node_id in range(self.n_nodes) if self._parent[node_id] is None]

    def leaves(self, node_id: int) -> list[int]:
        stack = [node_id]
        found: list[int] = []
        while stack:
            current = stack.pop()
            if self.is_leaf(current):
                found.append(current)
                continue
            node = self.nodes[current - self.n_leaves]
            stack.extend((node.right, node.left))
        return found

    def validate(self) -> None:
        """Check arena consistency and that heights never decrease towards the roots."""

        seen_parent: dict[int, int] = {}
        for offset, node in enumerate(self.nodes):
            node_id = self.n_leaves + offset
            for child in (node.left, node.right):
                if child >= node_id:
                    raise ClusteringInconsistency(f"Node {node_id} references later node {child}.")
                if child in seen_parent:
                    raise ClusteringInconsistency(f"Node {child} has two parents.")
                seen_parent[child] = node_id
                if node.distance < self.height(child):
                    raise ClusteringInconsistency(f"Inversion between node {node_id} and child {child}.")
            if node.size != self.size(node.left) + self.size(node.right):
                raise ClusteringInconsistency(f"Node {node_id} has an inconsistent size.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "labels": list(self.labels),
            "merges": [
                {
                    "node": self.n_leaves + offset,
                    "left": node.left,
                    "right": node.right,
                    "distance": node.distance,
                    "size": node.size,
                }
                for offset, node in enumerate(self.nodes)
            ],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Dendrogram":
        dendrogram = cls(labels=tuple(payload["labels"]))
        for merge in payload.get("merges", []):
            dendrogram.append(int(merge["left"]), int(merge["right"]), float(merge["distance"]))
        return dendrogram

    def to_newick(self) -> str:
        """One Newick tree per root, branch lengths as height differences."""

        trees: list[str] = []
        for root in self.roots():
            rendered: dict[int, str] = {}
            stack: list[tuple[int, bool]] = [(root, False)]
            while stack:
                node_id, expanded = stack.pop()
                if self.is_leaf(node_id):
                    rendered[node_id] = _newick_label(self.labels[node_id])
                    continue
                node = self.nodes[node_id - self.n_leaves]
                if not expanded:
                    stack.append((node_id, True))
                    stack.append((node.right, False))
                    stack.append((node.left, False))
                    continue
                parts = [
                    f"{rendered.pop(child)}:{node.distance - self.height(child):.6g}"
                    for child in (node.left, node.right)
                ]
                rendered[node_id] = f"({','.join(parts)})"
            trees.append(f"{rendered[root]};")
        return "\n".join(trees) + "\n"


def _newick_label(label: str) -> str:
    if any(char in label for char in " ():;,[]'"):
        return "'" + label.replace("'", "''") + "'"
    return label


def _edge_order(matrix: DistanceMatrix, tie_break: str):
    if tie_break not in TIE_BREAKS:
        raise ConfigurationError(f"Unknown tie-break rule `{tie_break}`; expected one of {', '.join(TIE_BREAKS)}.")
    labels = matrix.genome_ids
    if tie_break == "input":
        return lambda edge: (edge[2], edge[0], edge[1])

    def _by_id(edge: tuple[int, int, float]) -> tuple[float, str, str]:
        left, right = labels[edge[0]], labels[edge[1]]
        return (edge[2], left, right) if left <= right else (edge[2], right, left)

    return _by_id


def single_linkage(matrix: DistanceMatrix, *, tie_break: str = "id") -> Dendrogram:
    """Build the single-linkage dendrogram forest of a sparse distance matrix."""

    dendrogram = Dendrogram(labels=matrix.genome_ids)
    components = _UnionFind(matrix.n_genomes)
    top_node = list(range(matrix.n_genomes))

    for left, right, distance in sorted(matrix.edges(), key=_edge_order(matrix, tie_break)):
        root_left, root_right = components.find(left), components.find(right)
        if root_left == root_right:
            continue
        children = sorted((top_node[root_left], top_node[root_right]))
        node_id = dendrogram.append(children[0], children[1], distance)
        top_node[components.union(root_left, root_right)] = node_id

    logger.debug(
        "Single linkage produced %d merges over %d genomes (%d roots).",
        len(dendrogram.nodes),
        dendrogram.n_leaves,
        len(dendrogram.roots()),
    )
    return dendrogram


@dataclass(frozen=True)
class ClusterAssignment:
    """Flat clusters from one dendrogram cut."""

    threshold: float
    cluster_of: dict[str, str]
    members: dict[str, tuple[str, ...]]

    def __len__(self) -> int:
        return len(self.members)

    def cluster_ids(self) -> list[str]:
        return sorted(self.members)

    def singletons(self) -> list[str]:
        return [cluster_id for cluster_id in self.cluster_ids() if len(self.members[cluster_id]) == 1]


def assignment_from_groups(
    labels: Sequence[str],
    groups: Sequence[Sequence[int]],
    *,
    threshold: float,
    prefix: str = "cluster",
    width: int = 6,
) -> ClusterAssignment:
    """Name groups of leaf indices `cluster_000001`, ... by their first member in input order."""

    ordered = sorted((sorted(group) for group in groups if group), key=lambda group: group[0])
    cluster_of: dict[str, str] = {}
    members: dict[str, tuple[str, ...]] = {}
    for number, group in enumerate(ordered, start=1):
        cluster_id = f"{prefix}_{number:0{width}d}"
        members[cluster_id] = tuple(labels[idx] for idx in group)
        for idx in group:
            if labels[idx] in cluster_of:
                raise ClusteringInconsistency(f"Genome {labels[idx]} assigned to more than one cluster.")
            cluster_of[labels[idx]] = cluster_id

    if len(cluster_of) != len(labels):
        missing = sorted(set(labels).difference(cluster_of))
        raise ClusteringInconsistency(f"Genomes without a cluster: {', '.join(missing[:5])}")
    return ClusterAssignment(threshold=threshold, cluster_of=cluster_of, members=members)


def cut_dendrogram(dendrogram: Dendrogram, threshold: float) -> ClusterAssignment:
    """Apply merges in increasing distance until one exceeds `threshold`."""

    if not 0.0 <= threshold <= 1.0:
        raise ConfigurationError(f"Distance threshold must be within [0, 1], got {threshold}")

    # Any leaf below a node stands in for the node in the union-find.
    first_leaf = list(range(dendrogram.n_leaves))
    for node in dendrogram.nodes:
        first_leaf.append(first_leaf[node.left])

    components = _UnionFind(dendrogram.n_leaves)
    order = sorted(range(len(dendrogram.nodes)), key=lambda offset: (dendrogram.nodes[offset].distance, offset))
    for offset in order:
        node = dendrogram.nodes[offset]
        if node.distance > threshold:
            break
        components.union(first_leaf[node.left], first_leaf[node.right])

    groups: dict[int, list[int]] = {}
    for leaf in range(dendrogram.n_leaves):
        groups.setdefault(components.find(leaf), []).append(leaf)

    return assignment_from_groups(dendrogram.labels, list(groups.values()), threshold=threshold)


def coarsen_assignment(
    assignment: ClusterAssignment,
    labels: Sequence[str],
    groups: Mapping[str, str],
) -> ClusterAssignment:
    """Join clusters that share a member group, e.g. from an external clustering.

    `groups` maps every genome id to a group label; clusters are renumbered.
    """

    index = {label: idx for idx, label in enumerate(labels)}
    components = _UnionFind(len(labels))
    for members in assignment.members.values():
        for genome_id in members[1:]:
            components.union(index[members[0]], index[genome_id])
    first_of_group: dict[str, int] = {}
    for genome_id in labels:
        first = first_of_group.setdefault(groups[genome_id], index[genome_id])
        components.union(first, index[genome_id])

    merged: dict[int, list[int]] = {}
    for idx in range(len(labels)):
        merged.setdefault(components.find(idx), []).append(idx)
    return assignment_from_groups(labels, list(merged.values()), threshold=assignment.threshold)
