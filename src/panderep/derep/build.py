"""Pangenome graphs for externally defined clusters."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Sequence

from panderep.derep.context import RunContext
from panderep.derep.fasta import genome_size
from panderep.derep.genome import Genome
from panderep.derep.graph import GrowthMetric, PangenomeGraphBuilder
from panderep.derep.select import order_members
from panderep.exceptions import ConfigurationError, GraphInsertionFailure

logger = logging.getLogger(__name__)

STAGE = "graphs"


@dataclass(frozen=True, slots=True)
class MemberInsertion:
    genome_id: str
    growth: GrowthMetric | None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ClusterGraph:
    cluster_id: str
    insertions: tuple[MemberInsertion, ...]
    graph_path: Path | None = None

    @property
    def inserted(self) -> int:
        return sum(1 for insertion in self.insertions if insertion.growth is not None)

    @property
    def total_kmers(self) -> int:
        return sum(insertion.growth.new_kmers for insertion in self.insertions if insertion.growth is not None)

    @property
    def total_segments(self) -> int:
        return sum(insertion.growth.new_segments for insertion in self.insertions if insertion.growth is not None)


def group_genomes(
    genomes: Sequence[Genome],
    labels: Mapping[str, str],
    *,
    target: str | None = None,
) -> dict[str, list[Genome]]:
    """Group genomes by cluster label, keeping input order within and across groups.

    With `target`, only that cluster keeps its members together and every other
    genome becomes a singleton named after itself.
    """

    if target is not None and target not in set(labels.values()):
        raise ConfigurationError(f"Target cluster `{target}` does not occur in the cluster table.")

    groups: dict[str, list[Genome]] = {}
    for genome in genomes:
        label = labels[genome.genome_id]
        if target is not None and label != target:
            label = genome.genome_id
        groups.setdefault(label, []).append(genome)
    return groups


def build_cluster_graphs(
    groups: Mapping[str, Sequence[Genome]],
    builder: PangenomeGraphBuilder,
    *,
    priority: str = "input",
    context: RunContext | None = None,
    size_of: Callable[[Genome], int] = genome_size,
) -> list[ClusterGraph]:
    """Insert every member of each multi-genome cluster into its own graph.

    Singleton clusters have nothing to merge and are skipped. An insertion
    failure is recorded and the remaining members are still inserted.
    """

    run_context = context if context is not None else RunContext()
    cluster_ids = [cluster_id for cluster_id, members in groups.items() if len(members) > 1]
    skipped = len(groups) - len(cluster_ids)
    if skipped:
        logger.info("Skipping %d singleton clusters.", skipped, extra={"stage": STAGE})

    def _build(cluster_id: str) -> ClusterGraph:
        insertions: list[MemberInsertion] = []
        handle = builder.new_graph(cluster_id)
        try:
            for genome in order_members(groups[cluster_id], priority, size_of=size_of):
                try:
                    growth = builder.insert(handle, genome)
                except GraphInsertionFailure as exc:
                    run_context.record(STAGE, genome.genome_id, exc.reason)
                    insertions.append(MemberInsertion(genome_id=genome.genome_id, growth=None, error=exc.reason))
                    continue
                insertions.append(MemberInsertion(genome_id=genome.genome_id, growth=growth))
            graph_path = getattr(handle, "graph_path", None)
        finally:
            builder.release(handle)

        result = ClusterGraph(cluster_id=cluster_id, insertions=tuple(insertions), graph_path=graph_path)
        if not result.inserted:
            run_context.record(STAGE, cluster_id, "no member could be inserted into the pangenome graph")
        return result

    logger.info("Building pangenome graphs for %d clusters...", len(cluster_ids), extra={"stage": STAGE})
    return run_context.run_tasks(STAGE, cluster_ids, _build)
