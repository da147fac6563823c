from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Sequence

from panderep.derep.fasta import FastaFormatError, genome_size
from panderep.derep.genome import Genome
from panderep.derep.graph import GrowthMetric, PangenomeGraphBuilder
from panderep.exceptions import ClusteringInconsistency, ConfigurationError, GraphInsertionFailure

logger = logging.getLogger(__name__)

PRIORITIES = ("size", "alphabetical", "input")
NOVELTY_MODES = ("absolute", "fraction")


class ExclusionReason(str, Enum):
    REDUNDANT = "redundant"
    BELOW_NOVELTY_THRESHOLD = "below-novelty-threshold"
    INSERTION_FAILED = "insertion-failed"


@dataclass(frozen=True, slots=True)
class SelectionPolicy:
    """How members are ordered and when a genome's growth counts as novel.

    `absolute` compares the number of new k-mers with the threshold; `fraction`
    compares new k-mers relative to the graph size before the insertion.
    """

    priority: str = "size"
    novelty_threshold: float = 0.0
    novelty_mode: str = "absolute"

    def __post_init__(self) -> None:
        if self.priority not in PRIORITIES:
            raise ConfigurationError(f"Unknown priority `{self.priority}`; expected one of {', '.join(PRIORITIES)}.")
        if self.novelty_mode not in NOVELTY_MODES:
            raise ConfigurationError(
                f"Unknown novelty mode `{self.novelty_mode}`; expected one of {', '.join(NOVELTY_MODES)}."
            )
        if self.novelty_threshold < 0.0:
            raise ConfigurationError("Novelty threshold must be non-negative.")
        if self.novelty_mode == "fraction" and self.novelty_threshold > 1.0:
            raise ConfigurationError("Fractional novelty threshold must be within [0, 1].")

    def novelty(self, growth: GrowthMetric) -> float:
        if self.novelty_mode == "fraction":
            return growth.fraction
        return float(growth.new_kmers)

    def is_novel(self, growth: GrowthMetric) -> bool:
        return self.novelty(growth) > self.novelty_threshold


@dataclass(frozen=True, slots=True)
class MemberDecision:
    genome_id: str
    kept: bool
    growth: GrowthMetric | None = None
    reason: ExclusionReason | None = None
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class RepresentativeSet:
    cluster_id: str
    decisions: tuple[MemberDecision, ...]

    @property
    def representatives(self) -> tuple[str, ...]:
        return tuple(decision.genome_id for decision in self.decisions if decision.kept)

    @property
    def excluded(self) -> dict[str, ExclusionReason]:
        return {
            decision.genome_id: decision.reason
            for decision in self.decisions
            if not decision.kept and decision.reason is not None
        }

    @property
    def members(self) -> tuple[str, ...]:
        return tuple(decision.genome_id for decision in self.decisions)


def _size_or_unknown(genome: Genome, size_of: Callable[[Genome], int]) -> int:
    try:
        return size_of(genome)
    except (OSError, UnicodeDecodeError, FastaFormatError) as exc:
        logger.warning("Unable to size %s for ordering: %s", genome.genome_id, exc, extra={"genome_id": genome.genome_id})
        return -1


def order_members(
    members: Sequence[Genome],
    priority: str,
    *,
    size_of: Callable[[Genome], int] = genome_size,
) -> list[Genome]:
    """Order cluster members for greedy insertion; genome id breaks every tie."""

    if priority == "input":
        return list(members)
    if priority == "alphabetical":
        return sorted(members, key=lambda genome: genome.genome_id)
    if priority == "size":
        sizes = {genome.genome_id: _size_or_unknown(genome, size_of) for genome in members}
        return sorted(members, key=lambda genome: (-sizes[genome.genome_id], genome.genome_id))
    raise ConfigurationError(f"Unknown priority `{priority}`.")


def select_representatives(
    cluster_id: str,
    members: Sequence[Genome],
    builder: PangenomeGraphBuilder,
    policy: SelectionPolicy,
    *,
    size_of: Callable[[Genome], int] = genome_size,
    on_failure: Callable[[str, str], None] | None = None,
) -> RepresentativeSet:
    """Greedy single pass: keep a member when its insertion grows the graph enough."""

    if not members:
        raise ClusteringInconsistency(f"Cluster {cluster_id} has no members.")

    if len(members) == 1:
        return RepresentativeSet(
            cluster_id=cluster_id,
            decisions=(MemberDecision(genome_id=members[0].genome_id, kept=True),),
        )

    decisions: list[MemberDecision] = []
    kept_any = False
    handle = builder.new_graph(cluster_id)
    try:
        for genome in order_members(members, policy.priority, size_of=size_of):
            try:
                growth = builder.insert(handle, genome)
            except GraphInsertionFailure as exc:
                if on_failure is not None:
                    on_failure(genome.genome_id, exc.reason)
                decisions.append(
                    MemberDecision(
                        genome_id=genome.genome_id,
                        kept=False,
                        reason=ExclusionReason.INSERTION_FAILED,
                        detail=exc.reason,
                    )
                )
                continue

            if not kept_any or policy.is_novel(growth):
                kept_any = True
                decisions.append(MemberDecision(genome_id=genome.genome_id, kept=True, growth=growth))
            elif growth.new_kmers == 0:
                decisions.append(
                    MemberDecision(
                        genome_id=genome.genome_id,
                        kept=False,
                        growth=growth,
                        reason=ExclusionReason.REDUNDANT,
                    )
                )
            else:
                decisions.append(
                    MemberDecision(
                        genome_id=genome.genome_id,
                        kept=False,
                        growth=growth,
                        reason=ExclusionReason.BELOW_NOVELTY_THRESHOLD,
                    )
                )
    finally:
        builder.release(handle)

    result = RepresentativeSet(cluster_id=cluster_id, decisions=tuple(decisions))
    logger.debug(
        "Cluster %s: kept %d of %d members.",
        cluster_id,
        len(result.representatives),
        len(members),
        extra={"cluster_id": cluster_id},
    )
    return result
