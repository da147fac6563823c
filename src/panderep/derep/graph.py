"""Incremental pangenome graph adapters.

A builder hands out per-cluster graph handles and reports how much unseen
content each inserted genome adds. Handles are mutable, have no undo, and are
used by exactly one thread at a time.
"""

from __future__ import annotations

import gzip
import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from panderep.derep.fasta import FastaFormatError, read_fasta_records
from panderep.derep.genome import Genome
from panderep.derep.kmer import iter_kmers
from panderep.exceptions import GraphInsertionFailure
from panderep.paths import sanitize_identifier
from panderep.runners.ggcat import GgcatRunner
from panderep.utils.subprocess import CommandExecutionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GrowthMetric:
    new_kmers: int
    new_segments: int
    graph_kmers_before: int
    genome_kmers: int | None = None

    @property
    def fraction(self) -> float:
        """New k-mers relative to the graph before the insertion."""

        if self.graph_kmers_before == 0:
            return math.inf if self.new_kmers > 0 else 0.0
        return self.new_kmers / self.graph_kmers_before


class PangenomeGraphBuilder(Protocol):
    def new_graph(self, label: str = "graph") -> Any: ...

    def insert(self, handle: Any, genome: Genome) -> GrowthMetric: ...

    def release(self, handle: Any) -> None: ...


@dataclass
class KmerGraph:
    label: str
    kmers: set[str] = field(default_factory=set)
    genome_ids: list[str] = field(default_factory=list)


class KmerGraphBuilder:
    """In-process de Bruijn content tracker over canonical k-mers.

    A maximal run of consecutive unseen k-mers along a contig adds at least one
    new unitig to the compacted graph, so runs are counted as new segments.
    """

    def __init__(self, *, k: int = 31, canonical: bool = True) -> None:
        self.k = k
        self.canonical = canonical

    def new_graph(self, label: str = "graph") -> KmerGraph:
        return KmerGraph(label=label)

    def insert(self, handle: KmerGraph, genome: Genome) -> GrowthMetric:
        try:
            records = read_fasta_records(genome.fasta_path)
        except (OSError, UnicodeDecodeError, FastaFormatError) as exc:
            raise GraphInsertionFailure(genome.genome_id, str(exc)) from exc

        graph_kmers_before = len(handle.kmers)
        genome_kmers: set[str] = set()
        new_kmers = 0
        new_segments = 0

        for record in records:
            in_run = False
            for kmer in iter_kmers(record.sequence, self.k, canonical=self.canonical):
                if kmer is None:
                    in_run = False
                    continue
                genome_kmers.add(kmer)
                if kmer in handle.kmers:
                    in_run = False
                    continue
                handle.kmers.add(kmer)
                new_kmers += 1
                if not in_run:
                    new_segments += 1
                    in_run = True

        if not genome_kmers:
            raise GraphInsertionFailure(genome.genome_id, f"no valid {self.k}-mers in {genome.fasta_path}")

        handle.genome_ids.append(genome.genome_id)
        return GrowthMetric(
            new_kmers=new_kmers,
            new_segments=new_segments,
            graph_kmers_before=graph_kmers_before,
            genome_kmers=len(genome_kmers),
        )

    def release(self, handle: KmerGraph) -> None:
        handle.kmers.clear()


@dataclass(frozen=True, slots=True)
class GgcatParams:
    kmer_size: int = 51
    kmer_min_multiplicity: int = 1
    minimizer_length: int | None = None
    no_reverse_complement: bool = False
    unitig_type: str = "greedymatchtigs"
    threads: int = 1
    memory: int = 4
    intermediate_compression_level: int | None = None


@dataclass
class GgcatGraph:
    label: str
    directory: Path
    inputs: list[Path] = field(default_factory=list)
    genome_ids: list[str] = field(default_factory=list)
    segments: int = 0
    kmers: int = 0

    @property
    def graph_path(self) -> Path:
        return self.directory / f"{sanitize_identifier(self.label)}.dbg.fasta"


def _graph_stats(path: Path, k: int) -> tuple[int, int]:
    """Count segments and k-mer positions in a ggcat output FASTA."""

    opener = gzip.open if path.suffix == ".gz" else open
    segments = 0
    kmers = 0
    length = 0
    with opener(path, "rt", encoding="utf-8") as handle:
        for raw_line in handle:
            line = raw_line.strip()
            if line.startswith(">"):
                if segments:
                    kmers += max(0, length - k + 1)
                segments += 1
                length = 0
            else:
                length += len(line)
    if segments:
        kmers += max(0, length - k + 1)
    return segments, kmers


class GgcatGraphBuilder:
    """Compacted graphs built with `ggcat build`.

    ggcat has no incremental mode, so every insertion rebuilds the graph from
    all genomes inserted so far and growth is the difference in segment and
    k-mer counts. Work per cluster is therefore quadratic in its size.
    """

    def __init__(
        self,
        *,
        work_dir: Path,
        params: GgcatParams | None = None,
        runner: GgcatRunner | None = None,
        temp_dir: Path | None = None,
    ) -> None:
        self.work_dir = work_dir
        self.params = params if params is not None else GgcatParams()
        self.runner = runner if runner is not None else GgcatRunner()
        self.temp_dir = temp_dir

    def new_graph(self, label: str = "graph") -> GgcatGraph:
        directory = self.work_dir / sanitize_identifier(label)
        directory.mkdir(parents=True, exist_ok=True)
        return GgcatGraph(label=label, directory=directory)

    def insert(self, handle: GgcatGraph, genome: Genome) -> GrowthMetric:
        staging = handle.directory / f".staging.{len(handle.inputs):05d}.fasta"
        try:
            self.runner.build(
                input_fastas=[*handle.inputs, genome.fasta_path],
                output_fasta=staging,
                kmer_size=self.params.kmer_size,
                threads=self.params.threads,
                memory=self.params.memory,
                min_multiplicity=self.params.kmer_min_multiplicity,
                minimizer_length=self.params.minimizer_length,
                forward_only=self.params.no_reverse_complement,
                unitig_type=self.params.unitig_type,
                temp_dir=self.temp_dir,
                intermediate_compression_level=self.params.intermediate_compression_level,
            )
            segments, kmers = _graph_stats(staging, self.params.kmer_size)
        except (CommandExecutionError, OSError, UnicodeDecodeError) as exc:
            staging.unlink(missing_ok=True)
            raise GraphInsertionFailure(genome.genome_id, str(exc)) from exc

        os.replace(staging, handle.graph_path)
        growth = GrowthMetric(
            new_kmers=max(0, kmers - handle.kmers),
            new_segments=max(0, segments - handle.segments),
            graph_kmers_before=handle.kmers,
            genome_kmers=kmers if not handle.inputs else None,
        )
        handle.inputs.append(genome.fasta_path)
        handle.genome_ids.append(genome.genome_id)
        handle.segments = segments
        handle.kmers = kmers
        logger.debug(
            "Graph %s: %d segments, %d k-mers after inserting %s.",
            handle.label,
            segments,
            kmers,
            genome.genome_id,
            extra={"genome_id": genome.genome_id, "cluster_id": handle.label},
        )
        return growth

    def release(self, handle: GgcatGraph) -> None:
        # The last graph stays on disk as the cluster's pangenome.
        for leftover in handle.directory.glob(".staging.*"):
            leftover.unlink(missing_ok=True)
