"""Pairwise ANI estimation adapters.

Every estimator maps a pair of genomes to a `DistanceResult` holding
`1 - ANI`, or to `UNDEFINED` when the pair does not share enough content to
be measured. Estimators are called concurrently from the distance builder's
worker threads and keep no state that one call could observe from another.
"""

from __future__ import annotations

import math
import re
import threading
from dataclasses import dataclass
from typing import Protocol

from panderep.derep.fasta import FastaFormatError, read_fasta_records
from panderep.derep.genome import Genome
from panderep.derep.kmer import kmer_set, mash_distance, minhash_sketch, sketch_jaccard
from panderep.exceptions import EstimationFailure
from panderep.runners.skani import SkaniRunner
from panderep.utils.subprocess import CommandExecutionError


@dataclass(frozen=True, slots=True)
class DistanceResult:
    distance: float | None
    align_fraction_ref: float | None = None
    align_fraction_query: float | None = None

    @property
    def defined(self) -> bool:
        return self.distance is not None

    @property
    def ani(self) -> float | None:
        return None if self.distance is None else 1.0 - self.distance

    @classmethod
    def from_ani(
        cls,
        ani: float,
        *,
        align_fraction_ref: float | None = None,
        align_fraction_query: float | None = None,
    ) -> "DistanceResult":
        return cls(
            distance=max(0.0, min(1.0, 1.0 - ani)),
            align_fraction_ref=align_fraction_ref,
            align_fraction_query=align_fraction_query,
        )


UNDEFINED = DistanceResult(distance=None)


class SimilarityEstimator(Protocol):
    def estimate(self, genome_a: Genome, genome_b: Genome) -> DistanceResult: ...


@dataclass(frozen=True, slots=True)
class SkaniParams:
    marker_compression_factor: int = 1000
    kmer_subsampling_rate: int = 30
    rescue_small: bool = False
    clip_tails: bool = False
    median: bool = False
    adjust_ani: bool = False
    bootstrap_ci: bool = False
    min_aligned_frac: float = 0.15

    def to_cli_options(self) -> list[str]:
        options = [
            "-c",
            str(self.kmer_subsampling_rate),
            "-m",
            str(self.marker_compression_factor),
        ]
        if self.rescue_small:
            options.append("--small-genomes")
        if self.clip_tails:
            options.append("--robust")
        if self.median:
            options.append("--median")
        if not self.adjust_ani:
            options.append("--no-learned-ani")
        if self.bootstrap_ci:
            options.append("--ci")
        return options


def parse_skani_dist_output(stdout: str) -> tuple[float, float, float] | None:
    """Return (ANI, ref align fraction, query align fraction) as fractions.

    skani reports all three columns in percent, including aligned fractions
    below 1%. It prints only its header when a pair is below its detection
    limit; that case returns None.
    """

    lines = [line for line in stdout.splitlines() if line.strip()]
    if not lines:
        return None

    header = [token.strip().lower() for token in re.split(r"\t+", lines[0].strip())]
    if "ani" not in header:
        raise ValueError(f"Unrecognised skani output header: {lines[0]!r}")
    if len(lines) < 2:
        return None

    values = [token.strip() for token in lines[1].rstrip("\n").split("\t")]
    try:
        ani = float(values[header.index("ani")])
        af_ref = float(values[header.index("align_fraction_ref")]) if "align_fraction_ref" in header else 100.0
        af_query = (
            float(values[header.index("align_fraction_query")]) if "align_fraction_query" in header else 100.0
        )
    except (IndexError, ValueError) as exc:
        raise ValueError(f"Unable to parse skani result line: {lines[1]!r}") from exc

    return ani / 100.0, af_ref / 100.0, af_query / 100.0


def filter_ani(ani: float, af_ref: float, af_query: float, *, min_aligned_frac: float) -> DistanceResult:
    """Keep an ANI only when it is a real identity and enough of either genome aligned."""

    if math.isnan(ani) or not 0.0 < ani <= 1.0:
        return UNDEFINED
    if not (af_ref > min_aligned_frac or af_query > min_aligned_frac):
        return UNDEFINED
    return DistanceResult.from_ani(ani, align_fraction_ref=af_ref, align_fraction_query=af_query)


class SkaniEstimator:
    """ANI through the `skani dist` binary, one process per pair."""

    def __init__(self, params: SkaniParams | None = None, runner: SkaniRunner | None = None) -> None:
        self.params = params if params is not None else SkaniParams()
        self.runner = runner if runner is not None else SkaniRunner()
        self._options = self.params.to_cli_options()

    def estimate(self, genome_a: Genome, genome_b: Genome) -> DistanceResult:
        try:
            result = self.runner.dist_pair(
                query=genome_a.fasta_path,
                reference=genome_b.fasta_path,
                options=self._options,
            )
            parsed = parse_skani_dist_output(result.stdout)
        except (CommandExecutionError, ValueError) as exc:
            raise EstimationFailure(genome_a.genome_id, genome_b.genome_id, str(exc)) from exc

        if parsed is None:
            return UNDEFINED
        ani, af_ref, af_query = parsed
        return filter_ani(ani, af_ref, af_query, min_aligned_frac=self.params.min_aligned_frac)


class SketchEstimator:
    """In-process MinHash estimator; ANI is approximated as 1 - Mash distance."""

    def __init__(self, *, k: int = 21, sketch_size: int = 10000) -> None:
        self.k = k
        self.sketch_size = sketch_size
        self._sketches: dict[str, frozenset[int]] = {}
        self._lock = threading.Lock()

    def sketch(self, genome: Genome) -> frozenset[int]:
        with self._lock:
            cached = self._sketches.get(genome.genome_id)
        if cached is not None:
            return cached

        records = read_fasta_records(genome.fasta_path)
        sketch = minhash_sketch(kmer_set((record.sequence for record in records), self.k), self.sketch_size)
        with self._lock:
            return self._sketches.setdefault(genome.genome_id, sketch)

    def estimate(self, genome_a: Genome, genome_b: Genome) -> DistanceResult:
        try:
            left = self.sketch(genome_a)
            right = self.sketch(genome_b)
        except (OSError, UnicodeDecodeError, FastaFormatError) as exc:
            raise EstimationFailure(genome_a.genome_id, genome_b.genome_id, str(exc)) from exc

        jaccard = sketch_jaccard(left, right, self.sketch_size)
        if jaccard <= 0.0:
            return UNDEFINED
        return DistanceResult(distance=mash_distance(jaccard, self.k))
