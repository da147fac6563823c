from __future__ import annotations

import gzip
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, TextIO

from panderep.derep.genome import Genome


@dataclass(frozen=True, slots=True)
class FastaRecord:
    """Simple FASTA record."""

    header: str
    sequence: str


@dataclass(frozen=True, slots=True)
class AssemblyStats:
    """Assembly summary statistics for one genome FASTA."""

    genome_size: int
    contig_count: int
    n50: int


class FastaFormatError(ValueError):
    pass


def _open_text(path: Path) -> TextIO:
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8")
    return path.open("r", encoding="utf-8")


def read_fasta_records(path: Path) -> list[FastaRecord]:
    """Read FASTA records, preserving order; sequences are upper-cased."""

    records: list[FastaRecord] = []
    header: str | None = None
    seq_chunks: list[str] = []

    with _open_text(path) as handle:
        for raw_line in handle:
            line = raw_line.strip()
            if not line:
                continue
            if line.startswith(">"):
                if header is not None:
                    records.append(FastaRecord(header=header, sequence="".join(seq_chunks).upper()))
                header = line[1:].split()[0] if len(line) > 1 else ""
                seq_chunks = []
            elif header is None:
                raise FastaFormatError(f"Sequence data before the first header in {path}")
            else:
                seq_chunks.append(line)

    if header is not None:
        records.append(FastaRecord(header=header, sequence="".join(seq_chunks).upper()))

    if not records:
        raise FastaFormatError(f"No FASTA records found in {path}")

    return records


def compute_assembly_stats(records: Iterable[FastaRecord]) -> AssemblyStats:
    """Compute genome size, contig count, and N50 from FASTA records."""

    lengths = sorted((len(record.sequence) for record in records), reverse=True)
    contig_count = len(lengths)
    genome_size = sum(lengths)

    if not lengths:
        return AssemblyStats(genome_size=0, contig_count=0, n50=0)

    half = genome_size / 2
    cumulative = 0
    n50 = 0
    for length in lengths:
        cumulative += length
        if cumulative >= half:
            n50 = length
            break

    return AssemblyStats(genome_size=genome_size, contig_count=contig_count, n50=n50)


def genome_size(genome: Genome) -> int:
    """Assembly length, using the manifest value when one was given."""

    if genome.size is not None:
        return genome.size
    return compute_assembly_stats(read_fasta_records(genome.fasta_path)).genome_size
