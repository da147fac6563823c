from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

FASTA_SUFFIXES = (".fa", ".fasta", ".fna", ".fas", ".ffn", ".fa.gz", ".fasta.gz", ".fna.gz", ".fas.gz", ".ffn.gz")


@dataclass(frozen=True, slots=True)
class Genome:
    """One input assembly; the sequence itself is read lazily from `fasta_path`."""

    genome_id: str
    fasta_path: Path
    size: int | None = None


def genome_id_from_path(path: Path) -> str:
    """Strip FASTA and compression suffixes from a file name."""

    name = path.name
    lowered = name.lower()
    for suffix in sorted(FASTA_SUFFIXES, key=len, reverse=True):
        if lowered.endswith(suffix):
            return name[: -len(suffix)]
    return path.stem
