from __future__ import annotations

import hashlib
import heapq
import math
from typing import Iterable, Iterator

_COMPLEMENT = str.maketrans("ACGT", "TGCA")
_VALID_BASES = frozenset("ACGT")


def _stable_hash64(value: str) -> int:
    digest = hashlib.blake2b(value.encode("ascii"), digest_size=8).digest()
    return int.from_bytes(digest, byteorder="big", signed=False)


def reverse_complement(sequence: str) -> str:
    return sequence.translate(_COMPLEMENT)[::-1]


def canonical_kmer(kmer: str) -> str:
    rc = reverse_complement(kmer)
    return kmer if kmer <= rc else rc


def iter_kmers(sequence: str, k: int, *, canonical: bool = True) -> Iterator[str | None]:
    """Yield every k-mer window of `sequence`.

    Windows containing a non-ACGT base yield None so that callers can still
    track positional runs along a contig.
    """

    normalized = sequence.upper()
    if k <= 0 or len(normalized) < k:
        return
    for idx in range(0, len(normalized) - k + 1):
        kmer = normalized[idx : idx + k]
        if not _VALID_BASES.issuperset(kmer):
            yield None
            continue
        yield canonical_kmer(kmer) if canonical else kmer


def kmer_set(sequences: Iterable[str], k: int, *, canonical: bool = True) -> set[str]:
    kmers: set[str] = set()
    for sequence in sequences:
        kmers.update(kmer for kmer in iter_kmers(sequence, k, canonical=canonical) if kmer is not None)
    return kmers


def minhash_sketch(kmers: Iterable[str], sketch_size: int) -> frozenset[int]:
    """Bottom-s MinHash sketch over stable 64-bit k-mer hashes."""

    if sketch_size <= 0:
        return frozenset()
    return frozenset(heapq.nsmallest(sketch_size, {_stable_hash64(kmer) for kmer in kmers}))


def sketch_jaccard(left: frozenset[int], right: frozenset[int], sketch_size: int) -> float:
    """Estimate Jaccard from the bottom-s of the union of two sketches."""

    if not left or not right:
        return 0.0
    union_bottom = heapq.nsmallest(sketch_size, left | right)
    shared = sum(1 for value in union_bottom if value in left and value in right)
    return shared / len(union_bottom)


def mash_distance(jaccard: float, k: int) -> float:
    """Mash distance from a Jaccard estimate; 1.0 when nothing is shared."""

    if jaccard <= 0.0:
        return 1.0
    if jaccard >= 1.0:
        return 0.0
    distance = (-1.0 / float(k)) * math.log((2.0 * jaccard) / (1.0 + jaccard))
    return max(0.0, min(1.0, distance))
