from __future__ import annotations


class PanDerepError(Exception):
    """Base class for panderep exceptions."""

    exit_code: int = 1


class ConfigurationError(PanDerepError):
    """Raised when command arguments, thresholds or inputs are invalid."""

    exit_code = 2


class EstimationFailure(PanDerepError):
    """Raised when a single genome pair could not be compared."""

    def __init__(self, genome_a: str, genome_b: str, reason: str) -> None:
        super().__init__(f"ANI estimation failed for {genome_a} vs {genome_b}: {reason}")
        self.genome_a = genome_a
        self.genome_b = genome_b
        self.reason = reason


class GraphInsertionFailure(PanDerepError):
    """Raised when a genome could not be added to a pangenome graph."""

    def __init__(self, genome_id: str, reason: str) -> None:
        super().__init__(f"Graph insertion failed for {genome_id}: {reason}")
        self.genome_id = genome_id
        self.reason = reason


class ClusteringInconsistency(PanDerepError):
    """Raised when distances or merges violate a clustering invariant."""

    exit_code = 3


class RunCancelled(PanDerepError):
    """Raised at a stage barrier after the run was cancelled."""

    exit_code = 130
