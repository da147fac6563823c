"""ANI clustering and pangenome-aware representative selection."""

from panderep.derep.batching import BatchSettings, batched_distance_matrix
from panderep.derep.build import ClusterGraph, build_cluster_graphs, group_genomes
from panderep.derep.context import RunContext
from panderep.derep.distances import DistanceMatrix, build_distance_matrix
from panderep.derep.genome import Genome
from panderep.derep.linkage import ClusterAssignment, Dendrogram, cut_dendrogram, single_linkage
from panderep.derep.pipeline import DereplicationReport, PipelineSettings, run_pipeline
from panderep.derep.select import RepresentativeSet, SelectionPolicy, select_representatives

__all__ = [
    "BatchSettings",
    "ClusterAssignment",
    "ClusterGraph",
    "Dendrogram",
    "DereplicationReport",
    "DistanceMatrix",
    "Genome",
    "PipelineSettings",
    "RepresentativeSet",
    "RunContext",
    "SelectionPolicy",
    "batched_distance_matrix",
    "build_cluster_graphs",
    "build_distance_matrix",
    "cut_dendrogram",
    "group_genomes",
    "run_pipeline",
    "select_representatives",
    "single_linkage",
]
