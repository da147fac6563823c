"""Pangenome-aware dereplication of bacterial genomes into ANI clusters."""

__version__ = "0.1.0"
