from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class OutputLayout:
    root: Path
    graphs_dir: Path
    prefilter_dir: Path

    @property
    def clusters_tsv(self) -> Path:
        return self.root / "clusters.tsv"

    @property
    def representatives_tsv(self) -> Path:
        return self.root / "representatives.tsv"

    @property
    def distances_tsv(self) -> Path:
        return self.root / "distances.tsv"

    @property
    def diagnostics_tsv(self) -> Path:
        return self.root / "diagnostics.tsv"

    @property
    def report_json(self) -> Path:
        return self.root / "report.json"

    @property
    def dendrogram_json(self) -> Path:
        return self.root / "dendrogram.json"

    @property
    def dendrogram_newick(self) -> Path:
        return self.root / "dendrogram.nwk"

    @property
    def build_tsv(self) -> Path:
        return self.root / "build.tsv"

    def dendrogram_paths(self) -> list[Path]:
        return [self.dendrogram_json, self.dendrogram_newick]

    def report_paths(self, *, include_dendrogram: bool = False) -> list[Path]:
        paths = [
            self.clusters_tsv,
            self.representatives_tsv,
            self.distances_tsv,
            self.diagnostics_tsv,
            self.report_json,
        ]
        if include_dendrogram:
            paths.extend(self.dendrogram_paths())
        return paths


def sanitize_identifier(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned.strip("_") or "unknown"


def create_output_layout(outdir: Path) -> OutputLayout:
    root = outdir
    graphs_dir = root / "graphs"
    prefilter_dir = root / "mash"

    root.mkdir(parents=True, exist_ok=True)

    return OutputLayout(root=root, graphs_dir=graphs_dir, prefilter_dir=prefilter_dir)
