from __future__ import annotations

from pathlib import Path
from typing import Sequence

from panderep.derep.build import ClusterGraph
from panderep.derep.distances import DistanceMatrix
from panderep.derep.genome import Genome, genome_id_from_path
from panderep.derep.linkage import ClusterAssignment, Dendrogram
from panderep.derep.pipeline import DereplicationReport
from panderep.exceptions import ConfigurationError
from panderep.paths import OutputLayout
from panderep.utils.io import read_tsv_records, write_json, write_text, write_tsv
from panderep.utils.validation import validate_existing_file

DISTANCE_HEADER = ("genome_a", "genome_b", "ani", "distance")
SKANI_PATH_COLUMNS = ("ref_file", "query_file")


def _format_float(value: float | None, digits: int = 6) -> str:
    if value is None:
        return ""
    return f"{value:.{digits}f}"


def _is_number(value: str) -> bool:
    try:
        float(value)
    except ValueError:
        return False
    return True


def read_distance_table(path: Path, *, min_ani: float = 0.0) -> DistanceMatrix:
    """Read `genome_a genome_b ani` rows into a sparse distance matrix.

    The ANI scale is decided once for the whole table. A `skani dist` header
    means percent and its file-path columns are turned into genome ids; the
    header written by `panderep dist` means fraction. A table without a
    recognised header is read as percent when any ANI exceeds 1.

    Every genome named in a row is kept, including genomes that only appear in
    self rows or in rows with zero ANI. Genomes are ordered by first appearance.
    """

    validate_existing_file(path, "Distance table")
    records = read_tsv_records(path)
    if not records:
        raise ConfigurationError(f"Distance table has no rows: {path}")

    header: list[str] | None = None
    if len(records[0]) >= 3 and not _is_number(records[0][2]):
        header = [column.lower() for column in records[0]]
        records = records[1:]
        first_line = 2
    else:
        first_line = 1

    ani_column = header.index("ani") if header is not None and "ani" in header else 2
    from_skani = header is not None and any(column in header for column in SKANI_PATH_COLUMNS)

    parsed: list[tuple[str, str, float]] = []
    for line_number, record in enumerate(records, start=first_line):
        if len(record) <= max(2, ani_column):
            raise ConfigurationError(f"Expected at least 3 columns at line {line_number} in {path}")
        try:
            ani = float(record[ani_column])
        except ValueError:
            raise ConfigurationError(
                f"Invalid ANI at line {line_number} in {path}: {record[ani_column]!r}"
            ) from None
        genome_a, genome_b = record[0], record[1]
        if from_skani:
            genome_a, genome_b = genome_id_from_path(Path(genome_a)), genome_id_from_path(Path(genome_b))
        parsed.append((genome_a, genome_b, ani))

    if from_skani:
        percent = True
    elif header is not None and list(header[: len(DISTANCE_HEADER)]) == list(DISTANCE_HEADER):
        percent = False
    else:
        percent = any(ani > 1.0 for _, _, ani in parsed)
    scale = 100.0 if percent else 1.0

    order: dict[str, None] = {}
    rows: list[tuple[str, str, float]] = []
    for line_number, (genome_a, genome_b, raw_ani) in enumerate(parsed, start=first_line):
        ani = raw_ani / scale
        if not 0.0 <= ani <= 1.0:
            raise ConfigurationError(f"ANI out of range at line {line_number} in {path}: {raw_ani!r}")
        order.setdefault(genome_a, None)
        order.setdefault(genome_b, None)
        rows.append((genome_a, genome_b, ani))

    if not order:
        raise ConfigurationError(f"Distance table has no rows: {path}")

    matrix = DistanceMatrix(list(order))
    for genome_a, genome_b, ani in rows:
        if genome_a == genome_b or ani <= 0.0 or ani < min_ani:
            continue
        matrix.add_pair(genome_a, genome_b, 1.0 - ani)
    return matrix


def write_distance_table(path: Path, matrix: DistanceMatrix, *, force: bool = False) -> Path:
    """Write one self row per genome, then every retained edge.

    Self rows keep genomes without any retained edge in the table, so
    `panderep cluster` reports them as singletons.
    """

    self_rows = ([genome_id, genome_id, _format_float(1.0), _format_float(0.0)] for genome_id in matrix.genome_ids)
    edge_rows = (
        [pair.genome_a, pair.genome_b, _format_float(pair.ani), _format_float(pair.distance)]
        for pair in matrix.pairs()
    )
    return write_tsv(path, DISTANCE_HEADER, [*self_rows, *edge_rows], force=force)


def read_group_table(path: Path, genomes: Sequence[Genome], *, label: str = "Cluster table") -> dict[str, str]:
    """Map every genome id to the group named in a two-column `genome<TAB>group` table.

    Genomes may be named by id, by the path they were given as, or by file
    name. A first line naming no known genome is taken as a header.
    """

    validate_existing_file(path, label)
    keys: dict[str, str] = {}
    for genome in genomes:
        for key in (genome.genome_id, str(genome.fasta_path), genome.fasta_path.name):
            keys.setdefault(key, genome.genome_id)

    def _resolve(value: str) -> str | None:
        return keys.get(value) or keys.get(genome_id_from_path(Path(value)))

    labels: dict[str, str] = {}
    for line_number, record in enumerate(read_tsv_records(path), start=1):
        if len(record) < 2:
            raise ConfigurationError(f"Expected 2 columns at line {line_number} in {path}")
        genome_id = _resolve(record[0])
        if genome_id is None:
            if line_number == 1:
                continue
            raise ConfigurationError(f"Unknown genome `{record[0]}` at line {line_number} in {path}")
        previous = labels.setdefault(genome_id, record[1])
        if previous != record[1]:
            raise ConfigurationError(
                f"Genome `{genome_id}` is assigned to both `{previous}` and `{record[1]}` in {path}"
            )

    missing = [genome.genome_id for genome in genomes if genome.genome_id not in labels]
    if missing:
        raise ConfigurationError(f"{label} {path} does not list genomes: {', '.join(missing[:5])}")
    return labels


def write_build_table(path: Path, graphs: Sequence[ClusterGraph], *, force: bool = False) -> Path:
    rows: list[list[str]] = []
    for graph in graphs:
        graph_path = "" if graph.graph_path is None else str(graph.graph_path)
        for insertion in graph.insertions:
            growth = insertion.growth
            rows.append(
                [
                    graph.cluster_id,
                    insertion.genome_id,
                    "inserted" if growth is not None else "failed",
                    "" if growth is None else str(growth.new_kmers),
                    "" if growth is None else str(growth.new_segments),
                    graph_path,
                ]
            )
    return write_tsv(
        path,
        ["cluster_id", "genome_id", "status", "new_kmers", "new_segments", "graph"],
        rows,
        force=force,
    )


def write_assignment_table(path: Path, assignment: ClusterAssignment, *, force: bool = False) -> Path:
    return write_tsv(
        path,
        ["genome_id", "cluster_id"],
        (
            [genome_id, cluster_id]
            for cluster_id in assignment.cluster_ids()
            for genome_id in assignment.members[cluster_id]
        ),
        force=force,
    )


def write_dendrogram(json_path: Path, newick_path: Path, dendrogram: Dendrogram, *, force: bool = False) -> list[Path]:
    return [
        write_json(json_path, dendrogram.to_dict(), force=force),
        write_text(newick_path, dendrogram.to_newick(), force=force),
    ]


def write_report(
    layout: OutputLayout,
    report: DereplicationReport,
    *,
    parameters: dict,
    include_dendrogram: bool = False,
    force: bool = False,
) -> list[Path]:
    """Write cluster membership, representatives, edges, diagnostics and a JSON summary."""

    membership_rows: list[list[str]] = []
    representative_rows: list[list[str]] = []
    clusters_payload: dict[str, dict] = {}

    for cluster_id in report.assignment.cluster_ids():
        rep_set = report.representative_sets[cluster_id]
        for decision in rep_set.decisions:
            growth = decision.growth
            membership_rows.append(
                [
                    decision.genome_id,
                    cluster_id,
                    "representative" if decision.kept else "excluded",
                    decision.reason.value if decision.reason is not None else "",
                    "" if growth is None else str(growth.new_kmers),
                    "" if growth is None else str(growth.new_segments),
                ]
            )
        for rank, genome_id in enumerate(rep_set.representatives, start=1):
            representative_rows.append([cluster_id, str(rank), genome_id])
        clusters_payload[cluster_id] = {
            "members": list(report.assignment.members[cluster_id]),
            "representatives": list(rep_set.representatives),
            "excluded": {genome_id: reason.value for genome_id, reason in rep_set.excluded.items()},
        }

    outputs = [
        write_tsv(
            layout.clusters_tsv,
            ["genome_id", "cluster_id", "status", "reason", "new_kmers", "new_segments"],
            membership_rows,
            force=force,
        ),
        write_tsv(layout.representatives_tsv, ["cluster_id", "rank", "genome_id"], representative_rows, force=force),
        write_distance_table(layout.distances_tsv, report.matrix, force=force),
        write_tsv(
            layout.diagnostics_tsv,
            ["stage", "subject", "message"],
            ([item.stage, item.subject, item.message] for item in report.diagnostics),
            force=force,
        ),
    ]

    if include_dendrogram:
        outputs.extend(
            write_dendrogram(layout.dendrogram_json, layout.dendrogram_newick, report.dendrogram, force=force)
        )

    outputs.append(
        write_json(
            layout.report_json,
            {
                "summary": report.summary(),
                "parameters": parameters,
                "rounds": [round_info.to_dict() for round_info in report.rounds],
                "clusters": clusters_payload,
            },
            force=force,
        )
    )
    return outputs
