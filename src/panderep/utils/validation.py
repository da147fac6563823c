from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, Sequence

from panderep.derep.genome import FASTA_SUFFIXES, Genome, genome_id_from_path
from panderep.exceptions import ConfigurationError
from panderep.utils.io import read_tsv_records


def _matches_suffix(path: Path, suffixes: Iterable[str]) -> bool:
    lowered = path.name.lower()
    return any(lowered.endswith(suffix) for suffix in suffixes)


def _resolve_manifest_path(base_dir: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    return path


def validate_existing_file(path: Path, label: str) -> None:
    if not path.exists():
        raise ConfigurationError(f"{label} does not exist: {path}")
    if not path.is_file():
        raise ConfigurationError(f"{label} is not a file: {path}")


def _validate_fasta(path: Path, genome_id: str) -> None:
    validate_existing_file(path, f"FASTA for genome `{genome_id}`")
    if not _matches_suffix(path, FASTA_SUFFIXES):
        raise ConfigurationError(f"Unsupported FASTA extension for genome `{genome_id}`: {path}")


def _parse_optional_size(raw: str, row_number: int, manifest_path: Path) -> int | None:
    if raw == "":
        return None
    try:
        size = int(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"Invalid integer in column `size` at row {row_number} in {manifest_path}: {raw!r}"
        ) from exc
    if size < 0:
        raise ConfigurationError(f"Negative genome size at row {row_number} in {manifest_path}")
    return size


def read_genomes_manifest(manifest_path: Path) -> list[Genome]:
    """Read a genomes TSV with `genome_id`, `fasta_path` and optional `size` columns."""

    validate_existing_file(manifest_path, "genomes.tsv")
    with manifest_path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle, delimiter="\t")
        if reader.fieldnames is None:
            raise ConfigurationError(f"Manifest TSV has no header row: {manifest_path}")
        header = [name.strip() for name in reader.fieldnames]
        rows = [{str(key).strip(): (value or "").strip() for key, value in row.items()} for row in reader]

    missing = {"genome_id", "fasta_path"}.difference(header)
    if missing:
        raise ConfigurationError(
            f"Missing required columns in {manifest_path}: {', '.join(sorted(missing))}"
        )

    genomes: list[Genome] = []
    for row_number, row in enumerate(rows, start=2):
        genome_id = row.get("genome_id", "")
        fasta_raw = row.get("fasta_path", "")
        if genome_id == "":
            raise ConfigurationError(f"Missing genome_id at row {row_number} in {manifest_path}")
        if fasta_raw == "":
            raise ConfigurationError(f"Missing fasta_path at row {row_number} in {manifest_path}")

        fasta_path = _resolve_manifest_path(manifest_path.parent, fasta_raw)
        _validate_fasta(fasta_path, genome_id)
        genomes.append(
            Genome(
                genome_id=genome_id,
                fasta_path=fasta_path,
                size=_parse_optional_size(row.get("size", ""), row_number, manifest_path),
            )
        )
    return genomes


def read_input_list(list_path: Path) -> list[Path]:
    """Read one FASTA path per line; extra tab-separated columns are ignored."""

    validate_existing_file(list_path, "Input list")
    return [_resolve_manifest_path(list_path.parent, record[0]) for record in read_tsv_records(list_path)]


def resolve_genomes(
    *,
    seq_files: Sequence[Path] = (),
    input_list: Path | None = None,
    genomes_tsv: Path | None = None,
) -> list[Genome]:
    """Collect genomes from positional files, an input list and/or a manifest, in that order."""

    genomes: list[Genome] = []
    paths = [Path(path).expanduser().resolve() for path in seq_files]
    if input_list is not None:
        paths.extend(read_input_list(input_list))

    for path in paths:
        genome_id = genome_id_from_path(path)
        _validate_fasta(path, genome_id)
        genomes.append(Genome(genome_id=genome_id, fasta_path=path))

    if genomes_tsv is not None:
        genomes.extend(read_genomes_manifest(genomes_tsv))

    if not genomes:
        raise ConfigurationError(
            "No input genomes. Provide FASTA files, --input-list or --genomes-tsv."
        )

    seen: dict[str, Path] = {}
    for genome in genomes:
        if genome.genome_id in seen:
            raise ConfigurationError(
                f"Duplicated genome id `{genome.genome_id}`: {seen[genome.genome_id]} and {genome.fasta_path}"
            )
        seen[genome.genome_id] = genome.fasta_path

    return genomes
