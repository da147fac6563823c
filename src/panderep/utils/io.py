from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from panderep.exceptions import ConfigurationError


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _check_overwrite(path: Path, force: bool) -> None:
    if path.exists() and not force:
        raise ConfigurationError(f"Refusing to overwrite existing file without --force: {path}")


def ensure_outputs_absent(paths: Iterable[Path], *, force: bool, directories: Iterable[Path] = ()) -> None:
    """Fail before any work starts if a run would overwrite earlier results."""

    if force:
        return
    existing = [path for path in paths if path.exists()]
    existing.extend(directory for directory in directories if directory.is_dir() and any(directory.iterdir()))
    if existing:
        listed = ", ".join(str(path) for path in existing)
        raise ConfigurationError(f"Refusing to overwrite existing outputs without --force: {listed}")


def write_text(path: Path, content: str, *, force: bool = False) -> Path:
    ensure_dir(path.parent)
    _check_overwrite(path, force)
    path.write_text(content, encoding="utf-8")
    return path


def write_json(path: Path, payload: Mapping[str, Any], *, force: bool = False) -> Path:
    ensure_dir(path.parent)
    _check_overwrite(path, force)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=True), encoding="utf-8")
    return path


def write_tsv(
    path: Path,
    header: Sequence[str],
    rows: Iterable[Sequence[Any]],
    *,
    force: bool = False,
) -> Path:
    ensure_dir(path.parent)
    _check_overwrite(path, force)

    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle, delimiter="\t")
        writer.writerow(header)
        for row in rows:
            writer.writerow(list(row))

    return path


def read_tsv_records(path: Path) -> list[list[str]]:
    """Read a header-less TSV, skipping blank and `#` comment lines."""

    records: list[list[str]] = []
    with path.open("r", encoding="utf-8", newline="") as handle:
        for row in csv.reader(handle, delimiter="\t"):
            if not row or not row[0].strip() or row[0].startswith("#"):
                continue
            records.append([value.strip() for value in row])
    return records
