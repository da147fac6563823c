from __future__ import annotations

import csv
import json
import random
from pathlib import Path

from typer.testing import CliRunner

from panderep.cli import app

runner = CliRunner()


def _read_rows(path: Path) -> list[dict[str, str]]:
    with path.open("r", encoding="utf-8", newline="") as handle:
        return list(csv.DictReader(handle, delimiter="\t"))


def _write_genomes(directory: Path) -> list[Path]:
    rng = random.Random(2024)
    base = "".join(rng.choice("ACGT") for _ in range(2000))
    plasmid = "".join(rng.choice("ACGT") for _ in range(600))
    unrelated = "".join(rng.choice("ACGT") for _ in range(1800))

    contigs = {
        "strain1": [base, plasmid],
        "strain2": [base],
        "outlier": [unrelated],
    }
    paths = []
    for name, sequences in contigs.items():
        path = directory / f"{name}.fna"
        path.write_text(
            "".join(f">{name}_contig{idx}\n{sequence}\n" for idx, sequence in enumerate(sequences, start=1)),
            encoding="utf-8",
        )
        paths.append(path)
    return paths


def test_root_help_smoke() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "dereplicate" in result.stdout
    assert "dist" in result.stdout
    assert "cluster" in result.stdout
    assert "build" in result.stdout


def test_dereplicate_dry_run_writes_manifest(tmp_path: Path) -> None:
    paths = _write_genomes(tmp_path)
    outdir = tmp_path / "run_dry"

    result = runner.invoke(
        app,
        [
            "dereplicate",
            "--mock",
            "--genomes-files",
            ",".join(str(path) for path in paths),
            "--outdir",
            str(outdir),
            "--dry-run",
        ],
    )

    assert result.exit_code == 0, result.stdout
    manifest = json.loads((outdir / "panderep_manifest.json").read_text(encoding="utf-8"))
    assert manifest["command"] == "dereplicate"
    assert manifest["status"] == "dry-run"
    assert len(manifest["input_paths"]) == 3
    assert not (outdir / "clusters.tsv").exists()


def test_dereplicate_mock_end_to_end(tmp_path: Path, monkeypatch) -> None:
    _write_genomes(tmp_path)
    monkeypatch.chdir(tmp_path)
    outdir = tmp_path / "run_mock"

    result = runner.invoke(
        app,
        [
            "dereplicate",
            "--mock",
            "--genomes-files",
            "strain1.fna,strain2.fna",
            "--genomes-files",
            "outlier.fna",
            "--outdir",
            str(outdir),
            "--threads",
            "2",
            "--write-dendrogram",
        ],
    )

    assert result.exit_code == 0, result.stdout

    representatives = _read_rows(outdir / "representatives.tsv")
    assert sorted(row["genome_id"] for row in representatives) == ["outlier", "strain1"]

    clusters = {row["genome_id"]: row for row in _read_rows(outdir / "clusters.tsv")}
    assert clusters["strain1"]["cluster_id"] == clusters["strain2"]["cluster_id"]
    assert clusters["strain2"]["status"] == "excluded"
    assert clusters["strain2"]["reason"] == "redundant"

    assert (outdir / "dendrogram.nwk").exists()
    manifest = json.loads((outdir / "panderep_manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "completed"
    assert manifest["tool_versions"]["ggcat"] == "mock"
    assert manifest["summary"]["representatives"] == 2

    rerun = runner.invoke(
        app,
        ["dereplicate", "--mock", "--genomes-files", "strain1.fna,strain2.fna,outlier.fna", "--outdir", str(outdir)],
    )
    assert rerun.exit_code == 2
    assert "overwrite" in rerun.stdout


def test_dist_then_cluster(tmp_path: Path) -> None:
    paths = _write_genomes(tmp_path)
    input_list = tmp_path / "genomes.txt"
    input_list.write_text("\n".join(path.name for path in paths) + "\n", encoding="utf-8")
    outdir = tmp_path / "run_dist"

    dist_result = runner.invoke(
        app,
        ["dist", "--mock", "--input-list", str(input_list), "--outdir", str(outdir), "--min-ani", "0.9"],
    )

    assert dist_result.exit_code == 0, dist_result.stdout
    rows = _read_rows(outdir / "distances.tsv")
    edges = [(row["genome_a"], row["genome_b"]) for row in rows if row["genome_a"] != row["genome_b"]]
    assert edges == [("strain1", "strain2")]
    assert {row["genome_a"] for row in rows} == {"outlier", "strain1", "strain2"}

    cluster_dir = tmp_path / "run_cluster"
    cluster_result = runner.invoke(
        app,
        [
            "cluster",
            "--dist-file",
            str(outdir / "distances.tsv"),
            "--outdir",
            str(cluster_dir),
            "--ani-threshold",
            "0.97",
        ],
    )

    assert cluster_result.exit_code == 0, cluster_result.stdout
    rows = _read_rows(cluster_dir / "clusters.tsv")
    cluster_of = {row["genome_id"]: row["cluster_id"] for row in rows}
    assert set(cluster_of) == {"outlier", "strain1", "strain2"}
    assert cluster_of["strain1"] == cluster_of["strain2"]
    assert cluster_of["outlier"] != cluster_of["strain1"]
    assert len(set(cluster_of.values())) == 2


def test_cluster_requires_dist_file(tmp_path: Path) -> None:
    result = runner.invoke(app, ["cluster", "--outdir", str(tmp_path / "out")])
    assert result.exit_code == 2
    assert "--dist-file" in result.stdout


def test_missing_external_tool_is_reported(tmp_path: Path, monkeypatch) -> None:
    paths = _write_genomes(tmp_path)
    monkeypatch.setenv("PATH", str(tmp_path / "empty-bin"))

    result = runner.invoke(
        app,
        ["dereplicate", "--genomes-files", ",".join(str(path) for path in paths), "--outdir", str(tmp_path / "out")],
    )

    assert result.exit_code == 2
    assert "skani" in result.stdout


def test_invalid_threshold_from_config_is_rejected(tmp_path: Path) -> None:
    paths = _write_genomes(tmp_path)
    config_path = tmp_path / "panderep.yaml"
    config_path.write_text("dereplicate:\n  ani_threshold: 1.5\n", encoding="utf-8")

    result = runner.invoke(
        app,
        [
            "dereplicate",
            "--mock",
            "--config",
            str(config_path),
            "--genomes-files",
            ",".join(str(path) for path in paths),
            "--outdir",
            str(tmp_path / "out"),
        ],
    )

    assert result.exit_code == 2
    assert "ani_threshold" in result.stdout


def test_existing_outputs_fail_before_any_work(tmp_path: Path) -> None:
    paths = _write_genomes(tmp_path)
    outdir = tmp_path / "run_existing"
    outdir.mkdir()
    (outdir / "dendrogram.json").write_text("{}", encoding="utf-8")

    result = runner.invoke(
        app,
        [
            "dereplicate",
            "--mock",
            "--genomes-files",
            ",".join(str(path) for path in paths),
            "--outdir",
            str(outdir),
            "--write-dendrogram",
        ],
    )

    assert result.exit_code == 2
    assert "overwrite" in result.stdout
    assert not (outdir / "clusters.tsv").exists()
    assert not (outdir / "distances.tsv").exists()


def test_dereplicate_batched_with_external_clustering(tmp_path: Path) -> None:
    paths = _write_genomes(tmp_path)
    external = tmp_path / "external.tsv"
    external.write_text("strain1\tsp1\nstrain2\tsp1\noutlier\tsp2\n", encoding="utf-8")
    outdir = tmp_path / "run_batched"

    result = runner.invoke(
        app,
        [
            "dereplicate",
            "--mock",
            "--genomes-files",
            ",".join(str(path) for path in paths),
            "--outdir",
            str(outdir),
            "--batch-step",
            "1",
            "--batch-step-strategy",
            "linear",
            "--external-clustering",
            str(external),
        ],
    )

    assert result.exit_code == 0, result.stdout
    clusters = {row["genome_id"]: row["cluster_id"] for row in _read_rows(outdir / "clusters.tsv")}
    assert clusters["strain1"] == clusters["strain2"] != clusters["outlier"]
    payload = json.loads((outdir / "report.json").read_text(encoding="utf-8"))
    assert payload["rounds"][-1]["final"] is True
    assert payload["summary"]["batch_rounds"] == len(payload["rounds"])


def test_guided_without_batch_step_is_rejected(tmp_path: Path) -> None:
    paths = _write_genomes(tmp_path)

    result = runner.invoke(
        app,
        [
            "dereplicate",
            "--mock",
            "--guided",
            "--genomes-files",
            ",".join(str(path) for path in paths),
            "--outdir",
            str(tmp_path / "out"),
        ],
    )

    assert result.exit_code == 2
    assert "batch_step" in result.stdout


def test_build_mock_graphs_for_external_clusters(tmp_path: Path) -> None:
    paths = _write_genomes(tmp_path)
    clusters = tmp_path / "clusters.tsv"
    clusters.write_text(
        "genome_id\tcluster_id\nstrain1\tc1\nstrain2\tc1\noutlier\tc2\n",
        encoding="utf-8",
    )
    outdir = tmp_path / "run_build"

    result = runner.invoke(
        app,
        [
            "build",
            "--mock",
            "--genomes-files",
            ",".join(str(path) for path in paths),
            "--clusters",
            str(clusters),
            "--outdir",
            str(outdir),
        ],
    )

    assert result.exit_code == 0, result.stdout
    rows = _read_rows(outdir / "build.tsv")
    assert [(row["cluster_id"], row["status"]) for row in rows] == [("c1", "inserted"), ("c1", "inserted")]
    assert {row["genome_id"] for row in rows} == {"strain1", "strain2"}
    manifest = json.loads((outdir / "panderep_manifest.json").read_text(encoding="utf-8"))
    assert manifest["command"] == "build"
    assert manifest["summary"]["graphs"] == 1

    target = runner.invoke(
        app,
        [
            "build",
            "--mock",
            "--genomes-files",
            ",".join(str(path) for path in paths),
            "--clusters",
            str(clusters),
            "--target-cluster",
            "c2",
            "--outdir",
            str(tmp_path / "run_target"),
        ],
    )
    assert target.exit_code == 0, target.stdout
    assert _read_rows(tmp_path / "run_target" / "build.tsv") == []
