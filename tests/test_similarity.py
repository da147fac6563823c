from __future__ import annotations

import random
from pathlib import Path

import pytest

from panderep.derep.genome import Genome
from panderep.derep.similarity import (
    SkaniEstimator,
    SkaniParams,
    SketchEstimator,
    filter_ani,
    parse_skani_dist_output,
)
from panderep.exceptions import EstimationFailure
from panderep.runners.skani import SkaniRunner
from panderep.utils.subprocess import CommandResult

SKANI_HEADER = "Ref_file\tQuery_file\tANI\tAlign_fraction_ref\tAlign_fraction_query\tRef_name\tQuery_name"


def _write_fasta(path: Path, sequence: str) -> Genome:
    path.write_text(f">{path.stem}\n{sequence}\n", encoding="utf-8")
    return Genome(genome_id=path.stem, fasta_path=path)


def test_parse_skani_dist_output_converts_percentages() -> None:
    stdout = f"{SKANI_HEADER}\nb.fna\ta.fna\t98.50\t87.2\t91.0\tb\ta\n"

    ani, af_ref, af_query = parse_skani_dist_output(stdout)

    assert ani == pytest.approx(0.985)
    assert af_ref == pytest.approx(0.872)
    assert af_query == pytest.approx(0.91)


def test_parse_skani_dist_output_reads_small_aligned_fractions_as_percent() -> None:
    stdout = f"{SKANI_HEADER}\nb.fna\ta.fna\t99.50\t0.80\t0.60\tb\ta\n"

    ani, af_ref, af_query = parse_skani_dist_output(stdout)

    assert ani == pytest.approx(0.995)
    assert af_ref == pytest.approx(0.008)
    assert af_query == pytest.approx(0.006)
    assert not filter_ani(ani, af_ref, af_query, min_aligned_frac=0.15).defined


def test_skani_estimator_drops_pairs_sharing_only_a_plasmid(monkeypatch, tmp_path: Path) -> None:
    def _fake_run(self, args, **kwargs):  # type: ignore[no-untyped-def]
        return CommandResult(
            command=["skani"],
            returncode=0,
            stdout=f"{SKANI_HEADER}\nb.fna\ta.fna\t99.90\t1.00\t0.95\tb\ta\n",
            stderr="",
            dry_run=False,
        )

    monkeypatch.setattr(SkaniRunner, "run", _fake_run)

    result = SkaniEstimator().estimate(Genome("a", tmp_path / "a.fna"), Genome("b", tmp_path / "b.fna"))

    assert not result.defined


def test_parse_skani_dist_output_header_only_means_undetected() -> None:
    assert parse_skani_dist_output(f"{SKANI_HEADER}\n") is None
    assert parse_skani_dist_output("") is None


def test_parse_skani_dist_output_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        parse_skani_dist_output("something unexpected\n")
    with pytest.raises(ValueError):
        parse_skani_dist_output(f"{SKANI_HEADER}\nb.fna\ta.fna\tNaNish\n")


def test_filter_ani_requires_aligned_fraction_on_either_side() -> None:
    kept = filter_ani(0.98, 0.10, 0.40, min_aligned_frac=0.15)
    assert kept.distance == pytest.approx(0.02)
    assert kept.align_fraction_query == 0.40

    assert not filter_ani(0.98, 0.10, 0.15, min_aligned_frac=0.15).defined


def test_filter_ani_rejects_non_identities() -> None:
    assert not filter_ani(0.0, 0.9, 0.9, min_aligned_frac=0.15).defined
    assert not filter_ani(float("nan"), 0.9, 0.9, min_aligned_frac=0.15).defined
    assert filter_ani(1.0, 0.9, 0.9, min_aligned_frac=0.15).distance == 0.0


def test_skani_params_cli_options() -> None:
    options = SkaniParams(rescue_small=True, median=True).to_cli_options()

    assert options[:4] == ["-c", "30", "-m", "1000"]
    assert "--small-genomes" in options
    assert "--median" in options
    assert "--no-learned-ani" in options
    assert "--robust" not in options

    assert "--no-learned-ani" not in SkaniParams(adjust_ani=True).to_cli_options()


def test_skani_estimator_parses_runner_output(monkeypatch, tmp_path: Path) -> None:
    captured: dict[str, object] = {}

    def _fake_run(self, args, **kwargs):  # type: ignore[no-untyped-def]
        captured["args"] = [str(arg) for arg in args]
        return CommandResult(
            command=["skani"],
            returncode=0,
            stdout=f"{SKANI_HEADER}\nb.fna\ta.fna\t97.00\t60.0\t55.0\tb\ta\n",
            stderr="",
            dry_run=False,
        )

    monkeypatch.setattr(SkaniRunner, "run", _fake_run)
    estimator = SkaniEstimator(SkaniParams(kmer_subsampling_rate=125))

    result = estimator.estimate(
        Genome("a", tmp_path / "a.fna"),
        Genome("b", tmp_path / "b.fna"),
    )

    assert result.ani == pytest.approx(0.97)
    args = captured["args"]
    assert isinstance(args, list)
    assert args[:3] == ["dist", str(tmp_path / "a.fna"), str(tmp_path / "b.fna")]
    assert "125" in args


def test_skani_estimator_wraps_tool_failure(monkeypatch, tmp_path: Path) -> None:
    def _fake_run(self, args, **kwargs):  # type: ignore[no-untyped-def]
        return CommandResult(command=["skani"], returncode=1, stdout="", stderr="boom", dry_run=False)

    monkeypatch.setattr(SkaniRunner, "run", _fake_run)

    with pytest.raises(EstimationFailure) as excinfo:
        SkaniEstimator().estimate(Genome("a", tmp_path / "a.fna"), Genome("b", tmp_path / "b.fna"))

    assert "boom" in excinfo.value.reason


def test_sketch_estimator_identical_and_unrelated(tmp_path: Path) -> None:
    rng = random.Random(11)
    shared = "".join(rng.choice("ACGT") for _ in range(3000))
    other = "".join(rng.choice("ACGT") for _ in range(3000))
    genome_a = _write_fasta(tmp_path / "a.fna", shared)
    genome_b = _write_fasta(tmp_path / "b.fna", shared)
    genome_c = _write_fasta(tmp_path / "c.fna", other)

    estimator = SketchEstimator(k=21, sketch_size=500)

    assert estimator.estimate(genome_a, genome_b).distance == 0.0
    assert not estimator.estimate(genome_a, genome_c).defined


def test_sketch_estimator_reports_unreadable_genome(tmp_path: Path) -> None:
    genome_a = _write_fasta(tmp_path / "a.fna", "ACGT" * 50)
    missing = Genome("missing", tmp_path / "missing.fna")

    with pytest.raises(EstimationFailure):
        SketchEstimator(k=11).estimate(genome_a, missing)
