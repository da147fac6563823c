from __future__ import annotations

import random
from pathlib import Path

from panderep.derep.genome import Genome
from panderep.derep.prefilter import mash_candidate_pairs, parse_mash_dist_output, sketch_candidate_pairs
from panderep.derep.similarity import SketchEstimator
from panderep.runners.mash import MashRunner
from panderep.utils.subprocess import CommandResult


def test_parse_mash_dist_output_maps_paths_and_skips_self_hits() -> None:
    stdout = (
        "/data/a.fna\t/data/a.fna\t0\t0\t1000/1000\n"
        "/data/a.fna\t/data/b.fna\t0.012\t0\t800/1000\n"
        "/data/b.fna\t/data/a.fna\t0.011\t0\t801/1000\n"
        "/data/c.fa.gz\t/data/a.fna\t0.2\t0\t10/1000\n"
        "malformed line\n"
    )

    distances = parse_mash_dist_output(stdout, {"/data/a.fna": "A", "/data/b.fna": "B"})

    assert distances == {("A", "B"): 0.011, ("A", "c"): 0.2}


def test_mash_candidate_pairs_sketches_then_filters(monkeypatch, tmp_path: Path) -> None:
    genomes = [Genome(name, tmp_path / f"{name}.fna") for name in ("x", "y", "z")]
    calls: list[list[str]] = []

    def _fake_run(self, args, **kwargs):  # type: ignore[no-untyped-def]
        args = [str(arg) for arg in args]
        calls.append(args)
        stdout = ""
        if args[0] == "dist":
            stdout = (
                f"{tmp_path / 'x.fna'}\t{tmp_path / 'y.fna'}\t0.01\t0\t900/1000\n"
                f"{tmp_path / 'y.fna'}\t{tmp_path / 'z.fna'}\t0.30\t0\t1/1000\n"
            )
        return CommandResult(command=["mash", *args], returncode=0, stdout=stdout, stderr="", dry_run=False)

    monkeypatch.setattr(MashRunner, "run", _fake_run)

    pairs = mash_candidate_pairs(
        genomes,
        max_distance=0.05,
        kmer_size=21,
        sketch_size=1000,
        work_dir=tmp_path / "mash",
        threads=2,
    )

    assert pairs == {("x", "y")}
    assert calls[0][0] == "sketch"
    assert calls[1][:3] == ["dist", "-p", "2"]
    assert calls[1][-1] == str(tmp_path / "mash" / "genomes.msh")


def test_sketch_candidate_pairs_keeps_close_genomes(tmp_path: Path) -> None:
    rng = random.Random(3)
    shared = "".join(rng.choice("ACGT") for _ in range(1500))
    other = "".join(rng.choice("ACGT") for _ in range(1500))
    genomes = []
    for name, sequence in (("a", shared), ("b", shared), ("c", other)):
        path = tmp_path / f"{name}.fna"
        path.write_text(f">{name}\n{sequence}\n", encoding="utf-8")
        genomes.append(Genome(name, path))

    pairs = sketch_candidate_pairs(genomes, max_distance=0.1, estimator=SketchEstimator(k=21, sketch_size=200))

    assert pairs == {("a", "b")}
