from __future__ import annotations

from pathlib import Path

import pytest

from panderep.exceptions import ConfigurationError
from panderep.runners.ggcat import GgcatRunner
from panderep.runners.skani import SkaniRunner
from panderep.utils.subprocess import CommandExecutionError, CommandResult, run_command


def test_skani_dist_pair_falls_back_to_legacy_flags(monkeypatch) -> None:
    runner = SkaniRunner()
    calls: list[list[str]] = []

    def _fake_run(self, args, **kwargs):  # type: ignore[no-untyped-def]
        calls.append([str(arg) for arg in args])
        returncode = 2 if len(calls) == 1 else 0
        return CommandResult(command=["skani"], returncode=returncode, stdout="ok", stderr="", dry_run=False)

    monkeypatch.setattr(SkaniRunner, "run", _fake_run)

    result = runner.dist_pair(query=Path("q.fna"), reference=Path("r.fna"), options=["-c", "30"])

    assert result.stdout == "ok"
    assert calls[0][:3] == ["dist", "q.fna", "r.fna"]
    assert calls[1][:5] == ["dist", "--query", "q.fna", "--ref", "r.fna"]
    assert calls[1][-2:] == ["-c", "30"]


def test_skani_dist_pair_raises_when_both_syntaxes_fail(monkeypatch) -> None:
    def _fake_run(self, args, **kwargs):  # type: ignore[no-untyped-def]
        return CommandResult(command=["skani"], returncode=1, stdout="", stderr="bad input", dry_run=False)

    monkeypatch.setattr(SkaniRunner, "run", _fake_run)

    with pytest.raises(CommandExecutionError, match="bad input"):
        SkaniRunner().dist_pair(query=Path("q.fna"), reference=Path("r.fna"))


def test_ggcat_build_arguments(monkeypatch) -> None:
    captured: dict[str, object] = {}

    def _fake_run(self, args, **kwargs):  # type: ignore[no-untyped-def]
        captured["args"] = [str(arg) for arg in args]
        return CommandResult(command=["ggcat"], returncode=0, stdout="", stderr="", dry_run=False)

    monkeypatch.setattr(GgcatRunner, "run", _fake_run)

    GgcatRunner().build(
        input_fastas=[Path("a.fna"), Path("b.fna")],
        output_fasta=Path("graph.fasta"),
        kmer_size=51,
        min_multiplicity=2,
        minimizer_length=15,
        forward_only=True,
        temp_dir=Path("tmp"),
    )

    args = captured["args"]
    assert isinstance(args, list)
    assert args[:3] == ["build", "-k", "51"]
    assert args[args.index("-s") + 1] == "2"
    assert args[args.index("--minimizer-length") + 1] == "15"
    assert "--forward-only" in args
    assert "--greedy-matchtigs" in args
    assert args[args.index("-t") + 1] == "tmp"
    assert args[-2:] == ["a.fna", "b.fna"]


def test_run_command_dry_run_does_not_execute() -> None:
    result = run_command(["definitely-not-a-real-binary", "--flag"], dry_run=True)
    assert result.dry_run
    assert result.returncode == 0


def test_run_command_reports_missing_executable() -> None:
    with pytest.raises(CommandExecutionError, match="Unable to execute"):
        run_command(["definitely-not-a-real-binary-panderep"])


def test_missing_tool_is_a_configuration_error(monkeypatch) -> None:
    monkeypatch.setattr("panderep.runners.base.shutil.which", lambda name: None)

    runner = SkaniRunner()

    assert not runner.is_available()
    with pytest.raises(ConfigurationError, match="skani"):
        runner.require()
