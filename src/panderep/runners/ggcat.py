from __future__ import annotations

from pathlib import Path

from panderep.runners.base import ToolRunner
from panderep.utils.subprocess import CommandResult

UNITIG_FLAGS: dict[str, str | None] = {
    "greedymatchtigs": "--greedy-matchtigs",
    "eulertigs": "--eulertigs",
    "pathtigs": "--pathtigs",
    "unitiglinks": "--generate-links",
}


class GgcatRunner(ToolRunner):
    """Wrapper around `ggcat build` for compacted de Bruijn graph construction."""

    def __init__(self, executable: str = "ggcat") -> None:
        super().__init__(executable)

    def build(
        self,
        *,
        input_fastas: list[Path],
        output_fasta: Path,
        kmer_size: int,
        threads: int = 1,
        memory: int = 4,
        min_multiplicity: int = 1,
        minimizer_length: int | None = None,
        forward_only: bool = False,
        unitig_type: str = "greedymatchtigs",
        temp_dir: Path | None = None,
        intermediate_compression_level: int | None = None,
        dry_run: bool = False,
    ) -> CommandResult:
        args: list[str] = [
            "build",
            "-k",
            str(kmer_size),
            "-j",
            str(threads),
            "-m",
            str(memory),
            "-s",
            str(min_multiplicity),
            "-o",
            str(output_fasta),
        ]
        if minimizer_length is not None:
            args.extend(["--minimizer-length", str(minimizer_length)])
        if forward_only:
            args.append("--forward-only")
        flag = UNITIG_FLAGS.get(unitig_type)
        if flag is not None:
            args.append(flag)
        if temp_dir is not None:
            args.extend(["-t", str(temp_dir)])
        if intermediate_compression_level is not None:
            args.extend(["--intermediate-compression-level", str(intermediate_compression_level)])
        args.extend(str(path) for path in input_fastas)
        return self.run(args, dry_run=dry_run)
