from __future__ import annotations

from pathlib import Path

from panderep.runners.base import ToolRunner
from panderep.utils.subprocess import CommandResult


class MashRunner(ToolRunner):
    """Wrapper around Mash commands used for the candidate-pair pre-screen."""

    def __init__(self, executable: str = "mash") -> None:
        super().__init__(executable)

    def sketch(
        self,
        *,
        input_fastas: list[Path],
        out_prefix: Path,
        kmer_size: int,
        sketch_size: int,
        threads: int = 1,
        dry_run: bool = False,
    ) -> CommandResult:
        return self.run(
            [
                "sketch",
                "-p",
                str(threads),
                "-k",
                str(kmer_size),
                "-s",
                str(sketch_size),
                "-o",
                str(out_prefix),
                *[str(path) for path in input_fastas],
            ],
            dry_run=dry_run,
        )

    def dist(
        self,
        *,
        sketch_path: Path,
        max_distance: float | None = None,
        threads: int = 1,
        dry_run: bool = False,
    ) -> CommandResult:
        args: list[str] = ["dist", "-p", str(threads)]
        if max_distance is not None:
            args.extend(["-d", str(max_distance)])
        args.extend([str(sketch_path), str(sketch_path)])
        return self.run(args, dry_run=dry_run)
