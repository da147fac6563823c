from __future__ import annotations

from pathlib import Path

from panderep.runners.base import ToolRunner
from panderep.utils.subprocess import CommandExecutionError, CommandResult


class SkaniRunner(ToolRunner):
    """Wrapper around `skani dist` for pairwise ANI."""

    def __init__(self, executable: str = "skani") -> None:
        super().__init__(executable)

    def dist_pair(
        self,
        *,
        query: Path,
        reference: Path,
        options: list[str] | None = None,
        dry_run: bool = False,
    ) -> CommandResult:
        extra = list(options or [])
        # Newer skani releases expect positional QUERY and REFERENCE inputs.
        positional = self.run(
            ["dist", str(query), str(reference), "--min-af", "0", *extra],
            dry_run=dry_run,
            check=False,
        )
        if dry_run or positional.returncode == 0:
            return positional

        # Legacy fallback for older skani variants.
        legacy = self.run(
            ["dist", "--query", str(query), "--ref", str(reference), "--min-af", "0", *extra],
            dry_run=dry_run,
            check=False,
        )
        if legacy.returncode == 0:
            return legacy

        raise CommandExecutionError(
            "skani dist failed with both positional and legacy flag syntaxes.\n"
            f"positional stderr: {positional.stderr.strip()}\n"
            f"legacy stderr: {legacy.stderr.strip()}",
            returncode=legacy.returncode,
            stderr=legacy.stderr,
        )
