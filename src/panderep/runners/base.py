from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Sequence

from panderep.exceptions import ConfigurationError
from panderep.utils.subprocess import CommandResult, run_command


class ToolRunner:
    """An external bioinformatics binary resolved from PATH.

    Subclasses add one method per subcommand they drive. Availability checks,
    version lookup and dry-run aware execution live here.
    """

    version_args: tuple[str, ...] = ("--version",)

    def __init__(self, executable: str) -> None:
        self.executable = executable
        self.logger = logging.getLogger(f"panderep.runners.{Path(executable).name}")

    @property
    def tool_name(self) -> str:
        return Path(self.executable).name

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def require(self) -> None:
        if not self.is_available():
            raise ConfigurationError(
                f"Required external tool not found in PATH: {self.tool_name}. "
                f"Install {self.tool_name} or run with --mock."
            )

    def version(self, *, dry_run: bool = False) -> str:
        result = self.run(self.version_args, dry_run=dry_run, check=False)
        version_line = result.stdout.strip() or result.stderr.strip()
        return version_line.splitlines()[0] if version_line else "unknown"

    def run(self, args: Sequence[str | Path], *, dry_run: bool = False, check: bool = True) -> CommandResult:
        return run_command(
            [self.executable, *[str(arg) for arg in args]],
            dry_run=dry_run,
            check=check,
            logger=self.logger,
        )
