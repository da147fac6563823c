from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str
    stderr: str
    dry_run: bool


class CommandExecutionError(RuntimeError):
    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def shell_join(command: Sequence[str]) -> str:
    return shlex.join(list(command))


def run_command(
    command: Sequence[str],
    *,
    dry_run: bool = False,
    check: bool = True,
    logger: logging.Logger | None = None,
) -> CommandResult:
    command_list = list(command)
    cmd_text = shell_join(command_list)

    if logger is not None:
        logger.debug("Executing command: %s", cmd_text)

    if dry_run:
        return CommandResult(command=command_list, returncode=0, stdout="", stderr="", dry_run=True)

    try:
        completed = subprocess.run(
            command_list,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise CommandExecutionError(f"Unable to execute {cmd_text}: {exc}") from exc

    result = CommandResult(
        command=command_list,
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
        dry_run=False,
    )

    if check and completed.returncode != 0:
        raise CommandExecutionError(
            f"Command failed with exit code {completed.returncode}: {cmd_text}\n{completed.stderr.strip()}",
            returncode=completed.returncode,
            stderr=completed.stderr,
        )

    return result
