from __future__ import annotations

from typing import Mapping

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn, TimeElapsedColumn

STAGE_DESCRIPTIONS = {
    "prefilter": "Pre-screening pairs",
    "distances": "Computing ANI edges",
    "selection": "Selecting representatives",
}


class RichProgress:
    """Progress hook that renders one rich progress bar per pipeline stage."""

    def __init__(self, console: Console, descriptions: Mapping[str, str] | None = None) -> None:
        self.descriptions = dict(STAGE_DESCRIPTIONS if descriptions is None else descriptions)
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TimeElapsedColumn(),
            console=console,
        )
        self._tasks: dict[str, TaskID] = {}
        self._running = False

    def start(self, stage: str, total: int) -> None:
        if not self._running:
            self._progress.start()
            self._running = True
        self._tasks[stage] = self._progress.add_task(self.descriptions.get(stage, stage), total=total)

    def advance(self, stage: str) -> None:
        task = self._tasks.get(stage)
        if task is not None:
            self._progress.advance(task)

    def stop(self, stage: str) -> None:
        self._tasks.pop(stage, None)
        if not self._tasks and self._running:
            self._progress.stop()
            self._running = False

    def close(self) -> None:
        if self._running:
            self._progress.stop()
            self._running = False
        self._tasks.clear()
