from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from itertools import islice
from typing import Callable, Iterable, Iterator, Protocol, Sequence, TypeVar

from panderep.exceptions import RunCancelled

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")

# Tasks kept in flight per worker; bounds memory for lazily generated pair jobs.
IN_FLIGHT_PER_WORKER = 4


class ProgressHook(Protocol):
    def start(self, stage: str, total: int) -> None: ...

    def advance(self, stage: str) -> None: ...

    def stop(self, stage: str) -> None: ...


class NullProgress:
    def start(self, stage: str, total: int) -> None:
        return None

    def advance(self, stage: str) -> None:
        return None

    def stop(self, stage: str) -> None:
        return None


@dataclass(frozen=True, slots=True)
class Diagnostic:
    stage: str
    subject: str
    message: str


@dataclass
class RunContext:
    """State scoped to one pipeline run: pool size, cancellation, diagnostics and progress."""

    threads: int = 1
    progress: ProgressHook = field(default_factory=NullProgress)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    _diagnostics: list[Diagnostic] = field(default_factory=list, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self, stage: str) -> None:
        if self.cancelled:
            raise RunCancelled(f"Run cancelled during stage `{stage}`.")

    def record(self, stage: str, subject: str, message: str) -> None:
        logger.warning("[%s] %s: %s", stage, subject, message, extra={"stage": stage})
        with self._lock:
            self._diagnostics.append(Diagnostic(stage=stage, subject=subject, message=message))

    @property
    def diagnostics(self) -> list[Diagnostic]:
        with self._lock:
            snapshot = list(self._diagnostics)
        return sorted(snapshot, key=lambda item: (item.stage, item.subject, item.message))

    def iter_tasks(
        self,
        stage: str,
        items: Iterable[ItemT],
        task: Callable[[ItemT], ResultT],
        *,
        total: int,
    ) -> Iterator[tuple[ItemT, ResultT]]:
        """Run `task` over `items` on a bounded pool, yielding `(item, result)` as tasks finish.

        `items` is consumed lazily and at most `threads * IN_FLIGHT_PER_WORKER`
        tasks are pending at any time. Tasks that start after cancellation are
        skipped and nothing new is submitted; once in-flight tasks drain, a
        cancelled run raises RunCancelled. Callers must not publish what they
        collected before that point.
        """

        self.check_cancelled(stage)
        window = max(1, self.threads * IN_FLIGHT_PER_WORKER)
        pending_items = iter(items)

        def _guarded(item: ItemT) -> tuple[ResultT | None, bool]:
            if self.cancelled:
                return None, False
            return task(item), True

        self.progress.start(stage, total)
        pool = ThreadPoolExecutor(max_workers=self.threads, thread_name_prefix=f"panderep-{stage}")
        in_flight: dict[Future, ItemT] = {}
        try:
            for item in islice(pending_items, window):
                in_flight[pool.submit(_guarded, item)] = item
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    item = in_flight.pop(future)
                    value, completed = future.result()
                    self.progress.advance(stage)
                    if completed:
                        yield item, value  # type: ignore[misc]
                if not self.cancelled:
                    for item in islice(pending_items, len(done)):
                        in_flight[pool.submit(_guarded, item)] = item
        except GeneratorExit:
            pool.shutdown(wait=True, cancel_futures=True)
            raise
        except KeyboardInterrupt:
            logger.warning("Interrupted; waiting for running %s tasks to finish.", stage)
            self.cancel()
            pool.shutdown(wait=True, cancel_futures=True)
            raise RunCancelled(f"Run interrupted during stage `{stage}`.") from None
        except BaseException:
            self.cancel()
            pool.shutdown(wait=True, cancel_futures=True)
            raise
        finally:
            pool.shutdown(wait=True)
            self.progress.stop(stage)

        self.check_cancelled(stage)

    def run_tasks(
        self,
        stage: str,
        items: Sequence[ItemT],
        task: Callable[[ItemT], ResultT],
    ) -> list[ResultT]:
        """Run `task` over every item and return the results in the order of `items`."""

        results: dict[int, ResultT] = {}
        indexed = self.iter_tasks(stage, range(len(items)), lambda index: task(items[index]), total=len(items))
        for index, value in indexed:
            results[index] = value
        return [results[index] for index in range(len(items))]
