from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from .models import BatchError, BatchOutcome, OptimizationRecord, Savings

logger = logging.getLogger(__name__)

Worker = Callable[[Path], Awaitable[OptimizationRecord]]
ProgressCallback = Callable[[int, int, Path], None]


@dataclass
class _BatchAccumulator:
    started: float = field(default_factory=time.perf_counter)
    results: list[OptimizationRecord] = field(default_factory=list)
    errors: list[BatchError] = field(default_factory=list)

    def add_result(self, record: OptimizationRecord) -> None:
        self.results.append(record)

    def add_error(self, path: Path, exc: BaseException) -> None:
        message = str(exc) or type(exc).__name__
        logger.warning(f"[batch] {path}: {message}")
        self.errors.append(BatchError(str(path), message))

    def finalize(self) -> BatchOutcome:
        total_original = sum(record.original.size for record in self.results)
        total_optimized = sum(record.average_optimized_size for record in self.results)
        return BatchOutcome(
            results=tuple(self.results),
            errors=tuple(self.errors),
            files_processed=len(self.results),
            total_savings=Savings.between(total_original, total_optimized),
            total_elapsed=time.perf_counter() - self.started,
        )


def chunked(items: Sequence[Path], size: int) -> list[list[Path]]:
    return [list(items[index : index + size]) for index in range(0, len(items), size)]


class BatchScheduler:
    """Run a per-file coroutine over many files, at most ``concurrency`` at a time.

    Files are processed in consecutive chunks; a chunk settles completely
    (every item succeeded or failed) before the next one starts. Failures are
    recorded per file and never abort the run.
    """

    def __init__(self, concurrency: int = 4, on_progress: ProgressCallback | None = None) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.concurrency = concurrency
        self.on_progress = on_progress

    async def run(self, files: Sequence[Path | str], worker: Worker) -> BatchOutcome:
        paths = [Path(path) for path in files]
        total = len(paths)
        accumulator = _BatchAccumulator()
        done = 0
        for chunk in chunked(paths, self.concurrency):
            settled = await asyncio.gather(*(worker(path) for path in chunk), return_exceptions=True)
            for path, outcome in zip(chunk, settled):
                if isinstance(outcome, Exception):
                    accumulator.add_error(path, outcome)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    accumulator.add_result(outcome)
                done += 1
                if self.on_progress is not None:
                    self.on_progress(done, total, path)
        outcome = accumulator.finalize()
        logger.info(
            f"[batch] {outcome.files_processed}/{total} files optimized, "
            f"{len(outcome.errors)} errors, {outcome.total_elapsed:.2f}s"
        )
        return outcome
