"""Bounded worker pool for CPU-bound batch stages.

Tasks are plain module-level functions ``task(batch, context)`` so they
pickle cleanly into worker processes.  Every batch of a stage is awaited
together before the stage returns; one failing batch fails the stage.
"""

import logging
import os
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Sequence, Union

from .models import StageError

logger = logging.getLogger(__name__)


def resolve_worker_count(setting: Union[int, str] = 0, cpu_count: Optional[int] = None) -> int:
    """0 → cpus − 1 (at least 1), −1 or "all" → cpus, N → N."""
    cpus = cpu_count or os.cpu_count() or 1
    if setting == 'all' or setting == -1:
        return cpus
    setting = int(setting)
    if setting > 0:
        return setting
    if setting == 0:
        return max(1, cpus - 1)
    raise ValueError(f"Invalid worker count {setting!r}")


def split_batches(items: Sequence[Any], batch_size: int) -> List[Sequence[Any]]:
    """Slice *items* into consecutive batches of at most *batch_size*."""
    batch_size = max(1, int(batch_size))
    return [items[i:i + batch_size] for i in range(0, len(items), batch_size)]


class WorkerPool:
    """A fixed-size process (or thread) pool with stage-barrier semantics."""

    def __init__(self, workers: Union[int, str] = 0, kind: str = 'process'):
        self.size = resolve_worker_count(workers)
        self.kind = kind
        self._executor: Optional[Executor] = None

    @classmethod
    def from_config(cls, config) -> "WorkerPool":
        return cls(workers=config.worker_threads, kind=config.worker_kind)

    def _ensure_executor(self) -> Executor:
        if self._executor is None:
            if self.kind == 'thread':
                self._executor = ThreadPoolExecutor(max_workers=self.size)
            else:
                self._executor = ProcessPoolExecutor(max_workers=self.size)
            logger.info(f"Started {self.kind} pool with {self.size} workers")
        return self._executor

    def submit(self, task: Callable[[Any, Any], list], batch, context=None) -> Future:
        return self._ensure_executor().submit(task, batch, context)

    def run_stage(self, task: Callable[[Any, Any], list], batches: Sequence[Any],
                  context=None, label: str = "stage",
                  progress_callback=None) -> List[list]:
        """Run *task* over every batch and wait for all of them.

        Results come back in batch order.  The first batch exception
        cancels the batches that have not started and raises StageError.
        """
        if not batches:
            return []
        futures = [self.submit(task, batch, context) for batch in batches]
        results: List[list] = []
        try:
            for i, future in enumerate(futures):
                results.append(future.result())
                if progress_callback:
                    progress_callback(100.0 * (i + 1) / len(futures),
                                      f"{label} batch {i + 1}/{len(futures)}")
        except Exception as e:
            for future in futures:
                future.cancel()
            logger.error(f"{label} failed in batch {len(results) + 1}/{len(futures)}: {e}")
            raise StageError(f"{label} failed: {e}") from e
        return results

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
