"""
Worker Pool
===========
Runs independent meshing jobs (one per face or solid) on a thread pool and
hands each outcome back to the calling thread for commit.

Commit order is either completion order (fast) or job order (deterministic,
jobs are submitted sorted by entity id). Cancellation is cooperative: the
token is checked before every commit, never inside a running job.
"""
from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Generic, Iterator, List, Optional, Sequence, Tuple, TypeVar

from brepmesh.errors import DiscretizationCancelled

logger = logging.getLogger(__name__)

J = TypeVar("J")
R = TypeVar("R")


class CancellationToken:
    """Thread-safe flag a caller sets to stop a run at the next checkpoint."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        logger.info("Cancellation requested.")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, last_entity: Optional[int] = None) -> None:
        if self._event.is_set():
            raise DiscretizationCancelled(last_entity)


@dataclass
class Outcome(Generic[J, R]):
    """Result of one job: either ``result`` or the ``error`` it raised."""
    key: int
    job: J
    result: Optional[R] = None
    error: Optional[BaseException] = None


def run_jobs(
    jobs: Sequence[Tuple[int, J]],
    work: Callable[[J], R],
    workers: int = 1,
    deterministic: bool = False,
    cancel: Optional[CancellationToken] = None,
) -> Iterator[Outcome[J, R]]:
    """
    Yield one Outcome per ``(key, job)``; ``work`` runs on the pool.

    Exceptions raised by a job are captured in its Outcome so the caller can
    decide between a diagnostic and aborting. Raises DiscretizationCancelled
    when ``cancel`` fires between two outcomes; pending jobs are dropped.
    """
    ordered: List[Tuple[int, J]] = sorted(jobs, key=lambda kj: kj[0])
    last: Optional[int] = None

    if workers <= 1 or len(ordered) <= 1:
        for key, job in ordered:
            if cancel is not None:
                cancel.check(last)
            try:
                result = work(job)
            except Exception as e:
                yield Outcome(key, job, error=e)
            else:
                yield Outcome(key, job, result=result)
            last = key
        return

    with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="brepmesh") as pool:
        futures = {pool.submit(work, job): (key, job) for key, job in ordered}
        try:
            stream = futures if deterministic else concurrent.futures.as_completed(futures)
            for future in stream:
                if cancel is not None:
                    cancel.check(last)
                key, job = futures[future]
                error = future.exception()
                if error is None:
                    yield Outcome(key, job, result=future.result())
                else:
                    yield Outcome(key, job, error=error)
                last = key
        finally:
            for future in futures:
                future.cancel()
