# coordinator.py
from __future__ import annotations

import os
import queue
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Sequence

from .errors import CoordinationError
from .model import BuildResult, BuildState, JobOutcome, JobSpec
from .runner import CancelToken, StageExecutor, run_job
from .ui.console import get_console


@dataclass(frozen=True)
class _Crashed:
    """Message sent instead of an outcome when a runner raised."""
    job: JobSpec
    error: BaseException


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Coordinator:
    """
    Runs a list of jobs on a bounded worker pool and owns the BuildResult.

    Runners hand their outcome back through a queue; only the coordinator
    thread ever touches the BuildResult. Jobs beyond the worker bound wait
    in the coordinator's own backlog, so once fail-fast aborts the build no
    further job is handed to the pool.

    Lifecycle: PENDING -> RUNNING -> COMPLETED | ABORTED.
    """

    def __init__(
        self,
        executor: StageExecutor,
        *,
        workers: int | None = None,
        fail_fast: bool = False,
        runner: Callable[[JobSpec, StageExecutor, CancelToken], JobOutcome] = run_job,
    ):
        if workers is None:
            workers = default_workers()
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self.executor = executor
        self.workers = workers
        self.fail_fast = fail_fast
        self.runner = runner
        self.cancel = CancelToken()
        self.state = BuildState.PENDING
        self.dispatched: List[int] = []
        self.result: Optional[BuildResult] = None

    def _work(self, job: JobSpec, inbox: queue.Queue) -> None:
        try:
            outcome = self.runner(job, self.executor, self.cancel)
        except Exception as e:  # surfaced by the coordinator as CoordinationError
            inbox.put(_Crashed(job=job, error=e))
        else:
            inbox.put(outcome)

    def run(self, jobs: Sequence[JobSpec]) -> BuildResult:
        console = get_console()
        numbers = [j.number for j in jobs]
        if len(set(numbers)) != len(numbers):
            dupes = sorted({n for n in numbers if numbers.count(n) > 1})
            raise CoordinationError(f"duplicate job numbers: {dupes}")

        result = BuildResult(jobs)
        self.result = result
        backlog: Deque[JobSpec] = deque(jobs)
        inbox: queue.Queue = queue.Queue()
        in_flight = 0
        crash: Optional[_Crashed] = None

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="buildmatrix") as pool:
            try:
                while backlog or in_flight:
                    # dispatch up to the worker bound
                    while backlog and in_flight < self.workers and not self.cancel.cancelled:
                        job = backlog.popleft()
                        self.dispatched.append(job.number)
                        in_flight += 1
                        self.state = BuildState.RUNNING
                        console.print_job_start(job)
                        pool.submit(self._work, job, inbox)

                    if not in_flight:
                        break

                    message = inbox.get()
                    in_flight -= 1

                    if isinstance(message, _Crashed):
                        if crash is None:
                            crash = message
                        self.cancel.cancel()
                        continue

                    result.record(message)
                    console.print_job_finished(message)

                    if (
                        self.fail_fast
                        and message.is_required_failure
                        and self.state is not BuildState.ABORTED
                    ):
                        self.state = BuildState.ABORTED
                        self.cancel.cancel()
                        console.print_aborted(message, cancelled=len(backlog))
            except BaseException:
                # pool shutdown waits for running jobs; ask them to stop first
                self.cancel.cancel()
                raise

        if crash is not None:
            raise CoordinationError(
                f"job #{crash.job.number} {crash.job.name} crashed: {crash.error!r}"
            ) from crash.error

        # never dispatched
        for job in backlog:
            result.record(JobOutcome.cancelled(job))

        if self.state is not BuildState.ABORTED:
            self.state = BuildState.COMPLETED
        result.freeze(self.state)
        console.print_debug(f"build {self.state.value}: dispatched jobs {self.dispatched}")
        return result


def run_build(
    jobs: Sequence[JobSpec],
    executor: StageExecutor,
    *,
    workers: int | None = None,
    fail_fast: bool = False,
) -> BuildResult:
    """Convenience wrapper: run `jobs` with a fresh Coordinator."""
    return Coordinator(executor, workers=workers, fail_fast=fail_fast).run(jobs)
