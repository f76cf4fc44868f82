# runner.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import List, Mapping, Optional, Protocol

from .errors import StageExecutionError
from .model import JobOutcome, JobSpec, JobStatus, Stage, StepOutcome, StepStatus
from .ui.console import get_console


OUTPUT_TAIL = 4000
DRAIN_TIMEOUT = 5.0


class CancelToken:
    """
    Cooperative cancellation signal shared between the coordinator and runners.

    Setting it is a request, not a guarantee: runners check it between
    stages, executors may check it while a stage runs.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class StageExecutor(Protocol):
    """Capability that performs one stage. Supplied by the host."""

    def execute(self, stage: Stage, env: Mapping[str, str], cancel: CancelToken) -> StepOutcome:
        ...


# ----------------------------------------------------------------------
# Shell executor
# ----------------------------------------------------------------------

class ShellStageExecutor:
    """
    Runs each stage through the shell with the job env on top of os.environ.

    stdout and stderr are captured together; only the last OUTPUT_TAIL
    characters are kept. A per-stage `timeout` (seconds) kills the stage.
    When the cancel token is set while a stage runs, the child process is
    terminated (best-effort) and the stage is reported Skipped.
    """

    def __init__(
        self,
        cwd: str | Path = ".",
        *,
        timeout: float | None = None,
        poll_interval: float = 0.1,
        drain_timeout: float = DRAIN_TIMEOUT,
    ):
        self.cwd = Path(cwd).resolve()
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.drain_timeout = drain_timeout

    def execute(self, stage: Stage, env: Mapping[str, str], cancel: CancelToken) -> StepOutcome:
        if not self.cwd.exists():
            raise StageExecutionError(stage=stage.name, message=f"cwd not found: {self.cwd}")

        proc_env = os.environ.copy()
        proc_env.update(env)

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                stage.run,
                shell=True,
                cwd=str(self.cwd),
                env=proc_env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            raise StageExecutionError(stage=stage.name, message=str(e)) from e

        collected: List[str] = []
        reader = threading.Thread(target=_drain, args=(proc, collected), daemon=True)
        reader.start()

        error: Optional[str] = None
        while True:
            try:
                proc.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel.cancelled:
                _signal_group(proc, signal.SIGTERM)
                proc.wait()
                error = "cancelled"
                break
            if self.timeout is not None and time.monotonic() - started > self.timeout:
                _signal_group(proc, signal.SIGKILL)
                proc.wait()
                error = f"timed out after {self.timeout}s"
                break

        # leftover background children can keep the pipe open after the shell exits
        reader.join(self.drain_timeout)
        if reader.is_alive():
            _signal_group(proc, signal.SIGKILL)
            reader.join(self.drain_timeout)
        output = "".join(list(collected))[-OUTPUT_TAIL:]
        duration = time.monotonic() - started

        if error == "cancelled":
            status = StepStatus.SKIPPED
        elif proc.returncode == 0 and error is None:
            status = StepStatus.SUCCESS
        else:
            status = StepStatus.FAILURE
        return StepOutcome(
            stage=stage,
            status=status,
            output=output,
            duration=duration,
            exit_code=proc.returncode,
            error=error,
        )


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    # the stage runs in its own session; take its children down with it
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def _drain(proc: subprocess.Popen, sink: List[str]) -> None:
    assert proc.stdout is not None
    for line in proc.stdout:
        sink.append(line)
    proc.stdout.close()


# ----------------------------------------------------------------------
# Job execution
# ----------------------------------------------------------------------

def _skipped(stage: Stage, reason: str) -> StepOutcome:
    return StepOutcome(stage=stage, status=StepStatus.SKIPPED, error=reason)


def run_job(job: JobSpec, executor: StageExecutor, cancel: CancelToken) -> JobOutcome:
    """
    Run a job's stages in declared order and fold them into a JobOutcome.

    After the first failed stage every remaining stage is Skipped. The
    cancel token is polled before each stage; once it is set the remaining
    stages are Skipped too. An executor that raises produces a failed step
    rather than an exception. Failures are never retried here.

    Status is FAILURE if any stage failed, CANCELLED if cancellation cut the
    job short without a failure, SUCCESS otherwise.
    """
    console = get_console()
    started = time.monotonic()
    steps: List[StepOutcome] = []
    failed = False
    interrupted = False

    for stage in job.stages:
        if failed:
            steps.append(_skipped(stage, "previous stage failed"))
            continue
        if cancel.cancelled:
            interrupted = True
            steps.append(_skipped(stage, "build cancelled"))
            continue

        console.print_step(job.name, stage.name)
        try:
            outcome = executor.execute(stage, job.env, cancel)
        except StageExecutionError as e:
            outcome = StepOutcome(
                stage=stage,
                status=StepStatus.FAILURE,
                exit_code=e.exit_code,
                error=e.message,
            )
        except Exception as e:
            outcome = StepOutcome(stage=stage, status=StepStatus.FAILURE, error=repr(e))
        steps.append(outcome)
        if outcome.status is StepStatus.FAILURE:
            failed = True
        elif outcome.status is StepStatus.SKIPPED:
            # executor gave up on the stage because of cancellation
            interrupted = True

    if failed:
        status = JobStatus.FAILURE
    elif interrupted:
        status = JobStatus.CANCELLED
    else:
        status = JobStatus.SUCCESS

    return JobOutcome(job=job, status=status, steps=tuple(steps), duration=time.monotonic() - started)
