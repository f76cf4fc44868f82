# report.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import CoordinationError
from .model import BuildResult, BuildState, JobOutcome, JobStatus


class Verdict(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class JobReport:
    number: int
    name: str
    axes: Dict[str, str]
    env: Dict[str, str]
    status: JobStatus
    allow_failure: bool
    duration: float
    failed_stage: Optional[str] = None
    exit_code: Optional[int] = None

    @classmethod
    def from_outcome(cls, outcome: JobOutcome) -> JobReport:
        step = outcome.failed_step
        return cls(
            number=outcome.job.number,
            name=outcome.job.name,
            axes=dict(outcome.job.axes),
            env=dict(outcome.job.env),
            status=outcome.status,
            allow_failure=outcome.allow_failure,
            duration=outcome.duration,
            failed_stage=step.stage.name if step else None,
            exit_code=step.exit_code if step else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "axes": self.axes,
            "env": self.env,
            "status": self.status.value,
            "allow_failure": self.allow_failure,
            "duration": round(self.duration, 3),
            "failed_stage": self.failed_stage,
            "exit_code": self.exit_code,
        }


@dataclass(frozen=True)
class BuildReport:
    verdict: Verdict
    state: BuildState
    jobs: Tuple[JobReport, ...]
    elapsed: float

    @property
    def first_required_failure(self) -> Optional[JobReport]:
        for row in self.jobs:
            if row.status is JobStatus.FAILURE and not row.allow_failure:
                return row
        return None

    @property
    def allowed_failures(self) -> List[JobReport]:
        return [r for r in self.jobs if r.status is JobStatus.FAILURE and r.allow_failure]

    @property
    def exit_code(self) -> int:
        return 0 if self.verdict is Verdict.SUCCESS else 1

    def to_dict(self) -> Dict[str, Any]:
        first = self.first_required_failure
        return {
            "verdict": self.verdict.value,
            "state": self.state.value,
            "elapsed": round(self.elapsed, 3),
            "exit_code": self.exit_code,
            "first_required_failure": first.number if first else None,
            "jobs": [row.to_dict() for row in self.jobs],
        }


def verdict(state: BuildState, outcomes: List[JobOutcome]) -> Verdict:
    """
    Aborted builds always fail. Otherwise the build fails only if a job that
    is not allowed to fail has failed.
    """
    if state is BuildState.ABORTED:
        return Verdict.FAILURE
    if any(o.is_required_failure for o in outcomes):
        return Verdict.FAILURE
    return Verdict.SUCCESS


def aggregate(result: BuildResult) -> BuildReport:
    if not result.frozen:
        raise CoordinationError(f"cannot aggregate a build that is still {result.state.value}")
    outcomes = result.outcomes
    return BuildReport(
        verdict=verdict(result.state, outcomes),
        state=result.state,
        jobs=tuple(JobReport.from_outcome(o) for o in outcomes),
        elapsed=result.elapsed,
    )
