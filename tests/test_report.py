from __future__ import annotations

import json
from dataclasses import replace

import pytest

from buildmatrix.errors import CoordinationError
from buildmatrix.model import (
    BuildResult,
    BuildState,
    JobOutcome,
    JobStatus,
    Phase,
    Stage,
    StepOutcome,
    StepStatus,
)
from buildmatrix.report import Verdict, aggregate, verdict

from support import make_job


def _result(statuses, state=BuildState.COMPLETED, allow=()):
    jobs = [make_job(n, allow_failure=n in allow) for n in range(1, len(statuses) + 1)]
    result = BuildResult(jobs)
    for job, status in zip(jobs, statuses):
        steps = ()
        if status is JobStatus.FAILURE:
            steps = (StepOutcome(stage=job.script[0], status=StepStatus.FAILURE, exit_code=101),)
        result.record(JobOutcome(job=job, status=status, steps=steps, duration=1.5))
    result.freeze(state)
    return result


def test_all_success_is_success() -> None:
    report = aggregate(_result([JobStatus.SUCCESS] * 3))
    assert report.verdict is Verdict.SUCCESS
    assert report.exit_code == 0
    assert report.first_required_failure is None


def test_required_failure_fails_the_build() -> None:
    report = aggregate(_result([JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.FAILURE]))
    assert report.verdict is Verdict.FAILURE
    assert report.exit_code == 1
    first = report.first_required_failure
    assert first.number == 2
    assert first.failed_stage == "script: job2"
    assert first.exit_code == 101


def test_allowed_failure_alone_keeps_success() -> None:
    report = aggregate(_result([JobStatus.SUCCESS, JobStatus.FAILURE], allow={2}))
    assert report.verdict is Verdict.SUCCESS
    assert [r.number for r in report.allowed_failures] == [2]


def test_aborted_build_is_never_success() -> None:
    report = aggregate(_result([JobStatus.SUCCESS, JobStatus.CANCELLED], state=BuildState.ABORTED))
    assert report.verdict is Verdict.FAILURE
    assert report.first_required_failure is None


@pytest.mark.parametrize(
    "statuses",
    [
        [JobStatus.SUCCESS, JobStatus.FAILURE],
        [JobStatus.FAILURE, JobStatus.FAILURE],
        [JobStatus.FAILURE, JobStatus.SUCCESS, JobStatus.CANCELLED],
    ],
)
def test_allowing_failure_never_worsens_the_verdict(statuses) -> None:
    jobs = [make_job(n) for n in range(1, len(statuses) + 1)]
    outcomes = [JobOutcome(job=j, status=s) for j, s in zip(jobs, statuses)]
    rank = {Verdict.SUCCESS: 0, Verdict.FAILURE: 1}

    for state in (BuildState.COMPLETED, BuildState.ABORTED):
        before = verdict(state, outcomes)
        for idx in range(len(outcomes)):
            flipped = list(outcomes)
            flipped[idx] = replace(outcomes[idx], job=replace(outcomes[idx].job, allow_failure=True))
            assert rank[verdict(state, flipped)] <= rank[before]


def test_report_is_json_serializable() -> None:
    report = aggregate(_result([JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.CANCELLED], allow={2}))
    data = json.loads(json.dumps(report.to_dict()))

    assert data["verdict"] == "success"
    assert data["state"] == "completed"
    assert data["exit_code"] == 0
    assert data["first_required_failure"] is None
    assert [j["status"] for j in data["jobs"]] == ["success", "failure", "cancelled"]
    assert data["jobs"][1]["allow_failure"] is True
    assert data["jobs"][1]["env"] == {"JOB": "2"}


def test_cannot_aggregate_a_running_build() -> None:
    result = BuildResult([make_job(1)])
    with pytest.raises(CoordinationError, match="still pending"):
        aggregate(result)


def test_stage_names_include_phase() -> None:
    assert Stage(Phase.SETUP, "apt-get install cmake\nmore").name == "setup: apt-get install cmake"
