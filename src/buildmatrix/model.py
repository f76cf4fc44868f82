# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Generic, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

from .errors import ConfigError, CoordinationError


T = TypeVar("T")


# ---------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------

class Phase(str, Enum):
    SETUP = "setup"
    BEFORE_SCRIPT = "before_script"
    SCRIPT = "script"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class BuildState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


# ---------------------------------------------------------------------
# Per-field overrides
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Inherited:
    """The row keeps the global default for this field."""


@dataclass(frozen=True)
class Overridden(Generic[T]):
    """The row replaces the global default for this field with `value`."""
    value: T


INHERITED = Inherited()

Override = Union[Inherited, Overridden]


def resolve(override: Override, default: T) -> T:
    if isinstance(override, Overridden):
        return override.value
    return default


# ---------------------------------------------------------------------
# Matrix definition
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Axis:
    """A named dimension of build variation, e.g. rust: stable/beta/nightly."""
    name: str
    values: Tuple[str, ...]


@dataclass(frozen=True)
class Selector:
    """
    Partial match over a matrix row.

    Axes and env vars left out of the selector are wildcards. A row with an
    axis unset (an include row that never named it) does not match a
    selector that names that axis.
    """
    axes: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)

    def matches(self, axes: Mapping[str, str], env: Mapping[str, str]) -> bool:
        for name, value in self.axes.items():
            if axes.get(name) != value:
                return False
        for name, value in self.env.items():
            if env.get(name) != value:
                return False
        return True

    def describe(self) -> str:
        parts = [f"{k}={v}" for k, v in self.axes.items()]
        parts += [f"env.{k}={v}" for k, v in self.env.items()]
        return ", ".join(parts) or "<empty>"


@dataclass(frozen=True)
class ExcludeRule:
    selector: Selector


@dataclass(frozen=True)
class AllowFailureRule:
    selector: Selector


@dataclass(frozen=True)
class IncludeRule:
    """
    One extra row appended to the matrix.

    Axis values may name any subset of the declared axes (or none). Each
    pipeline field is either inherited from the global pipeline or replaced
    wholesale.
    """
    axes: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    name: Optional[str] = None
    setup: Override = INHERITED
    before_script: Override = INHERITED
    script: Override = INHERITED
    allow_failure: bool = False


@dataclass(frozen=True)
class Pipeline:
    """Global default stage lists, in execution order."""
    setup: Tuple[str, ...] = ()
    before_script: Tuple[str, ...] = ()
    script: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MatrixModel:
    axes: Tuple[Axis, ...]
    pipeline: Pipeline
    includes: Tuple[IncludeRule, ...] = ()
    excludes: Tuple[ExcludeRule, ...] = ()
    allow_failures: Tuple[AllowFailureRule, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    fail_fast: bool = False

    @property
    def axis_names(self) -> List[str]:
        return [a.name for a in self.axes]

    def domain(self, axis_name: str) -> Tuple[str, ...]:
        for a in self.axes:
            if a.name == axis_name:
                return a.values
        raise KeyError(axis_name)

    @classmethod
    def load(
        cls,
        axes: Sequence[Axis],
        includes: Sequence[IncludeRule] = (),
        excludes: Sequence[ExcludeRule] = (),
        allow_failures: Sequence[AllowFailureRule] = (),
        *,
        pipeline: Pipeline | None = None,
        env: Mapping[str, str] | None = None,
        fail_fast: bool = False,
    ) -> MatrixModel:
        """
        Validate the pieces of a matrix and freeze them into a model.

        Raises:
            ConfigError: unknown axis names, selector values outside the
                declared domain, malformed selectors, an empty matrix or a
                non-boolean fail_fast.
        """
        if not isinstance(fail_fast, bool):
            raise ConfigError(f"fail_fast must be a boolean, got {fail_fast!r}", location="matrix.fail_fast")

        seen: Dict[str, Axis] = {}
        for axis in axes:
            if axis.name in seen:
                raise ConfigError(f"duplicate axis {axis.name!r}", location="axes")
            if not axis.values:
                raise ConfigError(f"axis {axis.name!r} declares no values", location=f"axes.{axis.name}")
            if len(set(axis.values)) != len(axis.values):
                dupes = sorted({v for v in axis.values if axis.values.count(v) > 1})
                raise ConfigError(f"axis {axis.name!r} has duplicate values: {dupes}", location=f"axes.{axis.name}")
            seen[axis.name] = axis

        if not seen and not includes:
            raise ConfigError("matrix is empty: declare at least one axis or include row")

        for idx, rule in enumerate(includes):
            for name in rule.axes:
                if name not in seen:
                    raise ConfigError(
                        f"include row references unknown axis {name!r}",
                        location=f"matrix.include[{idx}]",
                        details=[f"Known axes: {sorted(seen)}"],
                    )

        for section, rules in (("matrix.exclude", excludes), ("matrix.allow_failures", allow_failures)):
            for idx, rule in enumerate(rules):
                _check_selector(rule.selector, seen, f"{section}[{idx}]")

        return cls(
            axes=tuple(axes),
            pipeline=pipeline or Pipeline(),
            includes=tuple(includes),
            excludes=tuple(excludes),
            allow_failures=tuple(allow_failures),
            env=dict(env or {}),
            fail_fast=fail_fast,
        )


def _check_selector(selector: Selector, axes: Mapping[str, Axis], location: str) -> None:
    if not selector.axes and not selector.env:
        raise ConfigError("selector must name at least one axis or env var", location=location)
    for name, value in selector.axes.items():
        if name not in axes:
            raise ConfigError(
                f"selector references unknown axis {name!r}",
                location=location,
                details=[f"Known axes: {sorted(axes)}"],
            )
        if value not in axes[name].values:
            raise ConfigError(
                f"value {value!r} is outside the domain of axis {name!r}",
                location=f"{location}.{name}",
                details=[f"Declared values: {list(axes[name].values)}"],
            )


# ---------------------------------------------------------------------
# Resolved jobs
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Stage:
    """One opaque instruction of a job. The orchestrator never interprets `run`."""
    phase: Phase
    run: str

    @property
    def name(self) -> str:
        first = self.run.strip().splitlines()[0] if self.run.strip() else ""
        return f"{self.phase.value}: {first}"


@dataclass(frozen=True)
class JobSpec:
    """A fully resolved row of the matrix."""
    number: int
    name: str
    axes: Dict[str, str]
    env: Dict[str, str]
    setup: Tuple[Stage, ...]
    before_script: Tuple[Stage, ...]
    script: Tuple[Stage, ...]
    allow_failure: bool = False
    included: bool = False

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self.setup + self.before_script + self.script


# ---------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepOutcome:
    stage: Stage
    status: StepStatus
    output: str = ""
    duration: float = 0.0
    exit_code: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class JobOutcome:
    job: JobSpec
    status: JobStatus
    steps: Tuple[StepOutcome, ...] = ()
    duration: float = 0.0

    @property
    def allow_failure(self) -> bool:
        return self.job.allow_failure

    @property
    def is_required_failure(self) -> bool:
        return self.status is JobStatus.FAILURE and not self.allow_failure

    @property
    def failed_step(self) -> Optional[StepOutcome]:
        for step in self.steps:
            if step.status is StepStatus.FAILURE:
                return step
        return None

    @classmethod
    def cancelled(cls, job: JobSpec) -> JobOutcome:
        """Outcome for a job that was never dispatched."""
        return cls(job=job, status=JobStatus.CANCELLED)


class BuildResult:
    """
    Accumulator of job outcomes for one build.

    Only the coordinator writes to it. Once frozen it is read-only.
    """

    def __init__(self, jobs: Sequence[JobSpec]):
        self.jobs: Tuple[JobSpec, ...] = tuple(jobs)
        self.state: BuildState = BuildState.PENDING
        self.started_at: float = time.monotonic()
        self.finished_at: Optional[float] = None
        self._outcomes: Dict[int, JobOutcome] = {}
        self._known = {j.number for j in self.jobs}

    @property
    def frozen(self) -> bool:
        return self.finished_at is not None

    @property
    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def record(self, outcome: JobOutcome) -> None:
        number = outcome.job.number
        if self.frozen:
            raise CoordinationError(f"outcome for job {number} arrived after the build was frozen")
        if number not in self._known:
            raise CoordinationError(f"outcome for unknown job {number}")
        if number in self._outcomes:
            raise CoordinationError(f"duplicate outcome for job {number}")
        self._outcomes[number] = outcome

    def has_outcome(self, number: int) -> bool:
        return number in self._outcomes

    def freeze(self, state: BuildState) -> None:
        if state not in (BuildState.COMPLETED, BuildState.ABORTED):
            raise CoordinationError(f"cannot freeze a build in state {state.value}")
        missing = sorted(self._known - set(self._outcomes))
        if missing:
            raise CoordinationError(f"build frozen with jobs lacking an outcome: {missing}")
        self.state = state
        self.finished_at = time.monotonic()

    @property
    def outcomes(self) -> List[JobOutcome]:
        """Outcomes in job order."""
        return [self._outcomes[j.number] for j in self.jobs if j.number in self._outcomes]
