# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class BuildMatrixError(Exception):
    """Base class for every error raised by buildmatrix."""


@dataclass
class ConfigError(BuildMatrixError):
    """
    The matrix configuration is malformed or references something undeclared.

    Raised before any job runs. `location` points at the offending part of
    the configuration (e.g. "matrix.include[2].rust") so the CLI can print
    a pinpointed message.
    """
    message: str
    location: str | None = None
    details: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [self.message if not self.location else f"{self.location}: {self.message}"]
        lines.extend(self.details)
        return "\n".join(lines)


@dataclass
class StageExecutionError(BuildMatrixError):
    """
    A stage executor could not run a stage at all (missing shell, bad cwd...).

    The job runner converts this into a failed step; it never escapes a job.
    """
    stage: str
    message: str
    exit_code: int | None = None

    def __str__(self) -> str:
        suffix = f" (exit={self.exit_code})" if self.exit_code is not None else ""
        return f"stage '{self.stage}' failed{suffix}: {self.message}"


class CoordinationError(BuildMatrixError):
    """Internal invariant violation while coordinating a build (a defect)."""
