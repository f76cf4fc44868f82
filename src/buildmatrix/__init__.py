from .config import load_config, load_workflow
from .coordinator import Coordinator, run_build
from .dsl import MatrixBuilder, allow_failure, build_matrix, exclude, include
from .errors import BuildMatrixError, ConfigError, CoordinationError, StageExecutionError
from .expander import expand
from .model import BuildState, JobSpec, JobStatus, MatrixModel, StepOutcome, StepStatus
from .report import BuildReport, Verdict, aggregate
from .runner import CancelToken, ShellStageExecutor, run_job

__all__ = [
    "load_config", "load_workflow", "Coordinator", "run_build",
    "MatrixBuilder", "allow_failure", "build_matrix", "exclude", "include",
    "BuildMatrixError", "ConfigError", "CoordinationError", "StageExecutionError",
    "expand", "BuildState", "JobSpec", "JobStatus", "MatrixModel", "StepOutcome", "StepStatus",
    "BuildReport", "Verdict", "aggregate", "CancelToken", "ShellStageExecutor", "run_job",
]
